"""
Tracking service

TrackingInfo rows mirror the newest carrier status per tracking number.
Refreshes are idempotent and last-write-wins on the newest carrier event
timestamp: a result whose latest event is not newer than the stored
last_event_at is discarded, so concurrent or out-of-order polls converge
on the most recent carrier state.

Tracking is advisory: when the carrier cannot be reached the stored
record is returned instead of an error.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.core.exceptions import CarrierError
from vinclub.core.timeutils import as_utc
from vinclub.models.shipment import Shipment, ShipmentStatus, TrackingInfo, TrackingStatus
from vinclub.modules.shipping.carriers.base import TrackingResult
from vinclub.services.carrier_gateway import CarrierGateway

logger = logging.getLogger(__name__)


class TrackingService:
    def __init__(self, db: AsyncSession, gateway: Optional[CarrierGateway] = None):
        self.db = db
        self.gateway = gateway

    async def get_tracking_info(self, tracking_number: str, for_update: bool = False) -> Optional[TrackingInfo]:
        query = select(TrackingInfo).where(TrackingInfo.tracking_number == tracking_number)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def apply_tracking_result(self, result: TrackingResult) -> bool:
        """
        Write a carrier tracking result if it is newer than what is stored.

        Returns True if the record changed. Does not commit.
        """
        info = await self.get_tracking_info(result.tracking_number, for_update=True)
        if info is None:
            logger.warning(f"Tracking result for unknown tracking number {result.tracking_number}, ignoring")
            return False

        newest = result.latest_event_at
        stored = as_utc(info.last_event_at)
        if stored is not None and (newest is None or newest <= stored):
            logger.debug(f"Stale tracking result for {result.tracking_number} (newest={newest}, stored={stored})")
            return False

        info.status = result.status.value
        info.carrier_status = result.carrier_status
        info.events = [event.to_dict() for event in result.events]
        info.last_event_at = newest
        if result.estimated_delivery:
            info.estimated_delivery = result.estimated_delivery
        if result.actual_delivery:
            info.actual_delivery = result.actual_delivery

        shipment = await self.db.get(Shipment, info.shipment_id)
        if shipment is not None:
            self._advance_shipment(shipment, result)

        await self.db.flush()
        return True

    def _advance_shipment(self, shipment: Shipment, result: TrackingResult) -> None:
        """Move the shipment forward; delivered and failed are final."""
        if shipment.status in (ShipmentStatus.DELIVERED, ShipmentStatus.FAILED):
            return

        if result.estimated_delivery:
            shipment.estimated_delivery = result.estimated_delivery

        if result.status == TrackingStatus.DELIVERED:
            shipment.status = ShipmentStatus.DELIVERED
            shipment.actual_delivery = result.actual_delivery or result.latest_event_at
            logger.info(f"Shipment {shipment.id} delivered: {shipment.tracking_number}")
        elif result.status == TrackingStatus.RETURNED:
            shipment.status = ShipmentStatus.FAILED
            logger.warning(f"Shipment {shipment.id} returned to sender: {shipment.tracking_number}")
        elif result.status == TrackingStatus.EXCEPTION:
            logger.warning(f"Shipment {shipment.id} has a delivery exception: {result.carrier_status}")

    async def refresh(self, tracking_number: str) -> Optional[TrackingInfo]:
        """
        Poll the carrier and apply the result. Does not commit.

        Raises:
            CarrierError: Carrier lookup failed
        """
        info = await self.get_tracking_info(tracking_number)
        if info is None:
            return None
        result = await self.gateway.track_shipment(info.carrier, tracking_number)
        await self.apply_tracking_result(result)
        return info

    async def track_shipment(self, tracking_number: str) -> Optional[TrackingInfo]:
        """
        Refresh from the carrier, falling back to the stored record on failure.

        Returns None only when the tracking number is unknown.
        """
        try:
            refreshed = await self.refresh(tracking_number)
            await self.db.commit()
            return refreshed
        except CarrierError as e:
            await self.db.rollback()
            logger.warning(f"Tracking refresh failed for {tracking_number}, serving stored status: {e.message}")
            return await self.get_tracking_info(tracking_number)
