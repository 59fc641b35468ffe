"""
Background jobs for fulfillment

- Label retry: pending shipments whose label request failed with a
  retriable error are retried until LABEL_RETRY_MAX_ATTEMPTS.
- Tracking sync: shipped shipments are refreshed from their carrier.

Each shipment is handled in isolation; one failure is logged and the
batch continues. Both jobs are idempotent.
"""
import asyncio
import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.core.config import settings as default_settings
from vinclub.core.database import get_db_session
from vinclub.core.exceptions import CarrierError
from vinclub.core.timeutils import utcnow
from vinclub.models.shipment import Shipment, ShipmentStatus
from vinclub.modules.shipping.carriers import CarrierRegistry
from vinclub.services.carrier_gateway import CarrierGateway
from vinclub.services.fulfillment import FulfillmentOrchestrator
from vinclub.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

LABEL_RETRY_BATCH_SIZE = 25
TRACKING_SYNC_BATCH_SIZE = 50


class FulfillmentJobRunner:
    """
    Manages and runs fulfillment background jobs.
    """

    def __init__(self, registry: CarrierRegistry, session_factory=None, settings=None):
        self.gateway = CarrierGateway(registry)
        self.settings = settings or default_settings
        self._session_factory = session_factory
        self._running = False
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start all enabled background jobs."""
        if self._running:
            logger.warning("Fulfillment jobs already running")
            return

        self._running = True
        logger.info("Starting fulfillment background jobs")

        if self.settings.LABEL_RETRY_ENABLED:
            self._tasks.append(asyncio.create_task(self._label_retry_loop()))
        if self.settings.TRACKING_SYNC_ENABLED:
            self._tasks.append(asyncio.create_task(self._tracking_sync_loop()))

    async def stop(self):
        """Stop all background jobs."""
        self._running = False

        for task in self._tasks:
            task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

        logger.info("Fulfillment background jobs stopped")

    # ==================== Label Retry Job ====================

    async def _label_retry_loop(self):
        while self._running:
            try:
                await self.run_label_retry()
            except Exception as e:
                logger.error(f"Label retry job error: {e}")

            await asyncio.sleep(self.settings.LABEL_RETRY_INTERVAL_SECONDS)

    async def _get_shipments_for_label_retry(self, db: AsyncSession) -> List[Shipment]:
        result = await db.execute(
            select(Shipment)
            .where(
                Shipment.status == ShipmentStatus.PENDING,
                Shipment.tracking_number.is_(None),
                Shipment.label_retriable.is_(True),
                Shipment.label_attempts < self.settings.LABEL_RETRY_MAX_ATTEMPTS,
            )
            .order_by(Shipment.created_at.asc(), Shipment.id.asc())
            .limit(LABEL_RETRY_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def run_label_retry(self) -> dict:
        """Run a single label retry cycle. Returns counts for logging/tests."""
        created = failed = 0
        async with get_db_session(self._session_factory) as db:
            shipments = await self._get_shipments_for_label_retry(db)
            if not shipments:
                logger.debug("No shipments waiting for a label")
                return {"created": 0, "failed": 0}

            logger.info(f"Retrying labels for {len(shipments)} shipments")
            orchestrator = FulfillmentOrchestrator(db, self.gateway, settings=self.settings)

            shipment_ids = [s.id for s in shipments]

            for shipment_id in shipment_ids:
                try:
                    # Reload: a rollback for an earlier shipment expires loaded rows
                    shipment = await db.get(Shipment, shipment_id, populate_existing=True)
                    attempt = await orchestrator.request_label(shipment)
                except Exception as e:
                    await db.rollback()
                    failed += 1
                    logger.error(f"Label retry error for shipment {shipment_id}: {e}")
                    continue

                if attempt.succeeded:
                    created += 1
                else:
                    failed += 1
                    if attempt.shipment.label_attempts >= self.settings.LABEL_RETRY_MAX_ATTEMPTS:
                        logger.error(
                            f"Shipment {shipment_id} reached {attempt.shipment.label_attempts} label attempts; "
                            f"needs manual label generation"
                        )

        logger.info(f"Label retry complete: {created} created, {failed} failed")
        return {"created": created, "failed": failed}

    # ==================== Tracking Sync Job ====================

    async def _tracking_sync_loop(self):
        while self._running:
            try:
                await self.run_tracking_sync()
            except Exception as e:
                logger.error(f"Tracking sync job error: {e}")

            await asyncio.sleep(self.settings.TRACKING_SYNC_INTERVAL_SECONDS)

    async def _get_shipments_for_tracking(self, db: AsyncSession) -> List[Shipment]:
        """Least recently polled first, so every shipped shipment gets its turn."""
        result = await db.execute(
            select(Shipment)
            .where(
                Shipment.status == ShipmentStatus.SHIPPED,
                Shipment.tracking_number.isnot(None),
            )
            .order_by(Shipment.tracking_checked_at.asc().nullsfirst(), Shipment.id.asc())
            .limit(TRACKING_SYNC_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def run_tracking_sync(self) -> dict:
        """Run a single tracking sync cycle."""
        updated = failed = 0
        async with get_db_session(self._session_factory) as db:
            shipments = await self._get_shipments_for_tracking(db)
            if not shipments:
                logger.debug("No shipments need tracking update")
                return {"updated": 0, "failed": 0}

            logger.info(f"Syncing tracking for {len(shipments)} shipments")
            tracking = TrackingService(db, self.gateway)
            tracking_numbers = [s.tracking_number for s in shipments]

            # Stamp the batch up front; a poll that changes nothing still moves it to the back
            checked_at = utcnow()
            for shipment in shipments:
                shipment.tracking_checked_at = checked_at
            await db.commit()

            for tracking_number in tracking_numbers:
                try:
                    await tracking.refresh(tracking_number)
                    await db.commit()
                    updated += 1
                except CarrierError as e:
                    await db.rollback()
                    failed += 1
                    logger.warning(f"Tracking update failed for {tracking_number}: {e.message}")
                except Exception as e:
                    await db.rollback()
                    failed += 1
                    logger.error(f"Tracking update error for {tracking_number}: {e}")

        logger.info(f"Tracking sync complete: {updated} updated, {failed} failed")
        return {"updated": updated, "failed": failed}
