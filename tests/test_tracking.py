"""
Tests for tracking refresh and the shipment status it drives.
"""
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from conftest import seed_cave, seed_subscription
from vinclub.models import Shipment, ShipmentStatus, TrackingStatus
from vinclub.modules.shipping.carriers.base import TrackingEvent, TrackingResult
from vinclub.services.fulfillment import FulfillmentOrchestrator
from vinclub.services.tracking_service import TrackingService


def _result(tracking_number: str, status: TrackingStatus, carrier_status: str, *hours: int) -> TrackingResult:
    return TrackingResult(
        tracking_number=tracking_number,
        carrier="chronopost",
        status=status,
        carrier_status=carrier_status,
        events=[
            TrackingEvent(timestamp=datetime(2024, 4, 2, h, tzinfo=timezone.utc), status=carrier_status)
            for h in hours
        ],
    )


@pytest_asyncio.fixture
async def shipped(db, gateway, test_settings):
    cave = await seed_cave(db)
    subscription = await seed_subscription(db, cave)
    result = await FulfillmentOrchestrator(db, gateway, settings=test_settings).create_shipment(subscription.id)
    assert result.shipment.status == ShipmentStatus.SHIPPED
    return result.shipment


class TestApplyTrackingResult:

    @pytest.mark.asyncio
    async def test_newer_result_is_stored(self, db, shipped):
        tracking = TrackingService(db)

        changed = await tracking.apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.IN_TRANSIT, "IN_TRANSIT", 8, 10)
        )

        assert changed is True
        info = await tracking.get_tracking_info(shipped.tracking_number)
        assert info.status == "in_transit"
        assert len(info.events) == 2
        assert shipped.status == ShipmentStatus.SHIPPED

    @pytest.mark.asyncio
    async def test_older_result_loses(self, db, shipped):
        """Last write wins on the newest carrier event timestamp."""
        tracking = TrackingService(db)
        await tracking.apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.OUT_FOR_DELIVERY, "OUT_FOR_DELIVERY", 12)
        )
        await db.commit()

        changed = await tracking.apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.IN_TRANSIT, "IN_TRANSIT", 9)
        )

        assert changed is False
        info = await tracking.get_tracking_info(shipped.tracking_number)
        assert info.status == "out_for_delivery"

    @pytest.mark.asyncio
    async def test_delivered_closes_shipment(self, db, shipped):
        await TrackingService(db).apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.DELIVERED, "DELIVERED", 15)
        )

        assert shipped.status == ShipmentStatus.DELIVERED
        assert shipped.actual_delivery == datetime(2024, 4, 2, 15, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_returned_fails_shipment(self, db, shipped):
        await TrackingService(db).apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.RETURNED, "RETURNED", 15)
        )

        assert shipped.status == ShipmentStatus.FAILED

    @pytest.mark.asyncio
    async def test_exception_only_recorded_on_tracking(self, db, shipped):
        tracking = TrackingService(db)
        await tracking.apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.EXCEPTION, "INCIDENT", 15)
        )

        assert shipped.status == ShipmentStatus.SHIPPED
        info = await tracking.get_tracking_info(shipped.tracking_number)
        assert info.status == "exception"

    @pytest.mark.asyncio
    async def test_delivered_is_never_reopened(self, db, shipped):
        tracking = TrackingService(db)
        await tracking.apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.DELIVERED, "DELIVERED", 15)
        )
        await tracking.apply_tracking_result(
            _result(shipped.tracking_number, TrackingStatus.IN_TRANSIT, "IN_TRANSIT", 18)
        )

        assert shipped.status == ShipmentStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_unknown_tracking_number_ignored(self, db):
        changed = await TrackingService(db).apply_tracking_result(
            _result("NOPE", TrackingStatus.DELIVERED, "DELIVERED", 15)
        )
        assert changed is False


class TestTrackShipment:

    @pytest.mark.asyncio
    async def test_refresh_from_carrier(self, db, gateway, carrier_api, shipped):
        carrier_api.tracking[shipped.tracking_number] = {
            "status": "DELIVERED",
            "events": [{"timestamp": "2024-04-03T10:00:00Z", "status": "DELIVERED"}],
        }

        info = await TrackingService(db, gateway).track_shipment(shipped.tracking_number)

        assert info.status == "delivered"
        shipment = await db.get(Shipment, shipped.id)
        assert shipment.status == ShipmentStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_carrier_down_serves_stored_record(self, db, gateway, carrier_api, shipped):
        carrier_api.mode = "unavailable"

        info = await TrackingService(db, gateway).track_shipment(shipped.tracking_number)

        assert info is not None
        assert info.status == "label_created"

    @pytest.mark.asyncio
    async def test_unknown_tracking_number(self, db, gateway):
        assert await TrackingService(db, gateway).track_shipment("NOPE") is None
