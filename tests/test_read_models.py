"""
Tests for read-only shipment queries.
"""
import pytest
import pytest_asyncio

from conftest import seed_cave, seed_subscription
from vinclub.core.exceptions import SubscriptionNotFound
from vinclub.models import Shipment, ShipmentStatus
from vinclub.services import read_models
from vinclub.services.read_models import ShipmentFilter


async def _shipment(db, subscription, period_key, status=ShipmentStatus.PENDING, tracking_number=None,
                    under_fulfilled=False) -> Shipment:
    shipment = Shipment(
        subscription_id=subscription.id,
        wine_cave_id=subscription.wine_cave_id,
        billing_period_key=period_key,
        status=status,
        bottles_requested=3,
        under_fulfilled=under_fulfilled,
        carrier="chronopost",
        tracking_number=tracking_number,
    )
    db.add(shipment)
    await db.flush()
    return shipment


@pytest_asyncio.fixture
async def shipments(db):
    cave = await seed_cave(db)
    subscription = await seed_subscription(db, cave)
    return [
        await _shipment(db, subscription, "2024-01-01", ShipmentStatus.DELIVERED, "TRK1"),
        await _shipment(db, subscription, "2024-02-01", ShipmentStatus.SHIPPED, "TRK2", under_fulfilled=True),
        await _shipment(db, subscription, "2024-03-01"),
        await _shipment(db, subscription, "2024-04-01", ShipmentStatus.FAILED, under_fulfilled=True),
    ]


class TestShipmentQueries:

    @pytest.mark.asyncio
    async def test_newest_first(self, db, shipments):
        result = await read_models.get_shipments(db)
        assert [s.billing_period_key for s in result] == ["2024-04-01", "2024-03-01", "2024-02-01", "2024-01-01"]

    @pytest.mark.asyncio
    async def test_filters(self, db, shipments):
        pending = await read_models.get_shipments(db, ShipmentFilter(status=ShipmentStatus.PENDING))
        short = await read_models.get_shipments(db, ShipmentFilter(under_fulfilled=True))
        missing = await read_models.get_shipments(db, ShipmentFilter(label_missing=True))

        assert [s.billing_period_key for s in pending] == ["2024-03-01"]
        assert {s.billing_period_key for s in short} == {"2024-02-01", "2024-04-01"}
        assert {s.billing_period_key for s in missing} == {"2024-03-01", "2024-04-01"}

    @pytest.mark.asyncio
    async def test_pagination(self, db, shipments):
        page = await read_models.get_shipments(db, limit=2, offset=2)
        assert [s.billing_period_key for s in page] == ["2024-02-01", "2024-01-01"]

    @pytest.mark.asyncio
    async def test_status_summary_counts(self, db, shipments):
        summary = await read_models.get_status_summary(db)

        assert summary == {
            "pending": 1,
            "shipped": 1,
            "delivered": 1,
            "failed": 1,
            "label_missing": 1,
            "under_fulfilled": 2,
        }

    @pytest.mark.asyncio
    async def test_status_summary_scoped_to_cave(self, db, shipments):
        summary = await read_models.get_status_summary(db, wine_cave_id=999)
        assert all(count == 0 for count in summary.values())

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, db):
        with pytest.raises(SubscriptionNotFound):
            await read_models.get_subscription(db, 1)
