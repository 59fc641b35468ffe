"""
Tests for the label retry and tracking sync jobs.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from sqlalchemy import select

from conftest import seed_cave, seed_subscription
from vinclub.models import Shipment, ShipmentStatus
from vinclub.services.fulfillment import FulfillmentOrchestrator
from vinclub.services.fulfillment_jobs import FulfillmentJobRunner


@pytest.fixture
def runner(registry, session_factory, test_settings):
    return FulfillmentJobRunner(registry, session_factory=session_factory, settings=test_settings)


async def _create_shipment(db, gateway, settings, carrier_api, mode: str) -> Shipment:
    carrier_api.mode = mode
    cave = await seed_cave(db)
    subscription = await seed_subscription(db, cave)
    result = await FulfillmentOrchestrator(db, gateway, settings=settings).create_shipment(subscription.id)
    return result.shipment


async def _pending_shipment(db, gateway, settings, carrier_api, mode="unavailable") -> int:
    shipment = await _create_shipment(db, gateway, settings, carrier_api, mode)
    assert shipment.status == ShipmentStatus.PENDING
    return shipment.id


async def _shipped_shipment(db, gateway, settings, carrier_api) -> int:
    shipment = await _create_shipment(db, gateway, settings, carrier_api, "ok")
    assert shipment.status == ShipmentStatus.SHIPPED
    return shipment.id


async def _load(session_factory, shipment_id: int) -> Shipment:
    async with session_factory() as session:
        return (await session.execute(select(Shipment).where(Shipment.id == shipment_id))).scalar_one()


class TestLabelRetry:

    @pytest.mark.asyncio
    async def test_retry_creates_missing_label(self, db, gateway, test_settings, carrier_api, runner, session_factory):
        shipment_id = await _pending_shipment(db, gateway, test_settings, carrier_api)

        carrier_api.mode = "ok"
        counts = await runner.run_label_retry()

        assert counts == {"created": 1, "failed": 0}
        shipment = await _load(session_factory, shipment_id)
        assert shipment.status == ShipmentStatus.SHIPPED
        assert shipment.tracking_number is not None

    @pytest.mark.asyncio
    async def test_failed_retry_counts_attempt(self, db, gateway, test_settings, carrier_api, runner, session_factory):
        shipment_id = await _pending_shipment(db, gateway, test_settings, carrier_api)

        counts = await runner.run_label_retry()

        assert counts == {"created": 0, "failed": 1}
        shipment = await _load(session_factory, shipment_id)
        assert shipment.label_attempts == 2
        assert shipment.status == ShipmentStatus.PENDING

    @pytest.mark.asyncio
    async def test_stops_after_max_attempts(self, db, gateway, test_settings, carrier_api, runner):
        await _pending_shipment(db, gateway, test_settings, carrier_api)

        for _ in range(5):
            await runner.run_label_retry()

        # LABEL_RETRY_MAX_ATTEMPTS=3: the webhook attempt plus two retries
        assert len(carrier_api.label_requests()) == 3
        assert await runner.run_label_retry() == {"created": 0, "failed": 0}

    @pytest.mark.asyncio
    async def test_rejected_labels_are_skipped(self, db, gateway, test_settings, carrier_api, runner):
        await _pending_shipment(db, gateway, test_settings, carrier_api, mode="rejected")

        carrier_api.mode = "ok"
        assert await runner.run_label_retry() == {"created": 0, "failed": 0}


class TestTrackingSync:

    @pytest.mark.asyncio
    async def test_sync_delivers_shipment(self, db, gateway, test_settings, carrier_api, runner, session_factory):
        shipment_id = await _shipped_shipment(db, gateway, test_settings, carrier_api)
        shipment = await _load(session_factory, shipment_id)
        carrier_api.tracking[shipment.tracking_number] = {
            "status": "DELIVERED",
            "events": [{"timestamp": "2024-04-03T10:00:00Z", "status": "DELIVERED"}],
        }

        counts = await runner.run_tracking_sync()

        assert counts == {"updated": 1, "failed": 0}
        assert (await _load(session_factory, shipment_id)).status == ShipmentStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_carrier_error_is_counted_not_raised(self, db, gateway, test_settings, carrier_api, runner):
        await _shipped_shipment(db, gateway, test_settings, carrier_api)
        carrier_api.mode = "unavailable"

        assert await runner.run_tracking_sync() == {"updated": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_unchanged_shipments_rotate_through_batches(
        self, db, gateway, test_settings, carrier_api, runner, monkeypatch
    ):
        monkeypatch.setattr("vinclub.services.fulfillment_jobs.TRACKING_SYNC_BATCH_SIZE", 2)
        cave = await seed_cave(db, stocks=[9, 9, 9])
        subscription = await seed_subscription(db, cave)
        orchestrator = FulfillmentOrchestrator(db, gateway, settings=test_settings)
        tracking_numbers = []
        for period_key in ("2024-01-01", "2024-02-01", "2024-03-01"):
            result = await orchestrator.create_shipment(subscription.id, period_key=period_key)
            tracking_numbers.append(result.shipment.tracking_number)
            carrier_api.tracking[result.shipment.tracking_number] = {
                "status": "IN_TRANSIT",
                "events": [{"timestamp": "2024-04-02T10:00:00Z", "status": "IN_TRANSIT"}],
            }

        def polled():
            return [r.url.path.rsplit("/", 1)[-1] for r in carrier_api.requests if r.method == "GET"]

        await runner.run_tracking_sync()
        assert polled() == tracking_numbers[:2]

        await runner.run_tracking_sync()
        assert polled()[2] == tracking_numbers[2]
        assert set(polled()) == set(tracking_numbers)


class TestRunnerLifecycle:

    @pytest.mark.asyncio
    async def test_disabled_jobs_do_not_start(self, registry, test_settings):
        settings = test_settings.model_copy(update={"LABEL_RETRY_ENABLED": False, "TRACKING_SYNC_ENABLED": False})
        runner = FulfillmentJobRunner(registry, settings=settings)

        await runner.start()
        assert runner._tasks == []
        await runner.stop()

    @pytest.mark.asyncio
    async def test_start_runs_both_loops_and_stop_cancels(self, registry, test_settings):
        settings = test_settings.model_copy(update={"LABEL_RETRY_ENABLED": True, "TRACKING_SYNC_ENABLED": True})
        runner = FulfillmentJobRunner(registry, settings=settings)
        runner.run_label_retry = AsyncMock(return_value={"created": 0, "failed": 0})
        runner.run_tracking_sync = AsyncMock(return_value={"updated": 0, "failed": 0})

        await runner.start()
        await asyncio.sleep(0.01)
        await runner.stop()

        runner.run_label_retry.assert_awaited()
        runner.run_tracking_sync.assert_awaited()
        assert runner._tasks == []
