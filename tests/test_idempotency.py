"""
Tests for the billing event ledger.
"""
from unittest.mock import MagicMock

import pytest

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from vinclub.models.billing_event import BillingEvent, EventOutcome
from vinclub.services.idempotency import IdempotencyLedger


class TestIdempotencyLedger:

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, db):
        ledger = IdempotencyLedger(db)

        claim = await ledger.try_claim("evt_1", "invoice.paid")
        assert claim.claimed is True
        assert claim.entry.outcome == EventOutcome.CLAIMED.value

    @pytest.mark.asyncio
    async def test_committed_claim_blocks_redelivery(self, db):
        ledger = IdempotencyLedger(db)
        claim = await ledger.try_claim("evt_1", "invoice.paid")
        await ledger.record_outcome(claim.entry, EventOutcome.APPLIED)
        await db.commit()

        second = await ledger.try_claim("evt_1", "invoice.paid")
        assert second.claimed is False
        assert await ledger.is_processed("evt_1") is True

    @pytest.mark.asyncio
    async def test_rolled_back_claim_is_forgotten(self, db):
        """A claim only persists with the transaction that made it."""
        ledger = IdempotencyLedger(db)
        await ledger.try_claim("evt_1", "invoice.paid")
        await db.rollback()

        assert await ledger.is_processed("evt_1") is False
        retry = await ledger.try_claim("evt_1", "invoice.paid")
        assert retry.claimed is True

    @pytest.mark.asyncio
    async def test_concurrent_claim_loses_on_unique_constraint(self, session_factory):
        async with session_factory() as first, session_factory() as second:
            won = await IdempotencyLedger(first).try_claim("evt_race", "invoice.paid")
            await first.commit()

            # Second worker checked before the first committed
            ledger = IdempotencyLedger(second)
            ledger.is_processed = _never_processed
            lost = await ledger.try_claim("evt_race", "invoice.paid")

        assert won.claimed is True
        assert lost.claimed is False

        async with session_factory() as check:
            count = await check.execute(
                select(func.count(BillingEvent.id)).where(BillingEvent.event_id == "evt_race")
            )
            assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_record_outcome_truncates_detail(self, db):
        ledger = IdempotencyLedger(db)
        claim = await ledger.try_claim("evt_1", "invoice.paid")

        await ledger.record_outcome(claim.entry, EventOutcome.NOOP, subscription_id=None, detail="x" * 5000)

        assert claim.entry.outcome == "noop"
        assert len(claim.entry.detail) == 2000


async def _never_processed(event_id: str) -> bool:
    return False

    @pytest.mark.asyncio
    async def test_lost_race_rolls_back_session(self, mock_db):
        lookup = MagicMock()
        lookup.scalar_one_or_none.return_value = None
        mock_db.execute.return_value = lookup
        mock_db.flush.side_effect = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        claim = await IdempotencyLedger(mock_db).try_claim("evt_race", "invoice.paid")

        assert claim.claimed is False
        assert claim.entry is None
        mock_db.rollback.assert_awaited_once()
