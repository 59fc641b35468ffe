"""
Idempotency ledger for billing events

try_claim() inserts the event id inside the caller's transaction. The
claim becomes durable only when that transaction commits, together with
every effect of the event; if processing fails and the transaction rolls
back, the claim disappears and the redelivered event is processed again.

Concurrent claims for the same id resolve through the UNIQUE constraint
on billing_events.event_id: exactly one insert wins.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.models.billing_event import BillingEvent, EventOutcome

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    claimed: bool
    entry: Optional[BillingEvent] = None


class IdempotencyLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def is_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(BillingEvent.id).where(BillingEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def try_claim(self, event_id: str, event_type: str) -> ClaimResult:
        """
        Claim an event id for processing.

        Must be the first write of the unit of work: on a lost race the
        session is rolled back to clear the failed insert.
        """
        if await self.is_processed(event_id):
            logger.info(f"Billing event {event_id} already processed, skipping")
            return ClaimResult(claimed=False)

        entry = BillingEvent(
            event_id=event_id,
            event_type=event_type,
            outcome=EventOutcome.CLAIMED.value,
        )
        self.db.add(entry)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Billing event {event_id} claimed concurrently by another worker")
            return ClaimResult(claimed=False)

        return ClaimResult(claimed=True, entry=entry)

    async def record_outcome(
        self,
        entry: BillingEvent,
        outcome: EventOutcome,
        subscription_id: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        entry.outcome = outcome.value
        if subscription_id is not None:
            entry.subscription_id = subscription_id
        if detail:
            entry.detail = detail[:2000]
        await self.db.flush()
