"""
Billing event processor

verify -> claim -> transition -> (invoice paid) allocate + shipment -> commit -> label

Everything up to the commit is one transaction: the ledger claim, the
subscription change, the stock decrement and the shipment rows persist
together or not at all. If anything before the commit raises, the
transaction is rolled back, the claim disappears with it and the
processor's redelivery is processed from scratch.

The label request runs after the commit and never undoes it.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.core.config import settings as default_settings
from vinclub.models.billing_event import EventOutcome
from vinclub.models.shipment import ShipmentStatus
from vinclub.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from vinclub.models.wine_cave import WineCave
from vinclub.services.carrier_gateway import CarrierGateway
from vinclub.services.fulfillment import FulfillmentOrchestrator
from vinclub.services.idempotency import IdempotencyLedger
from vinclub.services.subscription_state import (
    BillingEventKind,
    BillingPayload,
    apply_transition,
    extract_payload,
    resolve_event_kind,
)
from vinclub.services.webhook_verifier import VerifiedEvent, WebhookVerifier

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    status: str  # processed | duplicate | ignored | noop
    event_id: str
    event_type: str
    subscription_id: Optional[int] = None
    shipment_id: Optional[int] = None
    label_created: Optional[bool] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


def _metadata_int(metadata: dict, *keys: str) -> Optional[int]:
    for key in keys:
        value = metadata.get(key)
        if value not in (None, ""):
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    return None


class BillingEventProcessor:
    def __init__(self, db: AsyncSession, gateway: CarrierGateway, verifier: WebhookVerifier, settings=None):
        self.db = db
        self.gateway = gateway
        self.verifier = verifier
        self.settings = settings or default_settings

    async def handle(self, payload: bytes, sig_header: Optional[str]) -> ProcessResult:
        """
        Process one inbound webhook delivery.

        Raises:
            WebhookError: Signature, timestamp or payload rejected (caller rolls back)
            Exception: Any failure before commit (transaction rolled back)
        """
        event = self.verifier.verify(payload, sig_header)
        logger.info(f"Billing event received: {event.type} (event_id={event.id})")
        return await self.process(event)

    async def process(self, event: VerifiedEvent) -> ProcessResult:
        ledger = IdempotencyLedger(self.db)
        claim = await ledger.try_claim(event.id, event.type)
        if not claim.claimed:
            return ProcessResult(status="duplicate", event_id=event.id, event_type=event.type)

        kind = resolve_event_kind(event.type)
        if kind is None:
            logger.info(f"Unhandled billing event type: {event.type}")
            await ledger.record_outcome(claim.entry, EventOutcome.IGNORED)
            await self.db.commit()
            return ProcessResult(status="ignored", event_id=event.id, event_type=event.type)

        payload = extract_payload(event)
        subscription = await self._load_subscription(kind, payload, event)
        if subscription is None:
            await ledger.record_outcome(claim.entry, EventOutcome.NOOP, detail="subscription not found")
            await self.db.commit()
            return ProcessResult(status="noop", event_id=event.id, event_type=event.type)

        transition = apply_transition(
            subscription,
            kind,
            payload,
            period_days=self.settings.BILLING_PERIOD_DAYS,
        )
        outcome = EventOutcome.APPLIED if transition.applied else EventOutcome.NOOP
        await ledger.record_outcome(
            claim.entry,
            outcome,
            subscription_id=subscription.id,
            detail=f"{transition.previous_status.value} -> {transition.next_status.value}",
        )

        result = ProcessResult(
            status="processed" if transition.applied else "noop",
            event_id=event.id,
            event_type=event.type,
            subscription_id=subscription.id,
        )

        orchestrator = FulfillmentOrchestrator(self.db, self.gateway, settings=self.settings)
        fulfillment = None
        if transition.fulfill:
            fulfillment = await orchestrator.create_shipment_record(subscription, transition.billing_period_key)
            result.shipment_id = fulfillment.shipment.id

        await self.db.commit()

        if fulfillment is not None and fulfillment.created and fulfillment.shipment.status == ShipmentStatus.PENDING:
            shipment_id = fulfillment.shipment.id
            try:
                attempt = await orchestrator.request_label(fulfillment.shipment)
                result.label_created = attempt.succeeded
            except Exception:
                # Event is already committed; the label retry job picks the shipment up
                await self.db.rollback()
                logger.exception(f"Label step crashed for shipment {shipment_id}")
                result.label_created = False

        return result

    async def _load_subscription(
        self,
        kind: BillingEventKind,
        payload: BillingPayload,
        event: VerifiedEvent,
    ) -> Optional[Subscription]:
        """Lock the subscription named by the event; checkout may create it."""
        subscription = None
        if payload.external_subscription_id:
            result = await self.db.execute(
                select(Subscription)
                .where(Subscription.external_subscription_id == payload.external_subscription_id)
                .with_for_update()
            )
            subscription = result.scalar_one_or_none()

        if subscription is None and kind == BillingEventKind.CHECKOUT_COMPLETED:
            subscription = await self._create_from_checkout(payload, event)

        if subscription is None:
            logger.warning(
                f"Billing event {event.id} ({event.type}) references unknown subscription "
                f"{payload.external_subscription_id!r}"
            )
        return subscription

    async def _create_from_checkout(self, payload: BillingPayload, event: VerifiedEvent) -> Optional[Subscription]:
        metadata = payload.metadata or {}
        member_id = metadata.get("member_id") or metadata.get("userId")
        wine_cave_id = _metadata_int(metadata, "wine_cave_id", "wineCaveId")
        tier_id = _metadata_int(metadata, "tier_id", "subscriptionTierId")

        if not member_id or wine_cave_id is None or tier_id is None:
            logger.warning(f"Checkout {event.id} missing member_id/wine_cave_id/tier_id metadata")
            return None

        if await self.db.get(WineCave, wine_cave_id) is None or await self.db.get(SubscriptionTier, tier_id) is None:
            logger.warning(f"Checkout {event.id} references unknown wine cave {wine_cave_id} or tier {tier_id}")
            return None

        shipping = payload.shipping or {}
        address = shipping.get("address") or {}
        subscription = Subscription(
            member_id=str(member_id),
            wine_cave_id=wine_cave_id,
            tier_id=tier_id,
            external_subscription_id=payload.external_subscription_id,
            external_customer_id=payload.external_customer_id,
            status=SubscriptionStatus.INCOMPLETE,
            cancel_at_period_end=False,
            recipient_name=shipping.get("name"),
            address_line1=address.get("line1"),
            address_line2=address.get("line2"),
            city=address.get("city"),
            postal_code=address.get("postal_code"),
            country_code=address.get("country") or "FR",
            phone=shipping.get("phone"),
            email=shipping.get("email"),
        )
        self.db.add(subscription)
        await self.db.flush()
        logger.info(f"Subscription {subscription.id} created from checkout {event.id} for member {member_id}")
        return subscription
