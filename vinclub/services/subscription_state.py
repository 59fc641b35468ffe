"""
Subscription state machine

The lifecycle is an explicit transition table keyed by
(current status, billing event kind). Any pair missing from the table is
a logged no-op: the processor sends informational events we do not model,
and cancelled is terminal because no row leaves it.

apply_transition() only mutates the Subscription object; persistence and
fulfillment are handled by the caller.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Dict, Optional, Tuple

from vinclub.core.exceptions import MalformedPayload
from vinclub.core.timeutils import as_utc, from_epoch, utcnow
from vinclub.models.subscription import Subscription, SubscriptionStatus
from vinclub.services.webhook_verifier import VerifiedEvent

logger = logging.getLogger(__name__)


class BillingEventKind(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    INVOICE_PAID = "invoice_paid"
    INVOICE_FAILED = "invoice_failed"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    CANCELLATION_REQUESTED = "cancellation_requested"  # Local, immediate cancel


# Processor event type -> domain event kind
EVENT_TYPE_MAP = MappingProxyType({
    "checkout.session.completed": BillingEventKind.CHECKOUT_COMPLETED,
    "invoice.payment_succeeded": BillingEventKind.INVOICE_PAID,
    "invoice.paid": BillingEventKind.INVOICE_PAID,
    "invoice.payment_failed": BillingEventKind.INVOICE_FAILED,
    "customer.subscription.deleted": BillingEventKind.SUBSCRIPTION_DELETED,
    "customer.subscription.updated": BillingEventKind.SUBSCRIPTION_UPDATED,
})


class Effect(str, enum.Enum):
    SET_PERIOD = "set_period"
    SET_DATE_PAID = "set_date_paid"
    ADVANCE_PERIOD = "advance_period"
    TRIGGER_FULFILLMENT = "trigger_fulfillment"
    SET_END_DATE = "set_end_date"
    SYNC_SUBSCRIPTION = "sync_subscription"


@dataclass(frozen=True)
class Transition:
    next_status: SubscriptionStatus
    effects: Tuple[Effect, ...] = ()


S = SubscriptionStatus
K = BillingEventKind

TRANSITIONS = MappingProxyType({
    (S.INCOMPLETE, K.CHECKOUT_COMPLETED): Transition(S.ACTIVE, (Effect.SET_PERIOD, Effect.SET_DATE_PAID)),
    (S.ACTIVE, K.INVOICE_PAID): Transition(S.ACTIVE, (Effect.ADVANCE_PERIOD, Effect.TRIGGER_FULFILLMENT)),
    (S.ACTIVE, K.INVOICE_FAILED): Transition(S.PAST_DUE),
    (S.PAST_DUE, K.INVOICE_PAID): Transition(S.ACTIVE, (Effect.ADVANCE_PERIOD, Effect.TRIGGER_FULFILLMENT)),
    (S.PAST_DUE, K.SUBSCRIPTION_DELETED): Transition(S.CANCELLED, (Effect.SET_END_DATE,)),
    (S.ACTIVE, K.SUBSCRIPTION_DELETED): Transition(S.CANCELLED, (Effect.SET_END_DATE,)),
    (S.ACTIVE, K.SUBSCRIPTION_UPDATED): Transition(S.ACTIVE, (Effect.SYNC_SUBSCRIPTION,)),
    (S.PAST_DUE, K.SUBSCRIPTION_UPDATED): Transition(S.PAST_DUE, (Effect.SYNC_SUBSCRIPTION,)),
    (S.ACTIVE, K.CANCELLATION_REQUESTED): Transition(S.CANCELLED, (Effect.SET_END_DATE,)),
    (S.PAST_DUE, K.CANCELLATION_REQUESTED): Transition(S.CANCELLED, (Effect.SET_END_DATE,)),
})

del S, K


@dataclass
class BillingPayload:
    """Fields of a billing event the state machine cares about."""
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: Optional[bool] = None
    ended_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    shipping: Optional[Dict[str, Any]] = None


@dataclass
class TransitionResult:
    applied: bool
    previous_status: SubscriptionStatus
    next_status: SubscriptionStatus
    fulfill: bool = False
    billing_period_key: Optional[str] = None


def resolve_event_kind(event_type: str) -> Optional[BillingEventKind]:
    return EVENT_TYPE_MAP.get(event_type)


def billing_period_key(period_start: datetime) -> str:
    return as_utc(period_start).date().isoformat()


def _invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    # The line item carries the service period being paid for; the invoice-level
    # period_start/end describe the previous cycle for subscription renewals.
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        period = line.get("period") or {}
        if period.get("start") and period.get("end"):
            return from_epoch(period["start"]), from_epoch(period["end"])
    return from_epoch(invoice.get("period_start")), from_epoch(invoice.get("period_end"))


def extract_payload(event: VerifiedEvent) -> BillingPayload:
    """
    Pull subscription id, period bounds and metadata out of a processor object.

    Raises:
        MalformedPayload: The object does not have the shape of its event type
    """
    try:
        payload = _extract_payload(event)
    except (AttributeError, TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedPayload(
            f"Event {event.id} ({event.type}) has a malformed object: {e}",
            details={"event_id": event.id, "event_type": event.type},
        )

    for name in ("metadata", "shipping"):
        value = getattr(payload, name)
        if value is not None and not isinstance(value, dict):
            raise MalformedPayload(
                f"Event {event.id} ({event.type}) has a non-object {name}",
                details={"event_id": event.id, "event_type": event.type},
            )
    if payload.shipping and not isinstance(payload.shipping.get("address") or {}, dict):
        raise MalformedPayload(
            f"Event {event.id} ({event.type}) has a non-object shipping address",
            details={"event_id": event.id, "event_type": event.type},
        )
    return payload


def _extract_payload(event: VerifiedEvent) -> BillingPayload:
    obj = event.data
    kind = resolve_event_kind(event.type)

    if kind == BillingEventKind.CHECKOUT_COMPLETED:
        shipping = obj.get("shipping_details") or obj.get("customer_details") or None
        return BillingPayload(
            external_subscription_id=obj.get("subscription"),
            external_customer_id=obj.get("customer"),
            metadata=obj.get("metadata") or {},
            shipping=shipping,
        )

    if kind in (BillingEventKind.INVOICE_PAID, BillingEventKind.INVOICE_FAILED):
        start, end = _invoice_period(obj)
        return BillingPayload(
            external_subscription_id=obj.get("subscription"),
            external_customer_id=obj.get("customer"),
            period_start=start,
            period_end=end,
            metadata=obj.get("metadata") or {},
        )

    if kind in (BillingEventKind.SUBSCRIPTION_UPDATED, BillingEventKind.SUBSCRIPTION_DELETED):
        return BillingPayload(
            external_subscription_id=obj.get("id"),
            external_customer_id=obj.get("customer"),
            period_start=from_epoch(obj.get("current_period_start")),
            period_end=from_epoch(obj.get("current_period_end")),
            cancel_at_period_end=obj.get("cancel_at_period_end"),
            ended_at=from_epoch(obj.get("ended_at") or obj.get("canceled_at")),
            metadata=obj.get("metadata") or {},
        )

    return BillingPayload(metadata=obj.get("metadata") or {})


def _next_period(
    subscription: Subscription,
    payload: BillingPayload,
    now: datetime,
    period_days: int,
) -> Tuple[datetime, datetime]:
    if payload.period_start and payload.period_end and payload.period_end >= payload.period_start:
        return payload.period_start, payload.period_end
    start = as_utc(subscription.current_period_end) or now
    if payload.period_start:
        start = payload.period_start
    return start, start + timedelta(days=period_days)


def apply_transition(
    subscription: Subscription,
    kind: BillingEventKind,
    payload: BillingPayload,
    period_days: int = 30,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """
    Apply one billing event to a subscription under the transition table.

    Returns a result with applied=False (and the subscription untouched)
    when (status, kind) is not in the table.
    """
    now = now or utcnow()
    current = SubscriptionStatus(subscription.status)
    transition = TRANSITIONS.get((current, kind))

    if transition is None:
        logger.info(
            f"Unmodeled transition for subscription {subscription.id}: "
            f"({current.value}, {kind.value}), ignoring"
        )
        return TransitionResult(applied=False, previous_status=current, next_status=current)

    result = TransitionResult(applied=True, previous_status=current, next_status=transition.next_status)

    for effect in transition.effects:
        if effect == Effect.SET_PERIOD:
            start = payload.period_start or now
            end = payload.period_end
            if end is None or end < start:
                end = start + timedelta(days=period_days)
            subscription.current_period_start = start
            subscription.current_period_end = end

        elif effect == Effect.SET_DATE_PAID:
            subscription.date_paid = now

        elif effect == Effect.ADVANCE_PERIOD:
            start, end = _next_period(subscription, payload, now, period_days)
            previous_start = as_utc(subscription.current_period_start)
            # A late invoice for an older cycle must not move the period backwards
            if previous_start is None or start >= previous_start:
                subscription.current_period_start = start
                subscription.current_period_end = end
            subscription.date_paid = now
            result.billing_period_key = billing_period_key(start)

        elif effect == Effect.TRIGGER_FULFILLMENT:
            result.fulfill = True

        elif effect == Effect.SET_END_DATE:
            subscription.end_date = payload.ended_at or now
            subscription.cancel_at_period_end = False

        elif effect == Effect.SYNC_SUBSCRIPTION:
            if payload.cancel_at_period_end is not None:
                subscription.cancel_at_period_end = bool(payload.cancel_at_period_end)
            if payload.period_start and payload.period_end and payload.period_end >= payload.period_start:
                subscription.current_period_start = payload.period_start
                subscription.current_period_end = payload.period_end

    subscription.status = transition.next_status

    if current != transition.next_status:
        logger.info(
            f"Subscription {subscription.id}: {current.value} -> {transition.next_status.value} ({kind.value})"
        )
    return result
