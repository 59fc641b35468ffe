"""
Subscription cancellation requests

Cancels at the billing processor first, then applies the change locally.
At-period-end cancellation only sets the flag; the processor's
customer.subscription.deleted event later moves the subscription to
cancelled. Immediate cancellation goes through the state machine.
"""
import logging
from typing import Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.core.config import settings as default_settings
from vinclub.core.exceptions import SubscriptionError, SubscriptionNotFound
from vinclub.models.subscription import Subscription, SubscriptionStatus
from vinclub.services.subscription_state import (
    BillingEventKind,
    BillingPayload,
    TRANSITIONS,
    apply_transition,
)

logger = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(self, db: AsyncSession, settings=None):
        self.db = db
        self.settings = settings or default_settings

    def _cancel_at_processor(self, external_id: str, at_period_end: bool) -> None:
        if not self.settings.STRIPE_SECRET_KEY:
            logger.warning(f"STRIPE_SECRET_KEY not set, cancelling {external_id} locally only")
            return
        stripe.api_key = self.settings.STRIPE_SECRET_KEY
        try:
            if at_period_end:
                stripe.Subscription.modify(external_id, cancel_at_period_end=True)
            else:
                stripe.Subscription.cancel(external_id)
        except stripe.StripeError as e:
            logger.error(f"Stripe cancellation failed for {external_id}: {e}")
            raise SubscriptionError(
                f"Billing processor refused cancellation: {getattr(e, 'user_message', None) or str(e)}",
                code="SUBSCRIPTION_CANCEL_FAILED",
                details={"external_subscription_id": external_id},
            )

    async def cancel_subscription(self, subscription_id: int, at_period_end: bool = True) -> Subscription:
        """
        Request cancellation. Does not commit.

        Raises:
            SubscriptionNotFound: Unknown subscription
            SubscriptionError: Processor call failed (nothing changed locally)
        """
        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id).with_for_update()
        )
        subscription: Optional[Subscription] = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)

        if subscription.status == SubscriptionStatus.CANCELLED:
            logger.info(f"Subscription {subscription_id} already cancelled")
            return subscription

        if not at_period_end and (subscription.status, BillingEventKind.CANCELLATION_REQUESTED) not in TRANSITIONS:
            raise SubscriptionError(
                f"Subscription {subscription_id} cannot be cancelled from {subscription.status.value}",
                code="SUBSCRIPTION_CANCEL_INVALID",
                details={"subscription_id": subscription_id, "status": subscription.status.value},
            )

        if subscription.external_subscription_id:
            self._cancel_at_processor(subscription.external_subscription_id, at_period_end)

        if at_period_end:
            subscription.cancel_at_period_end = True
            logger.info(f"Subscription {subscription_id} will cancel at period end")
        else:
            apply_transition(
                subscription,
                BillingEventKind.CANCELLATION_REQUESTED,
                BillingPayload(),
                period_days=self.settings.BILLING_PERIOD_DAYS,
            )

        await self.db.flush()
        return subscription
