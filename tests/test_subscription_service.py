"""
Tests for subscription cancellation requests.
"""
from unittest.mock import patch

import pytest
import stripe

from conftest import seed_cave, seed_subscription
from vinclub.core.exceptions import SubscriptionError, SubscriptionNotFound
from vinclub.models import SubscriptionStatus
from vinclub.services.subscription_service import SubscriptionService


@pytest.fixture
def stripe_settings(test_settings):
    return test_settings.model_copy(update={"STRIPE_SECRET_KEY": "sk_test_123"})


class TestCancelSubscription:

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_only_sets_flag(self, db, stripe_settings):
        cave = await seed_cave(db)
        subscription = await seed_subscription(db, cave)

        with patch("stripe.Subscription.modify") as modify:
            result = await SubscriptionService(db, settings=stripe_settings).cancel_subscription(subscription.id)

        modify.assert_called_once_with("sub_123", cancel_at_period_end=True)
        assert result.status == SubscriptionStatus.ACTIVE
        assert result.cancel_at_period_end is True

    @pytest.mark.asyncio
    async def test_immediate_cancel(self, db, stripe_settings):
        cave = await seed_cave(db)
        subscription = await seed_subscription(db, cave)

        with patch("stripe.Subscription.cancel") as cancel:
            result = await SubscriptionService(db, settings=stripe_settings).cancel_subscription(
                subscription.id, at_period_end=False
            )

        cancel.assert_called_once_with("sub_123")
        assert result.status == SubscriptionStatus.CANCELLED
        assert result.end_date is not None

    @pytest.mark.asyncio
    async def test_processor_failure_changes_nothing(self, db, stripe_settings):
        cave = await seed_cave(db)
        subscription = await seed_subscription(db, cave)

        with patch("stripe.Subscription.cancel", side_effect=stripe.APIConnectionError("network down")):
            with pytest.raises(SubscriptionError) as exc_info:
                await SubscriptionService(db, settings=stripe_settings).cancel_subscription(
                    subscription.id, at_period_end=False
                )

        assert exc_info.value.code == "SUBSCRIPTION_CANCEL_FAILED"
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_incomplete_subscription_cannot_be_cancelled_immediately(self, db, stripe_settings):
        cave = await seed_cave(db)
        subscription = await seed_subscription(db, cave, status=SubscriptionStatus.INCOMPLETE)

        with patch("stripe.Subscription.cancel") as cancel:
            with pytest.raises(SubscriptionError) as exc_info:
                await SubscriptionService(db, settings=stripe_settings).cancel_subscription(
                    subscription.id, at_period_end=False
                )

        assert exc_info.value.code == "SUBSCRIPTION_CANCEL_INVALID"
        cancel.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_cancelled_is_a_noop(self, db, stripe_settings):
        cave = await seed_cave(db)
        subscription = await seed_subscription(db, cave, status=SubscriptionStatus.CANCELLED)

        with patch("stripe.Subscription.cancel") as cancel:
            result = await SubscriptionService(db, settings=stripe_settings).cancel_subscription(
                subscription.id, at_period_end=False
            )

        assert result.status == SubscriptionStatus.CANCELLED
        cancel.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, db, test_settings):
        with pytest.raises(SubscriptionNotFound):
            await SubscriptionService(db, settings=test_settings).cancel_subscription(404)
