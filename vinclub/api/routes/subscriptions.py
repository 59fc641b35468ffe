"""
Subscription Routes
"""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.api.deps import require_admin
from vinclub.core.database import get_db
from vinclub.core.exceptions import SubscriptionError, SubscriptionNotFound
from vinclub.schemas.subscription import CancelSubscriptionRequest, SubscriptionResponse
from vinclub.services import read_models
from vinclub.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: int, db: AsyncSession = Depends(get_db)):
    try:
        return await read_models.get_subscription(db, subscription_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post(
    "/{subscription_id}/cancel",
    response_model=SubscriptionResponse,
    dependencies=[Depends(require_admin)],
)
async def cancel_subscription(
    subscription_id: int,
    body: CancelSubscriptionRequest = CancelSubscriptionRequest(),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel a subscription at the billing processor and locally.

    at_period_end=true (default) keeps shipping until the current period
    ends; the processor's deletion event finishes the cancellation.
    """
    service = SubscriptionService(db)
    try:
        subscription = await service.cancel_subscription(subscription_id, at_period_end=body.at_period_end)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except SubscriptionError as e:
        raise HTTPException(status_code=409, detail=e.message)

    await db.commit()
    return subscription
