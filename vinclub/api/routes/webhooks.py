"""
Webhook Routes

Inbound billing processor events. Responds 400 to anything that fails
verification so the processor does not keep retrying a forged or broken
delivery, and 500 to processing failures so it redelivers.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.api.deps import get_gateway, get_verifier
from vinclub.core.database import get_db
from vinclub.core.exceptions import WebhookError
from vinclub.services.carrier_gateway import CarrierGateway
from vinclub.services.webhook_processor import BillingEventProcessor
from vinclub.services.webhook_verifier import WebhookVerifier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: CarrierGateway = Depends(get_gateway),
    verifier: WebhookVerifier = Depends(get_verifier),
):
    """
    Handle a Stripe billing event.

    - 200: processed, duplicate, ignored or no-op
    - 400: bad signature, expired timestamp or malformed payload
    - 500: processing failed before commit; nothing was recorded
    """
    body = await request.body()
    sig_header = request.headers.get("Stripe-Signature")

    processor = BillingEventProcessor(db, gateway, verifier)
    try:
        result = await processor.handle(body, sig_header)
    except WebhookError as e:
        await db.rollback()
        logger.warning(f"Webhook rejected ({e.code}): {e.message}")
        return JSONResponse(status_code=400, content=e.to_dict())
    except Exception as e:
        await db.rollback()
        logger.exception(f"Webhook processing failed: {type(e).__name__}")
        return JSONResponse(
            status_code=500,
            content={"error": "PROCESSING_FAILED", "message": "Event not processed"},
        )

    return result.to_dict()
