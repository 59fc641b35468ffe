"""
API dependencies
"""
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from vinclub.core.config import settings
from vinclub.modules.shipping.carriers import CarrierRegistry
from vinclub.services.carrier_gateway import CarrierGateway
from vinclub.services.webhook_verifier import WebhookVerifier


def get_carrier_registry(request: Request) -> CarrierRegistry:
    """Registry built once at startup (see main.lifespan)."""
    registry = getattr(request.app.state, "carrier_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Carrier registry not initialized"
        )
    return registry


def get_gateway(registry: CarrierRegistry = Depends(get_carrier_registry)) -> CarrierGateway:
    return CarrierGateway(registry)


def get_verifier() -> WebhookVerifier:
    return WebhookVerifier(
        settings.STRIPE_WEBHOOK_SECRET,
        tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
    )


async def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """Require the admin token; admin routes are disabled when none is configured"""
    if not settings.ADMIN_API_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin interface is disabled"
        )

    if not x_admin_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin token"
        )

    if not hmac.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
