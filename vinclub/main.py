"""
Vinclub Fulfillment
FastAPI application entry point

- Billing webhook intake (/webhooks/stripe)
- Admin fulfillment triggers and status view
- Read models for shipments, tracking and subscriptions
- Background label retry and tracking sync
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from vinclub import __version__
from vinclub.api.routes import shipments, subscriptions, webhooks
from vinclub.core.config import settings
from vinclub.core.database import AsyncSessionLocal, init_db
from vinclub.core.redis_client import close_redis
from vinclub.modules.shipping.carriers import build_carrier_registry
from vinclub.services.fulfillment_jobs import FulfillmentJobRunner

# Import models to register them with SQLAlchemy
from vinclub.models import BillingEvent, Shipment, Subscription, TrackingInfo, WineCave  # noqa: F401

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the carrier registry and start background jobs on startup;
    stop them and release clients on shutdown.
    """
    if settings.DB_CREATE_TABLES:
        await init_db()

    registry = build_carrier_registry(settings)
    app.state.carrier_registry = registry

    jobs = FulfillmentJobRunner(registry, settings=settings)
    app.state.fulfillment_jobs = jobs
    await jobs.start()

    yield

    await jobs.stop()
    await registry.close()
    logger.info("Carrier HTTP clients closed")
    await close_redis()


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Billing-event-driven fulfillment for wine club subscriptions.",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(webhooks.router, tags=["Webhooks"])
app.include_router(subscriptions.router)
app.include_router(shipments.router)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Liveness with a database ping. Returns 503 if the database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
