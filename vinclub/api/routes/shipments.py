"""
Shipment, tracking and rate routes

Admin triggers (create shipment, generate label, edit) reuse the same
FulfillmentOrchestrator as the webhook path.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.api.deps import get_gateway, require_admin
from vinclub.core.database import get_db
from vinclub.core.exceptions import (
    CarrierError,
    FulfillmentError,
    ShipmentNotFound,
    SubscriptionNotFound,
    UnsupportedCarrier,
    VinclubError,
)
from vinclub.models.shipment import ShipmentStatus
from vinclub.modules.shipping.carriers.base import AddressInput, LabelRequest, Package
from vinclub.schemas.shipping import (
    LabelRequestBody,
    RateQuoteRequest,
    RateQuoteResponse,
    ShipmentCreate,
    ShipmentResponse,
    ShipmentUpdate,
    StatusSummaryResponse,
    TrackingInfoResponse,
)
from vinclub.services import read_models
from vinclub.services.carrier_gateway import CarrierGateway
from vinclub.services.fulfillment import BOTTLE_DIMENSIONS_CM, BOTTLE_WEIGHT_KG, FulfillmentOrchestrator
from vinclub.services.tracking_service import TrackingService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["shipping"])


def _http_error(e: VinclubError) -> HTTPException:
    """Map a domain error to the HTTP status admin callers see."""
    if isinstance(e, (ShipmentNotFound, SubscriptionNotFound)):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, UnsupportedCarrier):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, CarrierError):
        return HTTPException(status_code=502, detail=e.message)
    if isinstance(e, FulfillmentError):
        return HTTPException(status_code=409, detail=e.message)
    return HTTPException(status_code=400, detail=e.message)


# ==================== Shipments ====================


@router.get("/shipments", response_model=List[ShipmentResponse])
async def list_shipments(
    subscription_id: Optional[int] = None,
    wine_cave_id: Optional[int] = None,
    status_filter: Optional[ShipmentStatus] = Query(None, alias="status"),
    under_fulfilled: Optional[bool] = None,
    label_missing: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Shipments, newest first."""
    filters = read_models.ShipmentFilter(
        subscription_id=subscription_id,
        wine_cave_id=wine_cave_id,
        status=status_filter,
        under_fulfilled=under_fulfilled,
        label_missing=label_missing,
    )
    return await read_models.get_shipments(db, filters, limit=limit, offset=offset)


@router.get(
    "/shipments/status-summary",
    response_model=StatusSummaryResponse,
    dependencies=[Depends(require_admin)],
)
async def shipment_status_summary(
    wine_cave_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
):
    return await read_models.get_status_summary(db, wine_cave_id=wine_cave_id)


@router.get("/shipments/{shipment_id}", response_model=ShipmentResponse)
async def get_shipment(
    shipment_id: int,
    db: AsyncSession = Depends(get_db),
    gateway: CarrierGateway = Depends(get_gateway),
):
    try:
        return await FulfillmentOrchestrator(db, gateway).get_shipment(shipment_id)
    except ShipmentNotFound as e:
        raise _http_error(e)


@router.post(
    "/shipments",
    response_model=ShipmentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def create_shipment(
    body: ShipmentCreate,
    db: AsyncSession = Depends(get_db),
    gateway: CarrierGateway = Depends(get_gateway),
):
    """
    Manually fulfill a subscription's billing period.

    Returns the existing shipment if the period was already fulfilled.
    A label failure does not fail the request: the shipment comes back
    pending with label_missing=true.
    """
    orchestrator = FulfillmentOrchestrator(db, gateway)
    try:
        result = await orchestrator.create_shipment(
            body.subscription_id,
            carrier=body.carrier,
            period_key=body.billing_period_key,
        )
    except VinclubError as e:
        raise _http_error(e)

    return result.shipment


@router.post(
    "/shipments/{shipment_id}/label",
    response_model=ShipmentResponse,
    dependencies=[Depends(require_admin)],
)
async def generate_shipping_label(
    shipment_id: int,
    body: LabelRequestBody = LabelRequestBody(),
    db: AsyncSession = Depends(get_db),
    gateway: CarrierGateway = Depends(get_gateway),
):
    """Generate the label for a label-less pending shipment."""
    orchestrator = FulfillmentOrchestrator(db, gateway)
    try:
        return await orchestrator.generate_shipping_label(shipment_id, carrier=body.carrier)
    except VinclubError as e:
        # The failed attempt is already committed on the shipment
        logger.warning(f"Manual label for shipment {shipment_id} failed: {e.message}")
        raise _http_error(e)


@router.patch(
    "/shipments/{shipment_id}",
    response_model=ShipmentResponse,
    dependencies=[Depends(require_admin)],
)
async def update_shipment(
    shipment_id: int,
    body: ShipmentUpdate,
    db: AsyncSession = Depends(get_db),
    gateway: CarrierGateway = Depends(get_gateway),
):
    orchestrator = FulfillmentOrchestrator(db, gateway)
    try:
        shipment = await orchestrator.update_shipment(
            shipment_id,
            carrier=body.carrier,
            service_level=body.service_level,
        )
    except VinclubError as e:
        raise _http_error(e)

    await db.commit()
    return shipment


# ==================== Tracking ====================


@router.get("/tracking/{tracking_number}", response_model=TrackingInfoResponse)
async def get_tracking(
    tracking_number: str,
    refresh: bool = False,
    db: AsyncSession = Depends(get_db),
    gateway: CarrierGateway = Depends(get_gateway),
):
    """
    Stored tracking status. refresh=true polls the carrier first and
    falls back to the stored record if the carrier cannot be reached.
    """
    if refresh:
        info = await TrackingService(db, gateway).track_shipment(tracking_number)
    else:
        info = await read_models.get_tracking_info(db, tracking_number)

    if info is None:
        raise HTTPException(status_code=404, detail="Tracking number not found")
    return info


# ==================== Rates ====================


def _address(a) -> AddressInput:
    return AddressInput(
        name=a.name,
        address1=a.address1,
        address2=a.address2,
        city=a.city,
        postal_code=a.postal_code,
        country=a.country,
        phone=a.phone,
    )


@router.post("/shipping/rates", response_model=RateQuoteResponse)
async def get_rates(
    body: RateQuoteRequest,
    gateway: CarrierGateway = Depends(get_gateway),
):
    """Quotes from every carrier; cached or static rates when none answer."""
    length, width, height = BOTTLE_DIMENSIONS_CM
    request = LabelRequest(
        from_address=_address(body.from_address),
        to_address=_address(body.to_address),
        packages=[
            Package(weight=BOTTLE_WEIGHT_KG, length=length, width=width, height=height)
            for _ in range(body.bottles)
        ],
        service=body.service,
    )
    quote = await gateway.get_rates(request)
    return RateQuoteResponse(source=quote.source, rates=quote.rates)
