"""
Fulfillment orchestrator

Turns a paid billing period into a shipment in two phases:

1. create_shipment_record(): inside the caller's transaction, check for an
   existing shipment for (subscription, billing period), allocate wines
   and write Shipment + ShipmentItems. Stock decrement and shipment rows
   commit together or not at all.
2. request_label(): after that transaction has committed, ask the carrier
   for a label. A failure leaves the shipment PENDING with the error
   recorded; it is never rolled back. The retry job or a manual
   generate_shipping_label() call completes it later.

Webhook-driven and manual fulfillment both go through this class.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.core.config import settings as default_settings
from vinclub.core.exceptions import (
    CarrierError,
    CarrierRejected,
    ShipmentNotFound,
    SubscriptionNotFound,
    FulfillmentError,
    UnsupportedCarrier,
)
from vinclub.core.timeutils import utcnow
from vinclub.models.shipment import Shipment, ShipmentItem, ShipmentStatus, TrackingInfo, TrackingStatus
from vinclub.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from vinclub.models.wine_cave import WineCave
from vinclub.modules.shipping.carriers import normalize_carrier_name
from vinclub.modules.shipping.carriers.base import AddressInput, LabelRequest, Package
from vinclub.services.allocator import AllocationResult, InventoryAllocator
from vinclub.services.carrier_gateway import CarrierGateway
from vinclub.services.subscription_state import billing_period_key

logger = logging.getLogger(__name__)

# Per-bottle parcel: kg / cm
BOTTLE_WEIGHT_KG = 1.5
BOTTLE_DIMENSIONS_CM = (30.0, 10.0, 10.0)

NO_STOCK_ERROR = "no stock allocated"


@dataclass
class LabelAttempt:
    shipment: Shipment
    succeeded: bool
    error: Optional[CarrierError] = None


@dataclass
class FulfillmentResult:
    shipment: Shipment
    created: bool
    allocation: Optional[AllocationResult] = None
    label: Optional[LabelAttempt] = None


def shipment_reference(shipment: Shipment) -> str:
    return f"WINE-{shipment.id}"


class FulfillmentOrchestrator:
    def __init__(self, db: AsyncSession, gateway: CarrierGateway, settings=None):
        self.db = db
        self.gateway = gateway
        self.settings = settings or default_settings

    # ==================== Phase 1: allocation ====================

    async def get_shipment_for_period(self, subscription_id: int, period_key: str) -> Optional[Shipment]:
        result = await self.db.execute(
            select(Shipment).where(
                Shipment.subscription_id == subscription_id,
                Shipment.billing_period_key == period_key,
            )
        )
        return result.scalar_one_or_none()

    async def create_shipment_record(
        self,
        subscription: Subscription,
        period_key: str,
        carrier: Optional[str] = None,
    ) -> FulfillmentResult:
        """
        Allocate wines and record the shipment for one billing period.

        Does not commit. A shipment that already exists for the period is
        returned unchanged with created=False.
        """
        existing = await self.get_shipment_for_period(subscription.id, period_key)
        if existing:
            logger.info(
                f"Shipment {existing.id} already exists for subscription {subscription.id} "
                f"period {period_key}, skipping allocation"
            )
            return FulfillmentResult(shipment=existing, created=False)

        tier = await self.db.get(SubscriptionTier, subscription.tier_id)
        bottles = tier.bottles_per_month if tier else 0
        allocator = InventoryAllocator(self.db, order=self.settings.ALLOCATION_ORDER)
        allocation = await allocator.allocate(subscription.wine_cave_id, bottles)

        shipment = Shipment(
            subscription_id=subscription.id,
            wine_cave_id=subscription.wine_cave_id,
            billing_period_key=period_key,
            status=ShipmentStatus.PENDING,
            bottles_requested=bottles,
            under_fulfilled=allocation.under_fulfilled,
            carrier=normalize_carrier_name(carrier or self.settings.DEFAULT_CARRIER),
            service_level="standard",
            label_attempts=0,
            label_retriable=True,
            items=[
                ShipmentItem(wine_id=a.wine_id, quantity=a.quantity, description=a.description)
                for a in allocation.allocations
            ],
        )

        if not allocation.allocations:
            shipment.status = ShipmentStatus.FAILED
            shipment.label_retriable = False
            shipment.last_label_error = NO_STOCK_ERROR
            logger.error(
                f"No stock in cave {subscription.wine_cave_id} for subscription {subscription.id} "
                f"period {period_key}; shipment recorded as failed"
            )

        self.db.add(shipment)
        await self.db.flush()

        logger.info(
            f"Shipment {shipment.id} created for subscription {subscription.id} period {period_key}: "
            f"{allocation.allocated}/{bottles} bottles"
        )
        return FulfillmentResult(shipment=shipment, created=True, allocation=allocation)

    # ==================== Phase 2: label ====================

    async def _origin_address(self, wine_cave_id: int) -> AddressInput:
        cave = await self.db.get(WineCave, wine_cave_id)
        s = self.settings
        if cave and cave.address_line1:
            return AddressInput(
                name=cave.name,
                address1=cave.address_line1,
                city=cave.city or "",
                postal_code=cave.postal_code or "",
                country=cave.country_code or "FR",
                phone=cave.phone,
            )
        return AddressInput(
            name=s.SHIPPING_ORIGIN_NAME,
            address1=s.SHIPPING_ORIGIN_ADDRESS,
            city=s.SHIPPING_ORIGIN_CITY,
            postal_code=s.SHIPPING_ORIGIN_POSTAL_CODE,
            country=s.SHIPPING_ORIGIN_COUNTRY,
            phone=s.SHIPPING_ORIGIN_PHONE or None,
        )

    async def build_label_request(self, shipment: Shipment) -> LabelRequest:
        subscription = await self.db.get(Subscription, shipment.subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(shipment.subscription_id)

        length, width, height = BOTTLE_DIMENSIONS_CM
        packages = []
        for item in shipment.items:
            for _ in range(item.quantity):
                packages.append(Package(
                    weight=BOTTLE_WEIGHT_KG,
                    length=length,
                    width=width,
                    height=height,
                    description=item.description or f"Wine {item.wine_id}",
                ))

        return LabelRequest(
            from_address=await self._origin_address(shipment.wine_cave_id),
            to_address=AddressInput(
                name=subscription.recipient_name or subscription.member_id,
                address1=subscription.address_line1 or "",
                address2=subscription.address_line2,
                city=subscription.city or "",
                postal_code=subscription.postal_code or "",
                country=subscription.country_code or "FR",
                phone=subscription.phone,
            ),
            packages=packages,
            service=shipment.service_level or "standard",
            reference=shipment_reference(shipment),
        )

    async def _record_label(self, shipment: Shipment, carrier_name: str, result) -> None:
        now = utcnow()
        shipment.carrier = carrier_name
        shipment.tracking_number = result.tracking_number
        shipment.label_url = result.label_url
        shipment.carrier_cost = result.cost
        shipment.estimated_delivery = result.estimated_delivery
        shipment.status = ShipmentStatus.SHIPPED
        shipment.shipped_at = now
        shipment.last_label_error = None
        shipment.label_retriable = True

        existing = await self.db.execute(
            select(TrackingInfo).where(TrackingInfo.tracking_number == result.tracking_number)
        )
        tracking = existing.scalar_one_or_none()
        if tracking is None:
            tracking = TrackingInfo(
                shipment_id=shipment.id,
                tracking_number=result.tracking_number,
                carrier=carrier_name,
                status=TrackingStatus.LABEL_CREATED.value,
                events=[],
            )
            self.db.add(tracking)
        tracking.estimated_delivery = result.estimated_delivery

    async def request_label(self, shipment: Shipment, carrier: Optional[str] = None) -> LabelAttempt:
        """
        Ask the carrier for a label and persist the outcome. Commits.

        Carrier failures are returned on the attempt, never raised; the
        shipment and its allocation stay in place.
        """
        if shipment.tracking_number:
            return LabelAttempt(shipment=shipment, succeeded=True)
        if shipment.status != ShipmentStatus.PENDING:
            logger.info(f"Shipment {shipment.id} is {shipment.status.value}, not requesting label")
            return LabelAttempt(shipment=shipment, succeeded=False)

        carrier_name = normalize_carrier_name(carrier or shipment.carrier)
        request = await self.build_label_request(shipment)
        # Release the read transaction before going to the network
        await self.db.commit()

        try:
            result = await self.gateway.generate_label(carrier_name, request)
        except UnsupportedCarrier as e:
            shipment.last_label_error = e.message
            shipment.label_retriable = False
            await self.db.commit()
            logger.error(f"Shipment {shipment.id}: {e.message}; label left missing until carrier config is fixed")
            return LabelAttempt(shipment=shipment, succeeded=False, error=e)
        except CarrierError as e:
            shipment.label_attempts = (shipment.label_attempts or 0) + 1
            shipment.last_label_error = e.message
            shipment.label_retriable = not isinstance(e, CarrierRejected)
            await self.db.commit()
            log = logger.warning if e.retriable else logger.error
            log(
                f"Label request failed for shipment {shipment.id} "
                f"(attempt {shipment.label_attempts}, {e.code}): {e.message}"
            )
            return LabelAttempt(shipment=shipment, succeeded=False, error=e)

        shipment.label_attempts = (shipment.label_attempts or 0) + 1
        await self._record_label(shipment, carrier_name, result)
        await self.db.commit()
        return LabelAttempt(shipment=shipment, succeeded=True)

    # ==================== Trigger interface ====================

    async def fulfill(
        self,
        subscription: Subscription,
        period_key: str,
        carrier: Optional[str] = None,
    ) -> FulfillmentResult:
        """Both phases: record + commit, then best-effort label."""
        result = await self.create_shipment_record(subscription, period_key, carrier=carrier)
        await self.db.commit()
        if result.created and result.shipment.status == ShipmentStatus.PENDING:
            result.label = await self.request_label(result.shipment)
        return result

    async def create_shipment(
        self,
        subscription_id: int,
        carrier: Optional[str] = None,
        period_key: Optional[str] = None,
    ) -> FulfillmentResult:
        """
        Manual fulfillment for a subscription's current billing period.

        Raises:
            SubscriptionNotFound: Unknown subscription
            UnsupportedCarrier: Carrier name not in the registry (nothing allocated)
            FulfillmentError: Subscription is not active or has no billing period
        """
        if carrier is not None:
            self.gateway.registry.get(carrier)

        result = await self.db.execute(
            select(Subscription).where(Subscription.id == subscription_id).with_for_update()
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)

        if subscription.status != SubscriptionStatus.ACTIVE:
            raise FulfillmentError(
                f"Subscription {subscription_id} is {subscription.status.value}; only active subscriptions ship",
                code="SUBSCRIPTION_NOT_ACTIVE",
                details={"subscription_id": subscription_id, "status": subscription.status.value},
            )

        if period_key is None:
            if subscription.current_period_start is None:
                raise FulfillmentError(
                    f"Subscription {subscription_id} has no current billing period",
                    code="NO_BILLING_PERIOD",
                    details={"subscription_id": subscription_id},
                )
            period_key = billing_period_key(subscription.current_period_start)

        return await self.fulfill(subscription, period_key, carrier=carrier)

    async def get_shipment(self, shipment_id: int) -> Shipment:
        shipment = await self.db.get(Shipment, shipment_id)
        if shipment is None:
            raise ShipmentNotFound(shipment_id)
        return shipment

    async def generate_shipping_label(self, shipment_id: int, carrier: Optional[str] = None) -> Shipment:
        """
        Manual label generation for a label-less shipment.

        Raises:
            ShipmentNotFound: Unknown shipment
            UnsupportedCarrier: Unknown carrier; the shipment is not touched
            CarrierError: Carrier call failed; the attempt is recorded and the shipment stays pending
        """
        shipment = await self.get_shipment(shipment_id)
        self.gateway.registry.get(carrier or shipment.carrier)

        if shipment.tracking_number:
            return shipment
        if shipment.status != ShipmentStatus.PENDING:
            raise FulfillmentError(
                f"Shipment {shipment_id} is {shipment.status.value}; labels are only created for pending shipments",
                code="SHIPMENT_NOT_PENDING",
                details={"shipment_id": shipment_id, "status": shipment.status.value},
            )

        attempt = await self.request_label(shipment, carrier=carrier)
        if attempt.error is not None:
            raise attempt.error
        return attempt.shipment

    async def update_shipment(
        self,
        shipment_id: int,
        carrier: Optional[str] = None,
        service_level: Optional[str] = None,
    ) -> Shipment:
        """Change carrier or service level of a label-less pending shipment. Does not commit."""
        shipment = await self.get_shipment(shipment_id)
        if shipment.tracking_number or shipment.status != ShipmentStatus.PENDING:
            raise FulfillmentError(
                f"Shipment {shipment_id} already has a label or is not pending",
                code="SHIPMENT_NOT_EDITABLE",
                details={"shipment_id": shipment_id},
            )
        if carrier is not None:
            shipment.carrier = self.gateway.registry.get(carrier).carrier_code
        if service_level is not None:
            shipment.service_level = service_level
        shipment.label_retriable = True
        await self.db.flush()
        return shipment
