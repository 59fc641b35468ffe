"""
Read-only queries for dashboards, loyalty and notification consumers.

Nothing in this module writes.
"""
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from vinclub.core.exceptions import SubscriptionNotFound
from vinclub.models.shipment import Shipment, ShipmentStatus, TrackingInfo
from vinclub.models.subscription import Subscription


@dataclass
class ShipmentFilter:
    subscription_id: Optional[int] = None
    wine_cave_id: Optional[int] = None
    status: Optional[ShipmentStatus] = None
    under_fulfilled: Optional[bool] = None
    label_missing: Optional[bool] = None


async def get_subscription(db: AsyncSession, subscription_id: int) -> Subscription:
    subscription = await db.get(Subscription, subscription_id)
    if subscription is None:
        raise SubscriptionNotFound(subscription_id)
    return subscription


async def get_shipments(
    db: AsyncSession,
    filters: Optional[ShipmentFilter] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Shipment]:
    """Shipments matching the filter, newest first."""
    filters = filters or ShipmentFilter()
    query = select(Shipment)

    if filters.subscription_id is not None:
        query = query.where(Shipment.subscription_id == filters.subscription_id)
    if filters.wine_cave_id is not None:
        query = query.where(Shipment.wine_cave_id == filters.wine_cave_id)
    if filters.status is not None:
        query = query.where(Shipment.status == filters.status)
    if filters.under_fulfilled is not None:
        query = query.where(Shipment.under_fulfilled == filters.under_fulfilled)
    if filters.label_missing is True:
        query = query.where(Shipment.tracking_number.is_(None))
    elif filters.label_missing is False:
        query = query.where(Shipment.tracking_number.isnot(None))

    query = query.order_by(Shipment.created_at.desc(), Shipment.id.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_tracking_info(db: AsyncSession, tracking_number: str) -> Optional[TrackingInfo]:
    result = await db.execute(
        select(TrackingInfo).where(TrackingInfo.tracking_number == tracking_number)
    )
    return result.scalar_one_or_none()


async def get_status_summary(db: AsyncSession, wine_cave_id: Optional[int] = None) -> Dict[str, int]:
    """
    Counts for the admin status view.

    label_missing counts pending shipments without a tracking number;
    under_fulfilled counts every shipment flagged short, whatever its status.
    """
    def scoped(query):
        if wine_cave_id is not None:
            return query.where(Shipment.wine_cave_id == wine_cave_id)
        return query

    by_status = await db.execute(
        scoped(select(Shipment.status, func.count(Shipment.id))).group_by(Shipment.status)
    )
    summary = {status.value: 0 for status in ShipmentStatus}
    for status, count in by_status.all():
        summary[ShipmentStatus(status).value] = count

    label_missing = await db.execute(
        scoped(select(func.count(Shipment.id))).where(
            Shipment.status == ShipmentStatus.PENDING,
            Shipment.tracking_number.is_(None),
        )
    )
    under_fulfilled = await db.execute(
        scoped(select(func.count(Shipment.id))).where(Shipment.under_fulfilled.is_(True))
    )
    summary["label_missing"] = label_missing.scalar_one()
    summary["under_fulfilled"] = under_fulfilled.scalar_one()
    return summary
