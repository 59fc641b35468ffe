from vinclub.models.wine_cave import WineCave, Wine
from vinclub.models.subscription import Subscription, SubscriptionTier, SubscriptionStatus
from vinclub.models.billing_event import BillingEvent, EventOutcome
from vinclub.models.shipment import (
    Shipment,
    ShipmentItem,
    ShipmentStatus,
    TrackingInfo,
    TrackingStatus,
)

__all__ = [
    "WineCave",
    "Wine",
    "Subscription",
    "SubscriptionTier",
    "SubscriptionStatus",
    "BillingEvent",
    "EventOutcome",
    "Shipment",
    "ShipmentItem",
    "ShipmentStatus",
    "TrackingInfo",
    "TrackingStatus",
]
