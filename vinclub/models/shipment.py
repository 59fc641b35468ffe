"""
Shipment, ShipmentItem and TrackingInfo models

A shipment is created once per (subscription, billing period) and is never
deleted; it moves pending -> shipped -> delivered | failed.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Float, Text, JSON,
    ForeignKey, Index, UniqueConstraint, CheckConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from vinclub.core.database import Base


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle status"""
    PENDING = "pending"  # Allocated, waiting for a label
    SHIPPED = "shipped"  # Label created, handed to carrier
    DELIVERED = "delivered"
    FAILED = "failed"  # Returned or lost


class TrackingStatus(str, enum.Enum):
    """Carrier-agnostic tracking status"""
    LABEL_CREATED = "label_created"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"
    RETURNED = "returned"


class Shipment(Base):
    """
    One subscription box for one billing period.

    Label fields stay empty while status is PENDING; the label retry job
    and the manual label trigger fill them in later.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        UniqueConstraint("subscription_id", "billing_period_key", name="uq_shipments_subscription_period"),
        Index("ix_shipments_status", "status"),
        Index("ix_shipments_tracking_number", "tracking_number"),
    )

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=False, index=True)
    wine_cave_id = Column(Integer, ForeignKey("wine_caves.id"), nullable=False, index=True)
    billing_period_key = Column(String(32), nullable=False)

    status = Column(
        SQLEnum(ShipmentStatus),
        default=ShipmentStatus.PENDING,
        nullable=False
    )

    # Allocation
    bottles_requested = Column(Integer, nullable=False)
    under_fulfilled = Column(Boolean, default=False, nullable=False)

    # Carrier / label
    carrier = Column(String(50), nullable=False)
    service_level = Column(String(50), default="standard")
    tracking_number = Column(String(100), unique=True, nullable=True)
    label_url = Column(String(500), nullable=True)
    carrier_cost = Column(Float, nullable=True)
    label_attempts = Column(Integer, default=0, nullable=False)
    last_label_error = Column(Text, nullable=True)
    label_retriable = Column(Boolean, default=True, nullable=False)  # False after a 4xx or config error

    # Delivery
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    actual_delivery = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    tracking_checked_at = Column(DateTime(timezone=True), nullable=True)  # last tracking sync poll

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    items = relationship("ShipmentItem", back_populates="shipment", lazy="selectin", order_by="ShipmentItem.id")

    @property
    def label_missing(self) -> bool:
        return self.tracking_number is None

    @property
    def bottle_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def __repr__(self):
        return f"<Shipment(id={self.id}, subscription={self.subscription_id}, status={self.status})>"


class ShipmentItem(Base):
    __tablename__ = "shipment_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_shipment_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    wine_id = Column(Integer, ForeignKey("wines.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    # Snapshot for the carrier package description
    description = Column(String(255), nullable=True)

    shipment = relationship("Shipment", back_populates="items")

    def __repr__(self):
        return f"<ShipmentItem(shipment={self.shipment_id}, wine={self.wine_id}, qty={self.quantity})>"


class TrackingInfo(Base):
    """
    Latest known carrier status for a tracking number.

    Written only by label generation and tracking refreshes. Updates are
    last-write-wins on last_event_at.
    """
    __tablename__ = "tracking_info"

    id = Column(Integer, primary_key=True, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    tracking_number = Column(String(100), unique=True, nullable=False, index=True)
    carrier = Column(String(50), nullable=False)

    status = Column(String(30), default=TrackingStatus.LABEL_CREATED.value, nullable=False)
    carrier_status = Column(String(100), nullable=True)
    events = Column(JSON, default=list)
    estimated_delivery = Column(DateTime(timezone=True), nullable=True)
    actual_delivery = Column(DateTime(timezone=True), nullable=True)

    # Newest carrier event applied so far
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self):
        return f"<TrackingInfo(tracking_number={self.tracking_number}, status={self.status})>"
