"""
Subscription and tier models

Subscription.status is mutated only by the billing state machine and
cancellation requests.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Float,
    ForeignKey, Index, CheckConstraint, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from vinclub.core.database import Base


class SubscriptionStatus(str, enum.Enum):
    """Subscription lifecycle status"""
    INCOMPLETE = "incomplete"  # Checkout started, not yet paid
    ACTIVE = "active"
    PAST_DUE = "past_due"  # Last invoice failed
    CANCELLED = "cancelled"  # Terminal


class SubscriptionTier(Base):
    __tablename__ = "subscription_tiers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    bottles_per_month = Column(Integer, nullable=False, default=3)
    monthly_price = Column(Float, nullable=True)

    def __repr__(self):
        return f"<SubscriptionTier(id={self.id}, name={self.name}, bottles={self.bottles_per_month})>"


class Subscription(Base):
    """
    A member's wine-club subscription.

    Lifecycle: incomplete -> active <-> past_due -> cancelled (terminal).
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_status", "status"),
        Index("ix_subscriptions_wine_cave_id", "wine_cave_id"),
        CheckConstraint(
            "current_period_end IS NULL OR current_period_start IS NULL "
            "OR current_period_end >= current_period_start",
            name="ck_subscriptions_period_order",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)

    member_id = Column(String(100), nullable=False, index=True)
    wine_cave_id = Column(Integer, ForeignKey("wine_caves.id"), nullable=False)
    tier_id = Column(Integer, ForeignKey("subscription_tiers.id"), nullable=False)

    # Billing processor reference
    external_subscription_id = Column(String(255), unique=True, nullable=True)
    external_customer_id = Column(String(255), nullable=True)

    status = Column(
        SQLEnum(SubscriptionStatus),
        default=SubscriptionStatus.INCOMPLETE,
        nullable=False
    )
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    date_paid = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)

    # Delivery address
    recipient_name = Column(String(255), nullable=True)
    address_line1 = Column(String(255), nullable=True)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country_code = Column(String(2), default="FR")
    phone = Column(String(30), nullable=True)
    email = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    tier = relationship("SubscriptionTier", lazy="selectin")
    wine_cave = relationship("WineCave", lazy="selectin")

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELLED

    def __repr__(self):
        return f"<Subscription(id={self.id}, member={self.member_id}, status={self.status})>"
