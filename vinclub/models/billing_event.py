"""
Billing event ledger

One row per processor event id. The UNIQUE constraint on event_id is the
only guard against at-least-once redelivery; the row is inserted in the
same transaction as the event's effects.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index
import enum

from vinclub.core.database import Base


class EventOutcome(str, enum.Enum):
    """How a claimed event was resolved"""
    CLAIMED = "claimed"  # Claimed, processing in progress
    APPLIED = "applied"  # Transition applied
    NOOP = "noop"  # Unmodeled (state, event) pair
    IGNORED = "ignored"  # Event type not modeled at all


class BillingEvent(Base):
    __tablename__ = "billing_events"
    __table_args__ = (
        Index("ix_billing_events_processed_at", "processed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    outcome = Column(String(20), default=EventOutcome.CLAIMED.value, nullable=False)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True)
    detail = Column(Text, nullable=True)

    def __repr__(self):
        return f"<BillingEvent(event_id={self.event_id}, type={self.event_type}, outcome={self.outcome})>"
