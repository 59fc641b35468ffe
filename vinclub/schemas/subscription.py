"""
Subscription schemas
"""
from datetime import datetime
from typing import Optional
import enum
from pydantic import BaseModel, field_validator


class SubscriptionResponse(BaseModel):
    id: int
    member_id: str
    wine_cave_id: int
    tier_id: int
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    external_subscription_id: Optional[str] = None
    date_paid: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return v.value if isinstance(v, enum.Enum) else v

    class Config:
        from_attributes = True


class CancelSubscriptionRequest(BaseModel):
    at_period_end: bool = True
