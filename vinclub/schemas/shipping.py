"""
Shipping schemas

Pydantic models for shipment, tracking and rate endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
import enum
from pydantic import BaseModel, Field, field_validator


class ShipmentItemResponse(BaseModel):
    wine_id: int
    quantity: int
    description: Optional[str] = None

    class Config:
        from_attributes = True


class ShipmentResponse(BaseModel):
    id: int
    subscription_id: int
    wine_cave_id: int
    billing_period_key: str
    status: str
    carrier: str
    service_level: Optional[str] = None
    tracking_number: Optional[str] = None
    label_url: Optional[str] = None
    carrier_cost: Optional[float] = None
    bottles_requested: int
    under_fulfilled: bool
    label_missing: bool
    label_attempts: int
    last_label_error: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    created_at: datetime
    items: List[ShipmentItemResponse] = []

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return v.value if isinstance(v, enum.Enum) else v

    class Config:
        from_attributes = True


class ShipmentCreate(BaseModel):
    """Manual fulfillment trigger."""
    subscription_id: int
    carrier: Optional[str] = None
    billing_period_key: Optional[str] = Field(None, max_length=32)


class LabelRequestBody(BaseModel):
    carrier: Optional[str] = None


class ShipmentUpdate(BaseModel):
    carrier: Optional[str] = None
    service_level: Optional[str] = Field(None, max_length=50)


class TrackingInfoResponse(BaseModel):
    tracking_number: str
    carrier: str
    status: str
    carrier_status: Optional[str] = None
    events: List[Dict[str, Any]] = []
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    last_event_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @field_validator("events", mode="before")
    @classmethod
    def default_events(cls, v):
        return v or []


class RateAddress(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    address1: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    postal_code: str = Field(..., min_length=2, max_length=20)
    country: str = Field("FR", min_length=2, max_length=2)
    address2: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("country")
    @classmethod
    def validate_country_code(cls, v):
        return v.upper()


class RateQuoteRequest(BaseModel):
    from_address: RateAddress
    to_address: RateAddress
    bottles: int = Field(3, ge=1, le=24)
    service: str = "standard"


class RateQuoteResponse(BaseModel):
    source: str
    rates: List[Dict[str, Any]]


class StatusSummaryResponse(BaseModel):
    pending: int
    shipped: int
    delivered: int
    failed: int
    label_missing: int
    under_fulfilled: int
