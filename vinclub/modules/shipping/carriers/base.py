"""
Base Carrier Interface

Every carrier implements label generation, tracking and rate quotes
behind the same dataclasses, and maps its own status vocabulary onto
TrackingStatus. Carriers speaking a JSON/REST dialect share RestCarrier
and only declare their paths, payload keys and status map.

Errors leave this module as CarrierUnavailable (retriable: timeout,
connection failure, 5xx, open circuit, unreadable response) or
CarrierRejected (4xx).
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Mapping

import httpx

from vinclub.core.exceptions import CarrierUnavailable, CarrierRejected
from vinclub.core.http_client import CircuitOpenError, ResilientHTTPClient, get_carrier_client
from vinclub.core.timeutils import as_utc
from vinclub.models.shipment import TrackingStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class CarrierConfig:
    name: str
    api_key: str = ""
    base_url: str = ""
    account_number: str = ""
    timeout: float = 15.0
    max_retries: int = 2

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.base_url)


@dataclass
class AddressInput:
    name: str
    address1: str
    city: str
    postal_code: str
    country: str = "FR"
    address2: Optional[str] = None
    state: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class Package:
    """One parcel. Weight in kg, dimensions in cm."""
    weight: float
    length: float
    width: float
    height: float
    description: str = ""


@dataclass
class LabelRequest:
    from_address: AddressInput
    to_address: AddressInput
    packages: List[Package]
    service: str = "standard"
    reference: Optional[str] = None


@dataclass
class LabelResult:
    tracking_number: str
    label_url: Optional[str]
    cost: Optional[float]
    estimated_delivery: Optional[datetime]
    carrier: str


@dataclass
class TrackingEvent:
    timestamp: datetime
    status: str  # carrier-specific status
    description: str = ""
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "status": self.status,
            "description": self.description,
            "location": self.location,
        }


@dataclass
class TrackingResult:
    tracking_number: str
    carrier: str
    status: TrackingStatus
    carrier_status: str
    events: List[TrackingEvent] = field(default_factory=list)
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None

    @property
    def latest_event_at(self) -> Optional[datetime]:
        if not self.events:
            return None
        return max(event.timestamp for event in self.events)


@dataclass
class Rate:
    carrier: str
    service: str
    service_name: str
    cost: float
    currency: str = "EUR"
    delivery_days_min: Optional[int] = None
    delivery_days_max: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 carrier timestamp into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.warning(f"Unparseable carrier timestamp: {value!r}")
        return None


# =============================================================================
# Base Carrier Interface
# =============================================================================

class BaseCarrier(ABC):
    """
    Abstract base class for all shipping carriers.
    """

    def __init__(self, config: CarrierConfig):
        self.config = config

    @property
    @abstractmethod
    def carrier_code(self) -> str:
        """Registry key, lowercase."""
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        pass

    @abstractmethod
    async def generate_label(self, request: LabelRequest) -> LabelResult:
        """
        Create a shipment with the carrier and return its label.

        Raises:
            CarrierUnavailable: Retriable failure
            CarrierRejected: Carrier refused the request
        """
        pass

    @abstractmethod
    async def track_shipment(self, tracking_number: str) -> TrackingResult:
        pass

    @abstractmethod
    async def get_rates(self, request: LabelRequest) -> List[Rate]:
        pass

    async def close(self) -> None:
        pass

    def map_status(self, carrier_status: str, status_map: Mapping[str, TrackingStatus]) -> TrackingStatus:
        """Map a carrier status to TrackingStatus: exact match, then substring, else IN_TRANSIT."""
        status_upper = (carrier_status or "").upper().strip()

        if status_upper in status_map:
            return status_map[status_upper]

        for key, value in status_map.items():
            if key in status_upper:
                return value

        logger.warning(f"Unknown {self.carrier_name} status: {carrier_status}, defaulting to IN_TRANSIT")
        return TrackingStatus.IN_TRANSIT


class RestCarrier(BaseCarrier):
    """
    Shared implementation for JSON/REST carriers authenticated by Bearer key.

    Subclasses set the class attributes below and may override
    _label_payload() for their request dialect.
    """

    label_path: str = "/labels"
    tracking_path: str = "/tracking/{tracking_number}"
    rates_path: str = "/rates"
    shipper_key: str = "shipper"
    status_map: Mapping[str, TrackingStatus] = {}

    def __init__(self, config: CarrierConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._transport = transport
        self._client: Optional[ResilientHTTPClient] = None

    def _get_client(self) -> ResilientHTTPClient:
        if self._client is None:
            self._client = get_carrier_client(
                timeout=self.config.timeout,
                max_retries=self.config.max_retries,
                api_key=self.config.api_key,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def _label_payload(self, request: LabelRequest) -> Dict[str, Any]:
        payload = {
            self.shipper_key: asdict(request.from_address),
            "recipient": asdict(request.to_address),
            "packages": [asdict(p) for p in request.packages],
            "service": request.service,
            "reference": request.reference,
        }
        if self.config.account_number:
            payload["account_number"] = self.config.account_number
        return payload

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Call the carrier and return the decoded JSON body, translating failures."""
        if not self.config.is_configured:
            raise CarrierUnavailable(
                f"{self.carrier_name} is not configured (missing API key or base URL)",
                carrier=self.carrier_code,
            )

        try:
            response = await self._get_client().request(method, self._url(path), **kwargs)
        except CircuitOpenError as e:
            raise CarrierUnavailable(str(e), carrier=self.carrier_code)
        except httpx.TimeoutException as e:
            raise CarrierUnavailable(f"{self.carrier_name} timed out: {e}", carrier=self.carrier_code)
        except httpx.TransportError as e:
            raise CarrierUnavailable(f"{self.carrier_name} unreachable: {e}", carrier=self.carrier_code)

        if response.status_code >= 500 or response.status_code in (408, 429):
            raise CarrierUnavailable(
                f"{self.carrier_name} API error: HTTP {response.status_code}",
                carrier=self.carrier_code,
                details={"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise CarrierRejected(
                f"{self.carrier_name} rejected request: HTTP {response.status_code} {response.text[:200]}",
                carrier=self.carrier_code,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise CarrierUnavailable(f"{self.carrier_name} returned invalid JSON", carrier=self.carrier_code)
        if not isinstance(data, dict):
            raise CarrierUnavailable(f"{self.carrier_name} returned unexpected body", carrier=self.carrier_code)
        return data

    async def generate_label(self, request: LabelRequest) -> LabelResult:
        data = await self._request("POST", self.label_path, json=self._label_payload(request))

        tracking_number = data.get("tracking_number")
        if not tracking_number:
            raise CarrierUnavailable(
                f"{self.carrier_name} label response has no tracking number",
                carrier=self.carrier_code,
            )

        cost = data.get("cost")
        try:
            cost = float(cost) if cost is not None else None
        except (TypeError, ValueError):
            raise CarrierUnavailable(
                f"{self.carrier_name} label response has invalid cost {cost!r}",
                carrier=self.carrier_code,
            )
        return LabelResult(
            tracking_number=str(tracking_number),
            label_url=data.get("label_url"),
            cost=cost,
            estimated_delivery=parse_datetime(data.get("estimated_delivery")),
            carrier=self.carrier_code,
        )

    async def track_shipment(self, tracking_number: str) -> TrackingResult:
        data = await self._request("GET", self.tracking_path.format(tracking_number=tracking_number))

        events = []
        for raw in data.get("events") or []:
            timestamp = parse_datetime(raw.get("timestamp"))
            if timestamp is None:
                continue
            events.append(TrackingEvent(
                timestamp=timestamp,
                status=raw.get("status") or "",
                description=raw.get("description") or "",
                location=raw.get("location"),
            ))
        events.sort(key=lambda e: e.timestamp)

        carrier_status = data.get("status") or (events[-1].status if events else "")
        return TrackingResult(
            tracking_number=data.get("tracking_number") or tracking_number,
            carrier=self.carrier_code,
            status=self.map_status(carrier_status, self.status_map),
            carrier_status=carrier_status,
            events=events,
            estimated_delivery=parse_datetime(data.get("estimated_delivery")),
            actual_delivery=parse_datetime(data.get("actual_delivery")),
        )

    async def get_rates(self, request: LabelRequest) -> List[Rate]:
        data = await self._request("POST", self.rates_path, json=self._label_payload(request))

        rates = []
        for raw in data.get("rates") or []:
            try:
                rates.append(Rate(
                    carrier=self.carrier_code,
                    service=raw["service"],
                    service_name=raw.get("service_name") or raw["service"],
                    cost=float(raw["cost"]),
                    currency=raw.get("currency") or "EUR",
                    delivery_days_min=raw.get("delivery_days_min"),
                    delivery_days_max=raw.get("delivery_days_max"),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Skipping malformed {self.carrier_name} rate: {raw!r}")
        return rates
