"""
Carrier gateway

Single entry point for carrier calls used by both the automatic
(webhook) and manual (admin) fulfillment paths.

- generate_label / track_shipment select a carrier from the injected
  registry by name; an unknown name raises UnsupportedCarrier.
- get_rates aggregates every carrier, cheapest first, and falls back to
  the cached quote and then to a static table when no carrier answers.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from vinclub.core.exceptions import CarrierError
from vinclub.core.redis_client import get_cached_rates, set_cached_rates, rate_cache_key
from vinclub.modules.shipping.carriers import CarrierRegistry
from vinclub.modules.shipping.carriers.base import LabelRequest, LabelResult, Rate, TrackingResult

logger = logging.getLogger(__name__)

# Served when no carrier answers and nothing is cached
STATIC_RATES = (
    Rate(carrier="chronopost", service="standard", service_name="Standard", cost=15.00,
         currency="EUR", delivery_days_min=5, delivery_days_max=7),
    Rate(carrier="colissimo", service="express", service_name="Express", cost=25.00,
         currency="EUR", delivery_days_min=2, delivery_days_max=3),
    Rate(carrier="chronopost", service="international", service_name="International", cost=45.00,
         currency="EUR", delivery_days_min=7, delivery_days_max=14),
)


@dataclass
class RateQuote:
    rates: List[Dict[str, Any]] = field(default_factory=list)
    source: str = "live"  # live | cache | static


class CarrierGateway:
    def __init__(self, registry: CarrierRegistry):
        self.registry = registry

    async def generate_label(self, carrier_name: Optional[str], request: LabelRequest) -> LabelResult:
        """
        Raises:
            UnsupportedCarrier: Unknown carrier name (nothing was sent)
            CarrierUnavailable / CarrierRejected: Carrier call failed
        """
        carrier = self.registry.get(carrier_name)
        logger.info(f"Requesting {carrier.carrier_name} label for {request.reference}")
        result = await carrier.generate_label(request)
        logger.info(f"{carrier.carrier_name} label created: {result.tracking_number} ({request.reference})")
        return result

    async def track_shipment(self, carrier_name: Optional[str], tracking_number: str) -> TrackingResult:
        carrier = self.registry.get(carrier_name)
        return await carrier.track_shipment(tracking_number)

    async def get_rates(self, request: LabelRequest) -> RateQuote:
        """Live rates from every carrier; cache, then static table, when none answer."""
        cache_key = rate_cache_key(
            request.from_address.postal_code,
            request.to_address.postal_code,
            request.to_address.country,
            len(request.packages),
        )

        live: List[Rate] = []
        for carrier in self.registry.all():
            try:
                live.extend(await carrier.get_rates(request))
            except CarrierError as e:
                logger.warning(f"Rate lookup failed for {carrier.carrier_name}: {e.message}")

        if live:
            rates = [r.to_dict() for r in sorted(live, key=lambda r: r.cost)]
            await set_cached_rates(cache_key, rates)
            return RateQuote(rates=rates, source="live")

        cached = await get_cached_rates(cache_key)
        if cached:
            logger.info(f"Serving cached rates for {cache_key}")
            return RateQuote(rates=cached, source="cache")

        logger.warning("No carrier returned rates, serving static fallback rates")
        return RateQuote(rates=[r.to_dict() for r in STATIC_RATES], source="static")
