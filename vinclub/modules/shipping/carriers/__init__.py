"""
Carrier registry

The registry is built once at process start by build_carrier_registry()
and passed to whatever needs carriers (app.state, background jobs,
tests). There is no module-level mutable carrier cache.
"""
import logging
from types import MappingProxyType
from typing import Dict, List, Optional

import httpx

from vinclub.core.exceptions import UnsupportedCarrier
from vinclub.modules.shipping.carriers.base import BaseCarrier, CarrierConfig
from vinclub.modules.shipping.carriers.chronopost import ChronopostCarrier
from vinclub.modules.shipping.carriers.colissimo import ColissimoCarrier

logger = logging.getLogger(__name__)

# Known carrier implementations, keyed by lowercase name
CARRIER_CLASSES = MappingProxyType({
    "chronopost": ChronopostCarrier,
    "colissimo": ColissimoCarrier,
})


def normalize_carrier_name(name: Optional[str]) -> str:
    return (name or "").strip().lower()


class CarrierRegistry:
    """
    Lookup of carrier instances by name.

    Args:
        carriers: name -> carrier instance
        default_carrier: name used when a caller does not pick one
    """

    def __init__(self, carriers: Dict[str, BaseCarrier], default_carrier: str):
        self._carriers = MappingProxyType(
            {normalize_carrier_name(name): carrier for name, carrier in carriers.items()}
        )
        self.default_carrier = normalize_carrier_name(default_carrier)

    def get(self, name: Optional[str] = None) -> BaseCarrier:
        """
        Get a carrier by name (case-insensitive); None means the default.

        Raises:
            UnsupportedCarrier: No carrier registered under that name
        """
        key = normalize_carrier_name(name) if name is not None else self.default_carrier
        carrier = self._carriers.get(key)
        if carrier is None:
            raise UnsupportedCarrier(name)
        return carrier

    def is_supported(self, name: Optional[str]) -> bool:
        return normalize_carrier_name(name) in self._carriers

    def names(self) -> List[str]:
        return list(self._carriers.keys())

    def all(self) -> List[BaseCarrier]:
        return list(self._carriers.values())

    async def close(self) -> None:
        for carrier in self._carriers.values():
            await carrier.close()


def build_carrier_registry(
    settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    carrier_classes=CARRIER_CLASSES,
) -> CarrierRegistry:
    """Instantiate every known carrier from {NAME}_* settings."""
    carriers: Dict[str, BaseCarrier] = {}
    for name, carrier_cls in carrier_classes.items():
        creds = settings.carrier_config(name)
        config = CarrierConfig(
            name=name,
            api_key=creds["api_key"],
            base_url=creds["base_url"],
            account_number=creds["account_number"],
            timeout=settings.CARRIER_TIMEOUT_SECONDS,
            max_retries=settings.CARRIER_MAX_RETRIES,
        )
        carriers[name] = carrier_cls(config, transport=transport)
        if not config.is_configured:
            logger.warning(f"Carrier {name} has no API key or base URL; label calls will fail as unavailable")

    registry = CarrierRegistry(carriers, default_carrier=settings.DEFAULT_CARRIER)
    logger.info(f"Carrier registry built: {', '.join(registry.names())} (default={registry.default_carrier})")
    return registry


__all__ = [
    "CARRIER_CLASSES",
    "CarrierRegistry",
    "build_carrier_registry",
    "normalize_carrier_name",
    "ChronopostCarrier",
    "ColissimoCarrier",
    "BaseCarrier",
    "CarrierConfig",
]
