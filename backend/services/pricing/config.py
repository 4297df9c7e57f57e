"""
Pricing configuration collaborator.

The fare table reads its rates through a provider named by the
PRICING_CONFIG_PROVIDER setting. Whatever the provider returns is merged
field by field over built-in defaults, so a missing value or an unreachable
provider never prevents a fare from being computed.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests
from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError
from django.utils.module_loading import import_string

from services.exceptions import ConfigUnavailable

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "pricing_config"

DEFAULT_MIN_FARE = Decimal("2.00")
DEFAULT_MIN_DISTANCE_KM = Decimal("3")
DEFAULT_PRICE_PER_KM = Decimal("0.50")

DEFAULT_VEHICLE_PRICES = {
    "motorcycle": Decimal("5"),
    "sedan": Decimal("8"),
    "mpv": Decimal("10"),
    "large-mpv": Decimal("12"),
    "suv": Decimal("12"),
    "van": Decimal("15"),
    "truck": Decimal("20"),
}

DEFAULT_SIZE_MULTIPLIERS = {
    "small": Decimal("1"),
    "medium": Decimal("1.5"),
    "large": Decimal("2"),
    "extra_large": Decimal("3"),
}

DEFAULT_PRICING_RULES = {
    "round_trip_multiplier": Decimal("2"),
    "recurring_multiplier": Decimal("2"),
}


@dataclass(frozen=True)
class PricingConfig:
    min_fare: Decimal = DEFAULT_MIN_FARE
    min_distance_km: Decimal = DEFAULT_MIN_DISTANCE_KM
    price_per_km: Decimal = DEFAULT_PRICE_PER_KM
    vehicle_prices: Dict[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_VEHICLE_PRICES))
    size_multipliers: Dict[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_SIZE_MULTIPLIERS))
    pricing_rules: Dict[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_PRICING_RULES))
    source: str = "defaults"

    def vehicle_price(self, vehicle_type: Optional[str]) -> Decimal:
        return self.vehicle_prices.get(vehicle_type or "sedan", self.vehicle_prices["sedan"])

    def size_multiplier(self, package_size: Optional[str]) -> Decimal:
        return self.size_multipliers.get(package_size or "medium", self.size_multipliers["medium"])

    def rule(self, name: str) -> Decimal:
        return self.pricing_rules.get(name, DEFAULT_PRICING_RULES.get(name, Decimal("1")))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "min_fare": str(self.min_fare),
            "min_distance_km": str(self.min_distance_km),
            "price_per_km": str(self.price_per_km),
            "vehicle_prices": {k: str(v) for k, v in self.vehicle_prices.items()},
            "size_multipliers": {k: str(v) for k, v in self.size_multipliers.items()},
            "pricing_rules": {k: str(v) for k, v in self.pricing_rules.items()},
            "source": self.source,
        }


# ---------------------- Providers ----------------------

def database_pricing_provider(service_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Read the active global row, overlaid with the active row for service_type."""
    from rides.models import PricingConfiguration

    try:
        rows = list(
            PricingConfiguration.objects.filter(is_active=True, service_type__in=["", service_type or ""])
            .order_by("-updated_at")
        )
    except DatabaseError as exc:
        raise ConfigUnavailable(f"Pricing table unavailable: {exc}") from exc

    merged: Dict[str, Any] = {}
    # Global first, then the service-specific row overrides it
    for row in sorted(rows, key=lambda r: 1 if r.service_type else 0):
        for name in ("min_fare", "min_distance_km", "price_per_km"):
            value = getattr(row, name)
            if value is not None:
                merged[name] = value
        for name in ("vehicle_prices", "size_multipliers", "pricing_rules"):
            merged.setdefault(name, {}).update(getattr(row, name) or {})
    return merged or None


def http_pricing_provider(service_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Fetch configuration from PRICING_CONFIG_URL, bounded by a timeout."""
    url = settings.PRICING_CONFIG_URL
    if not url:
        raise ConfigUnavailable("PRICING_CONFIG_URL is not configured")
    params = {"service_type": service_type} if service_type else None
    try:
        response = requests.get(url, params=params, timeout=settings.PRICING_CONFIG_TIMEOUT_SECONDS)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise ConfigUnavailable(f"Pricing service unreachable: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigUnavailable("Pricing service returned a non-object payload")
    return payload


# ---------------------- Merging ----------------------

def _positive_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number < 0:
        return None
    return number


def _merge_table(defaults: Dict[str, Decimal], overrides: Any) -> Dict[str, Decimal]:
    table = dict(defaults)
    if isinstance(overrides, dict):
        for key, value in overrides.items():
            number = _positive_decimal(value)
            if number is not None:
                table[key] = number
    return table


def build_pricing_config(raw: Optional[Dict[str, Any]], source: str = "provider") -> PricingConfig:
    """Merge provider values over the defaults; invalid or absent values keep the default."""
    if not raw:
        return PricingConfig()

    # Service-specific payloads nest the tables under "multipliers"
    nested = raw.get("multipliers") if isinstance(raw.get("multipliers"), dict) else {}

    min_fare = _positive_decimal(raw.get("min_fare")) or _positive_decimal(raw.get("base_price"))
    min_distance = _positive_decimal(raw.get("min_distance_km"))
    price_per_km = _positive_decimal(raw.get("price_per_km"))

    return PricingConfig(
        min_fare=min_fare if min_fare else DEFAULT_MIN_FARE,
        min_distance_km=min_distance if min_distance is not None else DEFAULT_MIN_DISTANCE_KM,
        price_per_km=price_per_km if price_per_km else DEFAULT_PRICE_PER_KM,
        vehicle_prices=_merge_table(DEFAULT_VEHICLE_PRICES, raw.get("vehicle_prices") or nested.get("vehicle_prices")),
        size_multipliers=_merge_table(
            DEFAULT_SIZE_MULTIPLIERS, raw.get("size_multipliers") or nested.get("size_multipliers")
        ),
        pricing_rules=_merge_table(DEFAULT_PRICING_RULES, raw.get("pricing_rules")),
        source=source,
    )


def _cache_key(service_type: Optional[str]) -> str:
    return f"{CACHE_KEY_PREFIX}:{service_type or 'global'}"


def get_pricing_config(service_type: Optional[str] = None) -> PricingConfig:
    """
    Return the pricing configuration for a service type.

    Never raises: provider failures are logged and the defaults are used.
    Successful lookups are cached for PRICING_CONFIG_CACHE_SECONDS.
    """
    key = _cache_key(service_type)
    cached = cache.get(key)
    if cached is not None:
        return cached

    try:
        provider = import_string(settings.PRICING_CONFIG_PROVIDER)
        raw = provider(service_type)
    except ConfigUnavailable as exc:
        logger.warning("Pricing configuration unavailable, using defaults: %s", exc)
        return PricingConfig()
    except ImportError:
        logger.exception("Invalid PRICING_CONFIG_PROVIDER %r, using defaults", settings.PRICING_CONFIG_PROVIDER)
        return PricingConfig()

    config = build_pricing_config(raw)
    cache.set(key, config, settings.PRICING_CONFIG_CACHE_SECONDS)
    return config


def invalidate_pricing_cache(service_type: Optional[str] = None) -> None:
    """Drop cached configuration; with no argument every service type is dropped."""
    if service_type is not None:
        cache.delete_many([_cache_key(service_type), _cache_key(None)])
        return
    from rides.models import ServiceType

    cache.delete_many([_cache_key(None)] + [_cache_key(value) for value in ServiceType.values])
