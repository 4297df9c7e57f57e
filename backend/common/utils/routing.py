"""
Routing / geocoding collaborator client.

Road distances come from an OSRM server and addresses are resolved through
Nominatim. Whenever either is disabled or unreachable the straight-line
distance between the known coordinates is used instead.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

import requests
from django.conf import settings

from services.exceptions import ConfigUnavailable
from .geo import calculate_distance_km

logger = logging.getLogger(__name__)

# Average urban speed used to estimate duration from a straight-line distance
AVERAGE_SPEED_KMH = 35
USER_AGENT = "ride-dispatch-backend"


@dataclass(frozen=True)
class Location:
    address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class RouteEstimate:
    distance_km: Decimal
    duration_minutes: int
    source: str


def _km(value: float) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def geocode_address(address: str) -> Tuple[float, float]:
    """Resolve an address to (longitude, latitude)."""
    try:
        response = requests.get(
            settings.GEOCODER_URL,
            params={"q": address, "format": "json", "limit": 1},
            headers={"User-Agent": USER_AGENT},
            timeout=settings.ROUTING_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        results = response.json()
    except (requests.RequestException, ValueError) as exc:
        raise ConfigUnavailable(f"Geocoder unreachable: {exc}") from exc
    if not results:
        raise ConfigUnavailable(f"Could not geocode address: {address}")
    return float(results[0]["lon"]), float(results[0]["lat"])


def fetch_route(origin: Tuple[float, float], dest: Tuple[float, float]) -> Tuple[float, float]:
    """
    Query OSRM between two (longitude, latitude) pairs.

    Returns kilometers and minutes.
    """
    url = f"{settings.OSRM_BASE_URL}{origin[0]},{origin[1]};{dest[0]},{dest[1]}"
    try:
        response = requests.get(url, params={"overview": "false"}, timeout=settings.ROUTING_TIMEOUT_SECONDS)
        response.raise_for_status()
        data = response.json()
        best = data["routes"][0]
    except (requests.RequestException, ValueError, KeyError, IndexError) as exc:
        raise ConfigUnavailable(f"Routing service unreachable: {exc}") from exc
    return best["distance"] / 1000, best["duration"] / 60


def _coordinates(location: Location) -> Tuple[float, float]:
    if location.has_coordinates:
        return float(location.longitude), float(location.latitude)
    return geocode_address(location.address)


def straight_line_estimate(origin: Location, destination: Location) -> Optional[RouteEstimate]:
    if not (origin.has_coordinates and destination.has_coordinates):
        return None
    km = calculate_distance_km(origin.latitude, origin.longitude, destination.latitude, destination.longitude)
    return RouteEstimate(
        distance_km=_km(km),
        duration_minutes=round(km / AVERAGE_SPEED_KMH * 60),
        source="haversine",
    )


def route(origin: Location, destination: Location) -> Optional[RouteEstimate]:
    """
    Estimate road distance and duration between two locations.

    Returns None only when routing is unavailable and either side lacks
    coordinates.
    """
    if settings.ROUTING_ENABLED:
        try:
            km, minutes = fetch_route(_coordinates(origin), _coordinates(destination))
            return RouteEstimate(distance_km=_km(km), duration_minutes=round(minutes), source="osrm")
        except ConfigUnavailable as exc:
            logger.warning("Routing unavailable, using straight-line distance: %s", exc)
    return straight_line_estimate(origin, destination)
