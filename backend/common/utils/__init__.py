"""Common utility functions."""

from .geo import calculate_distance, calculate_distance_km
from .routing import RouteEstimate, route

__all__ = [
    "calculate_distance",
    "calculate_distance_km",
    "RouteEstimate",
    "route",
]
