"""
Fare table.

Every service type shares the same two-part model: a flat minimum fare plus a
per-kilometer rate for the distance at or beyond a minimum-distance threshold.
Service-specific multipliers are applied on top. All functions are pure
functions of their inputs and the PricingConfig passed in.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from services.exceptions import ValidationError
from .config import PricingConfig, get_pricing_config
from .distribution import round2, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_RATE = Decimal("0.15")


@dataclass
class FareBreakdown:
    service_type: str
    base_fare: Decimal
    distance_charge: Decimal
    single_fare: Decimal
    total_fare: Decimal
    number_of_dates: int = 1
    multipliers: Dict[str, Decimal] = field(default_factory=dict)
    items: List[Dict[str, Any]] = field(default_factory=list)
    lines: List[str] = field(default_factory=list)
    config_source: str = "defaults"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "service_type": self.service_type,
            "base_fare": str(self.base_fare),
            "distance_charge": str(self.distance_charge),
            "single_fare": str(self.single_fare),
            "total_fare": str(self.total_fare),
            "number_of_dates": self.number_of_dates,
            "multipliers": {k: str(v) for k, v in self.multipliers.items()},
            "items": [
                {k: str(v) if isinstance(v, Decimal) else v for k, v in item.items()}
                for item in self.items
            ],
            "lines": self.lines,
            "config_source": self.config_source,
        }


# ---------------------- Input parsing ----------------------

def _distance(value: Any, allow_zero: bool = False) -> Decimal:
    distance = to_decimal(value, "distance_km")
    if distance < 0 or (distance == 0 and not allow_zero):
        raise ValidationError("distance_km must be greater than zero", field="distance_km")
    return distance


def _count(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a positive integer", field=field_name)
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a positive integer", field=field_name)
    if count < 1 or count != to_decimal(value, field_name):
        raise ValidationError(f"{field_name} must be a positive integer", field=field_name)
    return count


def _money(value: Decimal) -> str:
    return f"${round2(value)}"


def _dates_line(number_of_dates: int, total: Decimal) -> List[str]:
    return [f"{number_of_dates} dates: {_money(total)}"] if number_of_dates > 1 else []


# ---------------------- Shared two-part model ----------------------

def base_and_distance(distance_km: Decimal, config: PricingConfig) -> Tuple[Decimal, Decimal]:
    """Minimum fare plus the per-km charge once distance reaches the threshold."""
    charge = Decimal("0")
    if distance_km >= config.min_distance_km:
        charge = config.price_per_km * (distance_km - config.min_distance_km)
    return config.min_fare, charge


def _trip_fare(service_type, distance_km, is_round_trip, number_of_dates, config) -> FareBreakdown:
    distance_km = _distance(distance_km)
    number_of_dates = _count(number_of_dates, "number_of_dates")
    base, charge = base_and_distance(distance_km, config)
    single = base + charge
    multiplier = config.rule("round_trip_multiplier") if is_round_trip else Decimal("1")
    per_occurrence = single * multiplier
    total = per_occurrence * number_of_dates

    lines = [f"Base fare: {_money(base)}", f"Distance ({distance_km} km): {_money(charge)}"]
    if is_round_trip:
        lines.append(f"Round trip (x{multiplier}): {_money(per_occurrence)}")
    lines += _dates_line(number_of_dates, total)

    return FareBreakdown(
        service_type=service_type,
        base_fare=round2(base),
        distance_charge=round2(charge),
        single_fare=round2(per_occurrence),
        total_fare=round2(total),
        number_of_dates=number_of_dates,
        multipliers={"round_trip": multiplier},
        lines=lines,
        config_source=config.source,
    )


def taxi_fare(distance_km, is_round_trip=False, number_of_dates=1, config: Optional[PricingConfig] = None):
    return _trip_fare("taxi", distance_km, is_round_trip, number_of_dates, config or get_pricing_config("taxi"))


def school_run_fare(distance_km, is_round_trip=False, number_of_dates=1, config: Optional[PricingConfig] = None):
    return _trip_fare(
        "school_run", distance_km, is_round_trip, number_of_dates, config or get_pricing_config("school_run")
    )


def courier_fare(
    distance_km,
    vehicle_type: str = "sedan",
    package_size: str = "medium",
    is_recurring: bool = False,
    number_of_dates=1,
    config: Optional[PricingConfig] = None,
) -> FareBreakdown:
    """Vehicle-class base scaled by package size, plus the distance fare."""
    config = config or get_pricing_config("courier")
    distance_km = _distance(distance_km)
    number_of_dates = _count(number_of_dates, "number_of_dates")

    vehicle_base = config.vehicle_price(vehicle_type)
    size_multiplier = config.size_multiplier(package_size)
    base, charge = base_and_distance(distance_km, config)
    package_price = vehicle_base * size_multiplier
    single = package_price + base + charge
    recurring = config.rule("recurring_multiplier") if is_recurring else Decimal("1")
    per_occurrence = single * recurring
    total = per_occurrence * number_of_dates

    lines = [
        f"{vehicle_type or 'sedan'} base: {_money(vehicle_base)}",
        f"{package_size or 'medium'} size (x{size_multiplier}): {_money(package_price)}",
        f"Distance fare ({distance_km} km): {_money(base + charge)}",
    ]
    if is_recurring:
        lines.append(f"Recurring (x{recurring}): {_money(per_occurrence)}")
    lines += _dates_line(number_of_dates, total)

    return FareBreakdown(
        service_type="courier",
        base_fare=round2(base),
        distance_charge=round2(charge),
        single_fare=round2(per_occurrence),
        total_fare=round2(total),
        number_of_dates=number_of_dates,
        multipliers={"vehicle_base": vehicle_base, "size": size_multiplier, "recurring": recurring},
        lines=lines,
        config_source=config.source,
    )


def errand_task_fare(distance_km, config: PricingConfig) -> Decimal:
    """Fare of a single errand; a task without a known distance costs nothing."""
    distance_km = _distance(distance_km or 0, allow_zero=True)
    if distance_km == 0:
        return Decimal("0.00")
    base, charge = base_and_distance(distance_km, config)
    return round2(base + charge)


def errands_fare(tasks, number_of_dates=1, config: Optional[PricingConfig] = None) -> FareBreakdown:
    """Sum of per-task fares, times the number of scheduled dates."""
    config = config or get_pricing_config("errands")
    if not tasks:
        raise ValidationError("Errands require at least one task", field="tasks")
    number_of_dates = _count(number_of_dates, "number_of_dates")

    items, lines = [], []
    per_occurrence = Decimal("0")
    for index, task in enumerate(tasks, start=1):
        distance = task.get("distance_km") if isinstance(task, Mapping) else getattr(task, "distance_km", None)
        title = (task.get("title") if isinstance(task, Mapping) else getattr(task, "title", "")) or f"Errand {index}"
        fare = errand_task_fare(distance, config)
        per_occurrence += fare
        items.append({"index": index, "title": title, "distance_km": distance, "fare": fare})
        lines.append(f"{title} ({distance or 0} km): {_money(fare)}")

    total = per_occurrence * number_of_dates
    lines.append(f"Total for {len(items)} errand task{'s' if len(items) != 1 else ''}: {_money(per_occurrence)}")
    lines += _dates_line(number_of_dates, total)

    return FareBreakdown(
        service_type="errands",
        base_fare=round2(config.min_fare),
        distance_charge=Decimal("0.00"),
        single_fare=round2(per_occurrence),
        total_fare=round2(total),
        number_of_dates=number_of_dates,
        items=items,
        lines=lines,
        config_source=config.source,
    )


def bulk_fare(distance_km, number_of_trips, config: Optional[PricingConfig] = None) -> FareBreakdown:
    config = config or get_pricing_config("bulk")
    distance_km = _distance(distance_km)
    number_of_trips = _count(number_of_trips, "number_of_trips")
    base, charge = base_and_distance(distance_km, config)
    per_trip = base + charge
    total = per_trip * number_of_trips

    return FareBreakdown(
        service_type="bulk",
        base_fare=round2(base),
        distance_charge=round2(charge),
        single_fare=round2(per_trip),
        total_fare=round2(total),
        multipliers={"trips": Decimal(number_of_trips)},
        lines=[
            f"Base fare per trip: {_money(base)}",
            f"Distance per trip ({distance_km} km): {_money(charge)}",
            f"{number_of_trips} trips: {_money(total)}",
        ],
        config_source=config.source,
    )


# ---------------------- Dispatch ----------------------

FARE_FUNCTIONS: Dict[str, Tuple[Callable[..., FareBreakdown], Tuple[str, ...]]] = {
    "taxi": (taxi_fare, ("distance_km", "is_round_trip", "number_of_dates")),
    "school_run": (school_run_fare, ("distance_km", "is_round_trip", "number_of_dates")),
    "courier": (
        courier_fare,
        ("distance_km", "vehicle_type", "package_size", "is_recurring", "number_of_dates"),
    ),
    "errands": (errands_fare, ("tasks", "number_of_dates")),
    "bulk": (bulk_fare, ("distance_km", "number_of_trips")),
}

REQUIRED_PARAMS = {
    "taxi": ("distance_km",),
    "school_run": ("distance_km",),
    "courier": ("distance_km",),
    "errands": ("tasks",),
    "bulk": ("distance_km", "number_of_trips"),
}


def compute_fare(service_type: str, params: Mapping[str, Any], config: Optional[PricingConfig] = None) -> FareBreakdown:
    """
    Compute a fare breakdown for any service type.

    Unknown parameters are ignored. Always succeeds for valid input, falling
    back to default pricing when the configuration provider is unavailable.
    """
    try:
        func, accepted = FARE_FUNCTIONS[service_type]
    except KeyError:
        raise ValidationError(f"Unknown service type: {service_type}", field="service_type")

    missing = [name for name in REQUIRED_PARAMS[service_type] if params.get(name) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required parameter(s): {', '.join(missing)}", field=missing[0])

    kwargs = {name: params[name] for name in accepted if params.get(name) is not None}
    config = config or get_pricing_config(service_type)
    breakdown = func(config=config, **kwargs)
    logger.debug("Computed %s fare %s (config: %s)", service_type, breakdown.total_fare, config.source)
    return breakdown


def driver_earnings(total_fare: Any, commission_rate: Any = DEFAULT_COMMISSION_RATE) -> Dict[str, Decimal]:
    """Platform commission and driver share of a fare."""
    total = round2(total_fare)
    rate = to_decimal(commission_rate, "commission_rate")
    if not Decimal("0") <= rate <= Decimal("1"):
        raise ValidationError("commission_rate must be between 0 and 1", field="commission_rate")
    commission = round2(total * rate)
    return {
        "total_fare": total,
        "commission": commission,
        "driver_earnings": total - commission,
        "commission_rate_percent": rate * 100,
    }
