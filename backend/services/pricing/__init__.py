"""
Pricing service - fare table, pricing configuration and cost distribution.
"""

from .config import PricingConfig, get_pricing_config, invalidate_pricing_cache
from .distribution import (
    CostDefect,
    CostValidation,
    aggregate,
    allocate_task_costs,
    cost_breakdown,
    cost_per_task,
    distribute,
    remaining_cost,
    round2,
    validate,
)
from .fares import FareBreakdown, compute_fare, driver_earnings

__all__ = [
    # Configuration
    "PricingConfig",
    "get_pricing_config",
    "invalidate_pricing_cache",
    # Fares
    "FareBreakdown",
    "compute_fare",
    "driver_earnings",
    # Distribution
    "CostDefect",
    "CostValidation",
    "aggregate",
    "allocate_task_costs",
    "cost_breakdown",
    "cost_per_task",
    "distribute",
    "remaining_cost",
    "round2",
    "validate",
]
