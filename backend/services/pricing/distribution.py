"""
Cost Distribution Engine.

Splits a fare across the tasks of a ride so the parts always reconcile to the
total, and audits stored per-task costs against an expected total.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from services.exceptions import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
DEFAULT_TOLERANCE = Decimal("0.01")


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a monetary or numeric input, rejecting anything non-finite."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    if not number.is_finite():
        raise ValidationError(f"{field_name} must be a finite number", field=field_name)
    return number


def round2(value: Any) -> Decimal:
    """Round half-up to cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def distribute(total: Any, n: int) -> List[Decimal]:
    """
    Split total into n cent amounts that sum exactly to round2(total).

    Every part is round2(total / n) and the last part absorbs the rounding
    remainder. For tiny totals where half-up shares would overshoot the total
    by more than one share, shares are rounded down instead so no part goes
    negative.
    """
    if isinstance(n, bool) or not isinstance(n, int) or n < 1:
        raise ValidationError("Task count must be a positive integer", field="n")
    total = round2(total)
    if total < 0:
        raise ValidationError("Total cost cannot be negative", field="total")

    share = (total / n).quantize(CENT, rounding=ROUND_HALF_UP)
    if share * n - total > share:
        share = (total / n).quantize(CENT, rounding=ROUND_DOWN)

    costs = [share] * n
    costs[-1] = share + (total - share * n)
    return costs


def aggregate(costs: Iterable[Any]) -> Decimal:
    """Sum per-task costs; missing values count as zero."""
    total = Decimal("0")
    for cost in costs:
        if cost is None:
            continue
        total += to_decimal(cost, "cost")
    return round2(total)


def _task_cost(task) -> Any:
    if isinstance(task, dict):
        return task.get("cost")
    return getattr(task, "cost", None)


def _task_id(task, index: int):
    if isinstance(task, dict):
        return task.get("id", index)
    return getattr(task, "id", index)


@dataclass
class CostDefect:
    kind: str
    message: str
    task_ids: List[Any] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "task_ids": self.task_ids}


@dataclass
class CostValidation:
    is_valid: bool
    expected_total: Decimal
    actual_total: Decimal
    difference: Decimal
    defects: List[CostDefect] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "expected_total": str(self.expected_total),
            "actual_total": str(self.actual_total),
            "difference": str(self.difference),
            "defects": [defect.as_dict() for defect in self.defects],
        }


def validate(tasks: Iterable[Any], expected_total: Any, tolerance: Any = DEFAULT_TOLERANCE) -> CostValidation:
    """
    Audit per-task costs against an expected total.

    Reports missing costs, negative costs and a total mismatch beyond the
    tolerance as structured defects. Nothing is corrected.
    """
    tasks = list(tasks)
    expected = round2(expected_total)
    tolerance = to_decimal(tolerance, "tolerance")
    defects: List[CostDefect] = []

    if not tasks:
        difference = abs(expected)
        if expected != 0:
            defects.append(CostDefect("no_tasks", "No tasks provided but expected cost is non-zero"))
        return CostValidation(not defects, expected, Decimal("0.00"), difference, defects)

    missing, negative, costs = [], [], []
    for index, task in enumerate(tasks):
        raw = _task_cost(task)
        try:
            cost = to_decimal(raw, "cost")
        except ValidationError:
            missing.append(_task_id(task, index))
            continue
        if cost < 0:
            negative.append(_task_id(task, index))
        costs.append(cost)

    if missing:
        defects.append(CostDefect("missing_cost", f"{len(missing)} task(s) missing cost", missing))
    if negative:
        defects.append(CostDefect("negative_cost", f"{len(negative)} task(s) have negative costs", negative))

    actual = aggregate(costs)
    difference = abs(actual - expected)
    if difference > tolerance:
        defects.append(CostDefect(
            "total_mismatch",
            f"Total cost mismatch: expected {expected}, got {actual} (difference: {difference})",
        ))

    return CostValidation(not defects, expected, actual, difference, defects)


def cost_per_task(cost_per_occurrence: Any, task_count: int) -> Decimal:
    if not task_count or task_count <= 0:
        return Decimal("0.00")
    return round2(to_decimal(cost_per_occurrence) / task_count)


def allocate_task_costs(tasks: List[Any], total: Any) -> List[Any]:
    """Set task.cost on each task in order from distribute(); returns the tasks."""
    if not tasks:
        return []
    for task, cost in zip(tasks, distribute(total, len(tasks))):
        task.cost = cost
    return tasks


def remaining_cost(ride) -> Decimal:
    """Cost of the tasks of an errand ride that are not completed yet."""
    from rides.models import TaskState

    return aggregate(task.cost for task in ride.tasks.all() if task.state != TaskState.COMPLETED)


def cost_breakdown(ride) -> Optional[Dict[str, Any]]:
    """Per-task costs, average and reconciliation status of an errand ride."""
    if not ride.is_errand:
        return None
    tasks = list(ride.tasks.all())
    count = len(tasks)
    total = round2(ride.estimated_cost or 0)
    fallback = cost_per_task(total, count)

    rows = []
    for task in tasks:
        cost = round2(task.cost) if task.cost is not None else fallback
        rows.append({"id": task.id, "order": task.order, "title": task.title, "cost": cost, "state": task.state})

    actual = aggregate(row["cost"] for row in rows)
    return {
        "ride_id": ride.id,
        "total_cost": actual,
        "expected_total": total,
        "task_count": count,
        "average_cost_per_task": round2(actual / count) if count else Decimal("0.00"),
        "remaining_cost": remaining_cost(ride),
        "tasks": rows,
        "is_valid": validate(tasks, total).is_valid,
    }
