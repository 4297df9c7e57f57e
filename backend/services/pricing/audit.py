"""Cost reconciliation of completed errand rides."""

import logging
from typing import Optional

from .distribution import validate

logger = logging.getLogger(__name__)


def audit_ride_costs(ride) -> Optional["CostAuditRecord"]:  # noqa: F821
    """
    Check an errand ride's task costs against its per-occurrence fare.

    Defects are stored as a CostAuditRecord for operator review and logged;
    task costs are never changed here. Returns the record, or None when the
    costs reconcile (or the ride has no tasks to audit).
    """
    from rides.models import CostAuditRecord

    if not ride.is_errand:
        return None
    expected = ride.final_cost if ride.final_cost is not None else ride.estimated_cost
    result = validate(ride.tasks.all(), expected)
    if result.is_valid:
        logger.debug("Ride %s costs reconcile (%s)", ride.id, result.actual_total)
        return None

    record = CostAuditRecord.objects.create(
        ride=ride,
        expected_total=result.expected_total,
        actual_total=result.actual_total,
        defects=[defect.as_dict() for defect in result.defects],
    )
    logger.warning(
        "Ride %s cost audit found %d defect(s): %s",
        ride.id,
        len(result.defects),
        "; ".join(defect.message for defect in result.defects),
    )
    return record
