"""Celery tasks for ride-related background processing."""

from celery import shared_task
import logging

logger = logging.getLogger(__name__)


@shared_task
def audit_ride_costs_task(ride_id: int):
    """
    Reconcile a completed errand ride's task costs.

    Scheduled after the completing transaction commits. Returns the id of
    the CostAuditRecord created, or None when the costs reconcile.
    """
    from rides.models import Ride
    from services.pricing.audit import audit_ride_costs

    try:
        ride = Ride.objects.get(id=ride_id)
    except Ride.DoesNotExist:
        logger.warning("Ride %s not found for cost audit", ride_id)
        return None

    record = audit_ride_costs(ride)
    return record.id if record else None
