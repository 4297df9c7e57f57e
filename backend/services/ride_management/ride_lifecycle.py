"""
Core ride lifecycle operations.

pending -> offered -> assigned -> in_progress -> completed, with cancelled
reachable from any status before completion and disputed / flagged reachable
from in_progress or completed. Every entry point locks the ride row, so
transitions on one ride are linearizable. Re-applying a transition the ride
has already made is a no-op.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.utils import timezone

from drivers.models import DriverProfile
from rides.models import (
    BidStatus,
    ErrandTask,
    Ride,
    RideStatus,
    ServiceType,
)
from realtime.events import BIDS, ERRAND_TASKS, EventKind, RIDES
from realtime.propagation import filterable_values, publish_change
from services.exceptions import PermissionDenied, PreconditionFailed, ValidationError
from services.pricing import allocate_task_costs, compute_fare, round2
from .queries import get_ride, lock_ride
from .task_lifecycle import task_progress

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (RideStatus.PENDING, RideStatus.OFFERED, RideStatus.ASSIGNED, RideStatus.IN_PROGRESS)
REVIEWABLE_STATUSES = (RideStatus.IN_PROGRESS, RideStatus.COMPLETED)


@dataclass
class RideResult:
    """Result object for ride operations."""
    ride: Ride
    changed: bool = True
    message: str = ""
    extra: Optional[Dict[str, Any]] = None


# ===================== Creation =====================

def _location(address, latitude, longitude):
    from common.utils.routing import Location

    return Location(
        address=address or "",
        latitude=float(latitude) if latitude is not None else None,
        longitude=float(longitude) if longitude is not None else None,
    )


def _estimate_route(pickup, dropoff):
    from common.utils.routing import route

    return route(pickup, dropoff)


def _validate_schedule(is_series: bool, scheduled_dates: Optional[List]) -> List[str]:
    dates = [str(value) for value in (scheduled_dates or [])]
    if is_series and not dates:
        raise ValidationError("Recurring rides need at least one scheduled date", field="scheduled_dates")
    if len(set(dates)) != len(dates):
        raise ValidationError("Scheduled dates must be unique", field="scheduled_dates")
    return dates


def _prepare_tasks(tasks: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    if not tasks:
        raise ValidationError("Errand rides need at least one task", field="tasks")
    prepared = []
    for index, raw in enumerate(tasks):
        if not raw.get("pickup_address") or not raw.get("dropoff_address"):
            raise ValidationError(f"Task {index + 1} needs a pickup and a dropoff address", field="tasks")
        item = dict(raw)
        item["title"] = raw.get("title") or f"Task {index + 1}"
        if item.get("distance_km") is None:
            estimate = _estimate_route(
                _location(raw["pickup_address"], raw.get("pickup_latitude"), raw.get("pickup_longitude")),
                _location(raw["dropoff_address"], raw.get("dropoff_latitude"), raw.get("dropoff_longitude")),
            )
            if estimate is not None:
                item["distance_km"] = estimate.distance_km
                item.setdefault("duration_minutes", estimate.duration_minutes)
        prepared.append(item)
    return prepared


@transaction.atomic
def create_ride(
    passenger,
    service_type: str,
    pickup_address: str = "",
    pickup_latitude=None,
    pickup_longitude=None,
    dropoff_address: str = "",
    dropoff_latitude=None,
    dropoff_longitude=None,
    tasks: Optional[List[Dict[str, Any]]] = None,
    is_round_trip: bool = False,
    vehicle_type: str = "",
    package_size: str = "",
    number_of_trips: int = 1,
    distance_km=None,
    is_series: bool = False,
    scheduled_dates: Optional[List] = None,
    estimated_cost=None,
) -> RideResult:
    """
    Create a ride in pending.

    When no estimated_cost is given it is priced through the fare table using
    the routing collaborator for distances. Errand task costs are the even
    split of the estimated cost.

    Raises:
        PermissionDenied: user cannot book rides
        ValidationError: unknown service type, missing locations, bad schedule
    """
    if not getattr(passenger, "can_book", False):
        raise PermissionDenied("Only passengers and corporate clients can book rides")
    if service_type not in ServiceType.values:
        raise ValidationError(f"Unknown service type: {service_type}", field="service_type")

    dates = _validate_schedule(is_series, scheduled_dates)
    number_of_dates = max(len(dates), 1) if is_series else 1
    duration_minutes = None
    is_errand = service_type == ServiceType.ERRANDS

    if is_errand:
        prepared_tasks = _prepare_tasks(tasks)
    else:
        prepared_tasks = []
        if not pickup_address or not dropoff_address:
            raise ValidationError("Pickup and dropoff addresses are required", field="pickup_address")
        if distance_km is None and estimated_cost is None:
            estimate = _estimate_route(
                _location(pickup_address, pickup_latitude, pickup_longitude),
                _location(dropoff_address, dropoff_latitude, dropoff_longitude),
            )
            if estimate is None:
                raise ValidationError(
                    "Distance could not be determined; provide coordinates or distance_km",
                    field="distance_km",
                )
            distance_km, duration_minutes = estimate.distance_km, estimate.duration_minutes

    if estimated_cost is None:
        params = {
            "distance_km": distance_km,
            "is_round_trip": is_round_trip,
            "is_recurring": is_series,
            "vehicle_type": vehicle_type or None,
            "package_size": package_size or None,
            "number_of_trips": number_of_trips,
            "number_of_dates": number_of_dates,
            "tasks": prepared_tasks,
        }
        breakdown = compute_fare(service_type, params)
        estimated_cost = round2(breakdown.total_fare / breakdown.number_of_dates)
    else:
        estimated_cost = round2(estimated_cost)
        if estimated_cost < 0:
            raise ValidationError("Estimated cost cannot be negative", field="estimated_cost")

    ride = Ride.objects.create(
        passenger=passenger,
        service_type=service_type,
        status=RideStatus.PENDING,
        pickup_address="" if is_errand else pickup_address,
        pickup_latitude=None if is_errand else pickup_latitude,
        pickup_longitude=None if is_errand else pickup_longitude,
        dropoff_address="" if is_errand else dropoff_address,
        dropoff_latitude=None if is_errand else dropoff_latitude,
        dropoff_longitude=None if is_errand else dropoff_longitude,
        is_round_trip=is_round_trip,
        vehicle_type=vehicle_type or "",
        package_size=package_size or "",
        number_of_trips=number_of_trips or 1,
        distance_km=round2(distance_km) if distance_km is not None else None,
        duration_minutes=duration_minutes,
        is_series=is_series,
        scheduled_dates=dates,
        estimated_cost=estimated_cost,
    )
    publish_change(RIDES, ride, EventKind.CREATED)

    if prepared_tasks:
        task_rows = [
            ErrandTask(
                ride=ride,
                order=index,
                title=item["title"],
                description=item.get("description") or "",
                pickup_address=item["pickup_address"],
                pickup_latitude=item.get("pickup_latitude"),
                pickup_longitude=item.get("pickup_longitude"),
                dropoff_address=item["dropoff_address"],
                dropoff_latitude=item.get("dropoff_latitude"),
                dropoff_longitude=item.get("dropoff_longitude"),
                distance_km=round2(item["distance_km"]) if item.get("distance_km") is not None else None,
                duration_minutes=item.get("duration_minutes"),
            )
            for index, item in enumerate(prepared_tasks)
        ]
        allocate_task_costs(task_rows, estimated_cost)
        for task in task_rows:
            task.save()
            publish_change(ERRAND_TASKS, task, EventKind.CREATED)

    logger.info("Created %s ride %s for passenger %s (estimated %s)", service_type, ride.id, passenger.id, estimated_cost)
    return RideResult(ride=ride, message="Ride created. Waiting for driver bids.")


# ===================== Transitions =====================

def _check_participant(ride: Ride, actor, allow_passenger=True, allow_driver=True) -> None:
    if getattr(actor, "is_operator", False):
        return
    if allow_passenger and actor.id == ride.passenger_id:
        return
    if allow_driver and ride.driver_id is not None and actor.id == ride.driver_id:
        return
    raise PermissionDenied("You are not allowed to change this ride")


def _set_driver_availability(driver_id, status: str) -> None:
    DriverProfile.objects.filter(user_id=driver_id).update(status=status)


def mark_ride_started(ride: Ride) -> None:
    """assigned -> in_progress; the ride row must already be locked."""
    previous = filterable_values(RIDES, ride)
    ride.status = RideStatus.IN_PROGRESS
    ride.started_at = timezone.now()
    ride.save(update_fields=["status", "started_at", "updated_at"])
    publish_change(RIDES, ride, previous=previous)
    logger.info("Ride %s started", ride.id)


def finalize_completion(ride: Ride, final_cost=None) -> None:
    """
    in_progress -> completed; the ride row must already be locked.

    Fixes final_cost to the agreed per-occurrence fare unless one is given,
    archives the ride and schedules the cost audit for errand rides.
    """
    previous = filterable_values(RIDES, ride)
    now = timezone.now()
    if final_cost is not None:
        ride.final_cost = round2(final_cost)
    elif ride.final_cost is None:
        ride.final_cost = round2(ride.estimated_cost)
    ride.status = RideStatus.COMPLETED
    ride.completed_at = now
    ride.archived_at = now
    ride.save(update_fields=["status", "final_cost", "completed_at", "archived_at", "updated_at"])

    # Update ride counts
    ride.passenger.completed_rides += 1
    ride.passenger.save(update_fields=["completed_rides"])
    if ride.driver_id:
        ride.driver.completed_rides += 1
        ride.driver.save(update_fields=["completed_rides"])
        _set_driver_availability(ride.driver_id, "available")

    publish_change(RIDES, ride, previous=previous)

    if ride.is_errand:
        from rides.tasks import audit_ride_costs_task
        ride_id = ride.id
        transaction.on_commit(lambda: audit_ride_costs_task.delay(ride_id))

    logger.info("Ride %s completed (final cost %s)", ride.id, ride.final_cost)


@transaction.atomic
def start_ride(ride_id, actor) -> RideResult:
    """
    Driver-reported start of a non-errand ride: assigned -> in_progress.

    Errand rides start when their first task is started.
    """
    ride = lock_ride(ride_id)
    _check_participant(ride, actor, allow_passenger=False)
    if ride.status == RideStatus.IN_PROGRESS:
        return RideResult(ride=ride, changed=False, message="Ride already in progress")
    if ride.is_errand:
        raise PreconditionFailed("Errand rides start when the first task is started")
    if ride.status != RideStatus.ASSIGNED:
        raise PreconditionFailed(f"Cannot start a ride that is {ride.status}", ride_id=ride.id)
    mark_ride_started(ride)
    return RideResult(ride=ride, message="Ride started")


@transaction.atomic
def complete_ride(ride_id, actor, final_cost=None) -> RideResult:
    """
    in_progress -> completed.

    Raises:
        PreconditionFailed: ride not in progress, or errand tasks incomplete
    """
    ride = lock_ride(ride_id)
    _check_participant(ride, actor, allow_passenger=False)
    if ride.status == RideStatus.COMPLETED:
        return RideResult(ride=ride, changed=False, message="Ride already completed")
    if ride.status != RideStatus.IN_PROGRESS:
        raise PreconditionFailed(f"Cannot complete a ride that is {ride.status}", ride_id=ride.id)
    if ride.is_errand:
        progress = task_progress(ride.tasks.all())
        if progress.remaining:
            raise PreconditionFailed(
                f"{progress.remaining} task(s) are not completed yet",
                ride_id=ride.id,
                remaining=progress.remaining,
            )
    if final_cost is not None and round2(final_cost) < 0:
        raise ValidationError("Final cost cannot be negative", field="final_cost")
    finalize_completion(ride, final_cost)
    return RideResult(ride=ride, message="Ride completed successfully")


@transaction.atomic
def cancel_ride(ride_id, actor, reason: str = "") -> RideResult:
    """
    Cancel a ride before completion. Pending bids become withdrawn.

    Args:
        ride_id: ID of the ride to cancel
        actor: passenger, assigned driver or operator
        reason: Cancellation reason
    """
    ride = lock_ride(ride_id)
    _check_participant(ride, actor)
    if ride.status == RideStatus.CANCELLED:
        return RideResult(ride=ride, changed=False, message="Ride already cancelled")
    if ride.status not in CANCELLABLE_STATUSES:
        raise PreconditionFailed(f"Cannot cancel - ride is already {ride.status}", ride_id=ride.id)

    previous = filterable_values(RIDES, ride)
    had_driver = ride.driver_id is not None
    now = timezone.now()
    ride.status = RideStatus.CANCELLED
    ride.cancelled_at = now
    ride.archived_at = now
    ride.cancellation_reason = reason or ""
    ride.save(update_fields=["status", "cancelled_at", "archived_at", "cancellation_reason", "updated_at"])
    publish_change(RIDES, ride, previous=previous)

    withdrawn = 0
    for bid in ride.bids.select_for_update().filter(status=BidStatus.PENDING):
        bid_previous = filterable_values(BIDS, bid)
        bid.status = BidStatus.WITHDRAWN
        bid.responded_at = now
        bid.reason = reason or "Ride cancelled"
        bid.save(update_fields=["status", "responded_at", "reason"])
        publish_change(BIDS, bid, previous=bid_previous)
        withdrawn += 1

    if had_driver:
        _set_driver_availability(ride.driver_id, "available")

    logger.info("Ride %s cancelled by user %s (%d bid(s) withdrawn)", ride.id, actor.id, withdrawn)
    return RideResult(
        ride=ride,
        message="Ride cancelled successfully",
        extra={"was_assigned": had_driver, "withdrawn_bids": withdrawn},
    )


def _review(ride_id, actor, target: str, reason: str, operator_only: bool) -> RideResult:
    ride = lock_ride(ride_id)
    if operator_only and not getattr(actor, "is_operator", False):
        raise PermissionDenied("Only operators can flag rides")
    _check_participant(ride, actor)
    if ride.status == target:
        return RideResult(ride=ride, changed=False, message=f"Ride already {target}")
    if ride.status not in REVIEWABLE_STATUSES:
        raise PreconditionFailed(f"Cannot mark a ride that is {ride.status} as {target}", ride_id=ride.id)

    previous = filterable_values(RIDES, ride)
    ride.status = target
    ride.dispute_reason = reason or ""
    ride.save(update_fields=["status", "dispute_reason", "updated_at"])
    publish_change(RIDES, ride, previous=previous)
    logger.info("Ride %s marked %s by user %s", ride.id, target, actor.id)
    return RideResult(ride=ride, message=f"Ride marked as {target}")


@transaction.atomic
def dispute_ride(ride_id, actor, reason: str = "") -> RideResult:
    """Passenger, driver or operator raises a dispute on an in-progress or completed ride."""
    return _review(ride_id, actor, RideStatus.DISPUTED, reason, operator_only=False)


@transaction.atomic
def flag_ride(ride_id, actor, reason: str = "") -> RideResult:
    """Operator flags an in-progress or completed ride for review."""
    return _review(ride_id, actor, RideStatus.FLAGGED, reason, operator_only=True)


# ===================== Queries =====================

def ride_progress(ride: Ride) -> Dict[str, Any]:
    """Task counts and the active task of an errand ride."""
    if not ride.is_errand:
        return {"total": 0, "completed": 0, "remaining": 0, "active_task_id": None}
    return task_progress(ride.tasks.all()).as_dict()


def get_ride_for_user(ride_id, user) -> Ride:
    """Ride detail lookup restricted to its participants and operators."""
    ride = get_ride(ride_id)
    if getattr(user, "is_operator", False) or user.id in (ride.passenger_id, ride.driver_id):
        return ride
    # Drivers may look at rides that are still open for bids
    if getattr(user, "is_driver", False) and ride.status in (RideStatus.PENDING, RideStatus.OFFERED):
        return ride
    raise PermissionDenied("You are not allowed to view this ride")
