"""Row lookup helpers shared by the ride and task state machines."""

from rides.models import Ride
from services.exceptions import RideNotFoundError


def lock_ride(ride_id) -> Ride:
    """
    Fetch a ride with a row lock for the rest of the current transaction.

    Every mutation of a ride, its bids or its tasks goes through this lock.
    """
    try:
        return Ride.objects.select_for_update().get(pk=ride_id)
    except (Ride.DoesNotExist, ValueError, TypeError):
        raise RideNotFoundError("Ride not found", ride_id=ride_id)


def get_ride(ride_id) -> Ride:
    try:
        return Ride.objects.select_related("passenger", "driver").get(pk=ride_id)
    except (Ride.DoesNotExist, ValueError, TypeError):
        raise RideNotFoundError("Ride not found", ride_id=ride_id)


def actor_type(actor) -> str:
    if actor is None:
        return "system"
    if getattr(actor, "is_operator", False):
        return "operator"
    return getattr(actor, "role", "") or "user"
