"""
Bid/Offer coordinator.

Drivers place bids on rides that are waiting for a driver; the passenger
accepts exactly one of them. Acceptance is decided by a single conditional
UPDATE on the ride row, so concurrent acceptances on the same ride produce
exactly one winner and every loser gets Conflict.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from drivers.models import DriverProfile
from rides.models import (
    OFFER_ACCEPTING_STATUSES,
    Bid,
    BidStatus,
    Ride,
    RideStatus,
)
from realtime.events import BIDS, ERRAND_TASKS, EventKind, RIDES
from realtime.propagation import filterable_values, publish_change
from services.exceptions import (
    BidNotFoundError,
    Conflict,
    PermissionDenied,
    PreconditionFailed,
    RideNotFoundError,
    ValidationError,
)
from services.pricing import allocate_task_costs
from services.pricing.distribution import CENT, to_decimal
from services.ride_management.queries import lock_ride
from services.ride_management.task_lifecycle import activate_next_task

logger = logging.getLogger(__name__)

ALREADY_ASSIGNED_MESSAGE = "This ride was just assigned to another driver."


@dataclass
class BidResult:
    """Result object for bid operations."""
    bid: Bid
    ride: Ride
    changed: bool = True
    message: str = ""


def validate_bid_amount(value) -> Decimal:
    """
    Parse a bid amount: a positive value with at most two decimals within
    [BID_MIN_AMOUNT, BID_MAX_AMOUNT].
    """
    if value is None or str(value).strip() == "":
        raise ValidationError("Please enter a bid amount", field="amount")
    try:
        amount = to_decimal(value, "amount")
    except ValidationError:
        raise ValidationError("Please enter a valid amount", field="amount")
    minimum = Decimal(settings.BID_MIN_AMOUNT)
    maximum = Decimal(settings.BID_MAX_AMOUNT)
    if amount != amount.quantize(CENT):
        raise ValidationError("Bid amount can have at most two decimal places", field="amount")
    if amount < minimum:
        raise ValidationError(f"Minimum bid is ${minimum}", field="amount")
    if amount > maximum:
        raise ValidationError(f"Maximum bid is ${maximum}", field="amount")
    return amount.quantize(CENT)


def _driver_profile(driver) -> DriverProfile:
    if not getattr(driver, "is_driver", False):
        raise PermissionDenied("Only drivers can place bids")
    try:
        profile = driver.driver_profile
    except DriverProfile.DoesNotExist:
        raise PermissionDenied("Driver profile not found")
    if not profile.is_approved:
        raise PermissionDenied("Your driver profile has not been approved yet")
    return profile


def _get_bid(ride: Ride, bid_id) -> Bid:
    try:
        return Bid.objects.select_for_update().get(pk=bid_id, ride=ride)
    except (Bid.DoesNotExist, ValueError, TypeError):
        raise BidNotFoundError("Bid not found on this ride", bid_id=bid_id)


def _revert_to_pending_if_no_bids(ride: Ride) -> None:
    """An offered ride whose last pending bid went away is pending again."""
    if ride.status != RideStatus.OFFERED:
        return
    if ride.bids.filter(status=BidStatus.PENDING).exists():
        return
    previous = filterable_values(RIDES, ride)
    ride.status = RideStatus.PENDING
    ride.save(update_fields=["status", "updated_at"])
    publish_change(RIDES, ride, previous=previous)


# ===================== Driver Operations =====================

@transaction.atomic
def submit_bid(ride_id, driver, amount) -> BidResult:
    """
    Record a driver's bid on a ride that is waiting for a driver.

    Raises:
        ValidationError: bad amount, ride not accepting bids, or the driver
            already has a pending bid on this ride
        PermissionDenied: not an approved driver, or bidding on own ride
    """
    amount = validate_bid_amount(amount)
    _driver_profile(driver)

    ride = lock_ride(ride_id)
    if ride.passenger_id == driver.id:
        raise PermissionDenied("You cannot bid on your own ride")
    if ride.status not in OFFER_ACCEPTING_STATUSES:
        raise ValidationError("This ride is no longer accepting bids", field="ride")
    if ride.bids.filter(driver=driver, status=BidStatus.PENDING).exists():
        raise ValidationError("You already have a pending bid on this ride", field="ride")

    try:
        with transaction.atomic():
            bid = Bid.objects.create(ride=ride, driver=driver, amount=amount)
    except IntegrityError:
        raise ValidationError("You already have a pending bid on this ride", field="ride")
    publish_change(BIDS, bid, EventKind.CREATED)

    if ride.status == RideStatus.PENDING:
        previous = filterable_values(RIDES, ride)
        ride.status = RideStatus.OFFERED
        ride.save(update_fields=["status", "updated_at"])
        publish_change(RIDES, ride, previous=previous)

    logger.info("Driver %s bid %s on ride %s", driver.id, amount, ride.id)
    return BidResult(bid=bid, ride=ride, message="Bid placed successfully")


@transaction.atomic
def withdraw_bid(bid_id, driver, reason: str = "") -> BidResult:
    """Driver withdraws their own pending bid."""
    try:
        ride_id = Bid.objects.values_list("ride_id", flat=True).get(pk=bid_id)
    except (Bid.DoesNotExist, ValueError, TypeError):
        raise BidNotFoundError("Bid not found", bid_id=bid_id)

    ride = lock_ride(ride_id)
    bid = _get_bid(ride, bid_id)
    if bid.driver_id != driver.id and not getattr(driver, "is_operator", False):
        raise PermissionDenied("You can only withdraw your own bids")
    if bid.status == BidStatus.WITHDRAWN:
        return BidResult(bid=bid, ride=ride, changed=False, message="Bid already withdrawn")
    if bid.status != BidStatus.PENDING:
        raise PreconditionFailed(f"Cannot withdraw a bid that is {bid.status}", bid_id=bid.id)

    previous = filterable_values(BIDS, bid)
    bid.status = BidStatus.WITHDRAWN
    bid.responded_at = timezone.now()
    bid.reason = reason or ""
    bid.save(update_fields=["status", "responded_at", "reason"])
    publish_change(BIDS, bid, previous=previous)
    _revert_to_pending_if_no_bids(ride)

    logger.info("Bid %s on ride %s withdrawn by user %s: %s", bid.id, ride.id, driver.id, reason or "-")
    return BidResult(bid=bid, ride=ride, message="Bid withdrawn")


# ===================== Passenger Operations =====================

def _check_ride_owner(ride: Ride, user) -> None:
    if user.id != ride.passenger_id and not getattr(user, "is_operator", False):
        raise PermissionDenied("Only the passenger who booked this ride can respond to bids")


@transaction.atomic
def decline_bid(ride_id, bid_id, passenger, reason: str = "") -> BidResult:
    """Passenger declines one pending bid."""
    ride = lock_ride(ride_id)
    _check_ride_owner(ride, passenger)
    bid = _get_bid(ride, bid_id)
    if bid.status == BidStatus.REJECTED:
        return BidResult(bid=bid, ride=ride, changed=False, message="Bid already declined")
    if bid.status != BidStatus.PENDING:
        raise PreconditionFailed(f"Cannot decline a bid that is {bid.status}", bid_id=bid.id)

    previous = filterable_values(BIDS, bid)
    bid.status = BidStatus.REJECTED
    bid.responded_at = timezone.now()
    bid.reason = reason or ""
    bid.save(update_fields=["status", "responded_at", "reason"])
    publish_change(BIDS, bid, previous=previous)
    _revert_to_pending_if_no_bids(ride)

    logger.info("Bid %s on ride %s declined: %s", bid.id, ride.id, reason or "-")
    return BidResult(bid=bid, ride=ride, message="Bid declined")


@transaction.atomic
def accept_bid(ride_id, bid_id, passenger) -> BidResult:
    """
    Accept one bid and assign its driver to the ride.

    The ride is claimed with one conditional UPDATE that only matches while
    the ride is pending/offered with no driver. Zero matched rows means
    another acceptance already won, unless it was this same bid (retry).

    On success the bid becomes accepted, every other pending bid rejected,
    the ride assigned with the bid amount as its agreed fare, errand task
    costs re-split over that fare and the first task activated. All of it
    commits, and is published, as one unit.

    Raises:
        Conflict: the ride was assigned by a concurrent acceptance
        PreconditionFailed: the bid is no longer pending, or the driver is busy
    """
    try:
        ride = Ride.objects.get(pk=ride_id)
    except (Ride.DoesNotExist, ValueError, TypeError):
        raise RideNotFoundError("Ride not found", ride_id=ride_id)
    _check_ride_owner(ride, passenger)
    previous_ride = filterable_values(RIDES, ride)

    try:
        bid = Bid.objects.get(pk=bid_id, ride_id=ride.id)
    except (Bid.DoesNotExist, ValueError, TypeError):
        raise BidNotFoundError("Bid not found on this ride", bid_id=bid_id)

    now = timezone.now()
    claimed = Ride.objects.filter(
        pk=ride.id,
        status__in=OFFER_ACCEPTING_STATUSES,
        driver__isnull=True,
    ).update(
        status=RideStatus.ASSIGNED,
        driver_id=bid.driver_id,
        estimated_cost=bid.amount,
        assigned_at=now,
        updated_at=now,
    )

    if not claimed:
        ride.refresh_from_db()
        if ride.status != RideStatus.CANCELLED and ride.driver_id == bid.driver_id and (
            Bid.objects.filter(pk=bid.id, status=BidStatus.ACCEPTED).exists()
        ):
            return BidResult(bid=bid, ride=ride, changed=False, message="Bid already accepted")
        if ride.driver_id is not None and ride.status != RideStatus.CANCELLED:
            raise Conflict(ALREADY_ASSIGNED_MESSAGE, ride_id=ride.id)
        raise PreconditionFailed(f"Cannot accept bids on a ride that is {ride.status}", ride_id=ride.id)

    # A retry of this same acceptance has already returned above
    if not ride.is_series:
        if DriverProfile.objects.filter(user_id=bid.driver_id, status="busy").exists():
            raise PreconditionFailed("This driver is currently engaged in another trip", bid_id=bid.id)

    # The conditional update holds the row lock until commit
    accepted = Bid.objects.filter(pk=bid.id, status=BidStatus.PENDING).update(
        status=BidStatus.ACCEPTED, responded_at=now,
    )
    if not accepted:
        # Rolls back the ride claim
        raise PreconditionFailed("This bid is no longer pending", bid_id=bid.id)

    ride = lock_ride(ride.id)
    publish_change(RIDES, ride, previous=previous_ride)

    bid.refresh_from_db()
    publish_change(BIDS, bid, previous={"status": BidStatus.PENDING})

    for sibling in ride.bids.select_for_update().filter(status=BidStatus.PENDING).exclude(pk=bid.id):
        sibling.status = BidStatus.REJECTED
        sibling.responded_at = now
        sibling.reason = "Another bid was accepted"
        sibling.save(update_fields=["status", "responded_at", "reason"])
        publish_change(BIDS, sibling, previous={"status": BidStatus.PENDING})

    if not ride.is_series:
        DriverProfile.objects.filter(user_id=bid.driver_id).update(status="busy")

    if ride.is_errand:
        tasks = list(ride.tasks.select_for_update().order_by("order"))
        allocate_task_costs(tasks, ride.estimated_cost)
        for task in tasks:
            task.save(update_fields=["cost", "updated_at"])
            publish_change(ERRAND_TASKS, task)
        activate_next_task(ride)

    logger.info("Ride %s assigned to driver %s at %s (bid %s)", ride.id, bid.driver_id, bid.amount, bid.id)
    return BidResult(bid=bid, ride=ride, message="Bid accepted. Your driver has been assigned.")


# ===================== Queries =====================

def list_bids(ride_id, status: Optional[str] = None) -> List[Bid]:
    """Bids on a ride, lowest amount first, then oldest first."""
    queryset = Bid.objects.filter(ride_id=ride_id).select_related("driver__driver_profile")
    if status:
        queryset = queryset.filter(status=status)
    return list(queryset.order_by("amount", "created_at", "id"))
