from decimal import Decimal

from django.conf import settings
from django.db import models
from django.db.models import Q


class RideStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    OFFERED = 'offered', 'Offered'
    ASSIGNED = 'assigned', 'Assigned'
    IN_PROGRESS = 'in_progress', 'In Progress'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'
    DISPUTED = 'disputed', 'Disputed'
    FLAGGED = 'flagged', 'Flagged'


class ServiceType(models.TextChoices):
    TAXI = 'taxi', 'Taxi'
    COURIER = 'courier', 'Courier'
    SCHOOL_RUN = 'school_run', 'School Run'
    ERRANDS = 'errands', 'Errands'
    BULK = 'bulk', 'Bulk Trips'


class TaskState(models.TextChoices):
    PENDING = 'pending', 'Pending'
    ACTIVATED = 'activated', 'Activated'
    DRIVER_ON_WAY = 'driver_on_way', 'Driver On The Way'
    DRIVER_ARRIVED = 'driver_arrived', 'Driver Arrived'
    STARTED = 'started', 'Started'
    COMPLETED = 'completed', 'Completed'


class BidStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    ACCEPTED = 'accepted', 'Accepted'
    REJECTED = 'rejected', 'Rejected'
    WITHDRAWN = 'withdrawn', 'Withdrawn'


# Statuses in which a ride still waits for a driver
OFFER_ACCEPTING_STATUSES = (RideStatus.PENDING, RideStatus.OFFERED)
# Statuses that require an assigned driver
DRIVER_ASSIGNED_STATUSES = (
    RideStatus.ASSIGNED,
    RideStatus.IN_PROGRESS,
    RideStatus.COMPLETED,
    RideStatus.DISPUTED,
    RideStatus.FLAGGED,
)
TERMINAL_STATUSES = (RideStatus.COMPLETED, RideStatus.CANCELLED)


class Ride(models.Model):
    """Aggregate root: one transportation request and its full lifecycle."""

    service_type = models.CharField(max_length=20, choices=ServiceType.choices, default=ServiceType.TAXI)
    status = models.CharField(max_length=20, choices=RideStatus.choices, default=RideStatus.PENDING)

    passenger = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='rides',
    )
    driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assigned_rides',
    )

    # Pickup / dropoff (unused for errands, which own their tasks)
    pickup_address = models.TextField(blank=True, default='')
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_address = models.TextField(blank=True, default='')
    dropoff_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)

    # Service-specific pricing inputs
    is_round_trip = models.BooleanField(default=False)
    vehicle_type = models.CharField(max_length=20, blank=True, default='')
    package_size = models.CharField(max_length=20, blank=True, default='')
    number_of_trips = models.PositiveIntegerField(default=1)
    distance_km = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    duration_minutes = models.PositiveIntegerField(null=True, blank=True)

    # Recurring series
    is_series = models.BooleanField(default=False)
    scheduled_dates = models.JSONField(default=list, blank=True)

    # Money (per occurrence)
    estimated_cost = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal('0.00'))
    final_cost = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    # Errand progress
    tasks_done = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    assigned_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    archived_at = models.DateTimeField(null=True, blank=True)

    cancellation_reason = models.TextField(blank=True, default='')
    dispute_reason = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'rides'
        ordering = ['-created_at']
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(status__in=OFFER_ACCEPTING_STATUSES, driver__isnull=True)
                    | Q(status__in=DRIVER_ASSIGNED_STATUSES, driver__isnull=False)
                    | Q(status=RideStatus.CANCELLED)
                ),
                name='ride_driver_matches_status',
            ),
            models.CheckConstraint(
                condition=Q(estimated_cost__gte=0),
                name='ride_estimated_cost_non_negative',
            ),
            models.CheckConstraint(
                condition=Q(final_cost__isnull=True) | Q(final_cost__gte=0),
                name='ride_final_cost_non_negative',
            ),
        ]

    @property
    def is_errand(self) -> bool:
        return self.service_type == ServiceType.ERRANDS

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def occurrences(self) -> int:
        if self.is_series and self.scheduled_dates:
            return len(self.scheduled_dates)
        return 1

    def __str__(self):
        return f"Ride #{self.id} - {self.service_type} - {self.status}"


class ErrandTask(models.Model):
    """One stop of an errands ride, addressed by its own id and ordered within the ride."""

    ride = models.ForeignKey(Ride, on_delete=models.CASCADE, related_name='tasks')
    order = models.PositiveIntegerField()

    title = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')

    pickup_address = models.TextField()
    pickup_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    pickup_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_address = models.TextField()
    dropoff_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    dropoff_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)

    state = models.CharField(max_length=20, choices=TaskState.choices, default=TaskState.PENDING)

    cost = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    duration_minutes = models.PositiveIntegerField(null=True, blank=True)
    distance_km = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'errand_tasks'
        ordering = ['ride', 'order']
        constraints = [
            models.UniqueConstraint(fields=['ride', 'order'], name='unique_task_order_per_ride'),
        ]

    def __str__(self):
        return f"Task {self.order} of ride {self.ride_id} - {self.state}"


class TaskHistoryEntry(models.Model):
    """Append-only audit log of task transitions."""

    task = models.ForeignKey(ErrandTask, on_delete=models.CASCADE, related_name='history')
    from_state = models.CharField(max_length=20, choices=TaskState.choices)
    action = models.CharField(max_length=20, choices=TaskState.choices)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='+',
    )
    actor_type = models.CharField(max_length=20, blank=True, default='')
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'errand_task_history'
        ordering = ['id']

    def __str__(self):
        return f"{self.task_id}: {self.from_state} -> {self.action}"


class Bid(models.Model):
    """A driver's proposed price for a ride that is still waiting for a driver."""

    ride = models.ForeignKey(Ride, on_delete=models.CASCADE, related_name='bids')
    driver = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='bids',
    )
    amount = models.DecimalField(max_digits=7, decimal_places=2)
    status = models.CharField(max_length=20, choices=BidStatus.choices, default=BidStatus.PENDING)
    reason = models.TextField(blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    responded_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'bids'
        ordering = ['amount', 'created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['ride'],
                condition=Q(status=BidStatus.ACCEPTED),
                name='one_accepted_bid_per_ride',
            ),
            models.UniqueConstraint(
                fields=['ride', 'driver'],
                condition=Q(status=BidStatus.PENDING),
                name='one_pending_bid_per_driver',
            ),
            models.CheckConstraint(
                condition=Q(amount__gte=Decimal('1.00'), amount__lte=Decimal('9999.99')),
                name='bid_amount_in_range',
            ),
        ]

    def __str__(self):
        return f"Bid #{self.id} - Ride {self.ride_id} -> Driver {self.driver_id} ({self.status})"


class CostAuditRecord(models.Model):
    """Reconciliation defects found for a ride, kept for operator review."""

    ride = models.ForeignKey(Ride, on_delete=models.CASCADE, related_name='cost_audits')
    expected_total = models.DecimalField(max_digits=10, decimal_places=2)
    actual_total = models.DecimalField(max_digits=10, decimal_places=2)
    defects = models.JSONField(default=list)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'cost_audit_records'
        ordering = ['-created_at']

    def __str__(self):
        return f"Cost audit for ride {self.ride_id} ({len(self.defects)} defect(s))"


class PricingConfiguration(models.Model):
    """
    Pricing values served to the fare table.

    A row with an empty service_type is the global configuration; a row for a
    specific service type overrides it for that service.
    """

    service_type = models.CharField(max_length=20, choices=ServiceType.choices, blank=True, default='')
    min_fare = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    min_distance_km = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    price_per_km = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    vehicle_prices = models.JSONField(default=dict, blank=True)
    size_multipliers = models.JSONField(default=dict, blank=True)
    pricing_rules = models.JSONField(default=dict, blank=True)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'pricing_configurations'
        ordering = ['-updated_at']

    def __str__(self):
        return f"Pricing ({self.service_type or 'global'})"
