import django.db.models.deletion
from decimal import Decimal

from django.conf import settings
from django.db import migrations, models


SERVICE_TYPE_CHOICES = [
    ("taxi", "Taxi"),
    ("courier", "Courier"),
    ("school_run", "School Run"),
    ("errands", "Errands"),
    ("bulk", "Bulk Trips"),
]

TASK_STATE_CHOICES = [
    ("pending", "Pending"),
    ("activated", "Activated"),
    ("driver_on_way", "Driver On The Way"),
    ("driver_arrived", "Driver Arrived"),
    ("started", "Started"),
    ("completed", "Completed"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Ride",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("service_type", models.CharField(choices=SERVICE_TYPE_CHOICES, default="taxi", max_length=20)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("offered", "Offered"),
                            ("assigned", "Assigned"),
                            ("in_progress", "In Progress"),
                            ("completed", "Completed"),
                            ("cancelled", "Cancelled"),
                            ("disputed", "Disputed"),
                            ("flagged", "Flagged"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("pickup_address", models.TextField(blank=True, default="")),
                ("pickup_latitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("pickup_longitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("dropoff_address", models.TextField(blank=True, default="")),
                ("dropoff_latitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("dropoff_longitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("is_round_trip", models.BooleanField(default=False)),
                ("vehicle_type", models.CharField(blank=True, default="", max_length=20)),
                ("package_size", models.CharField(blank=True, default="", max_length=20)),
                ("number_of_trips", models.PositiveIntegerField(default=1)),
                ("distance_km", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("duration_minutes", models.PositiveIntegerField(blank=True, null=True)),
                ("is_series", models.BooleanField(default=False)),
                ("scheduled_dates", models.JSONField(blank=True, default=list)),
                ("estimated_cost", models.DecimalField(decimal_places=2, default=Decimal("0.00"), max_digits=10)),
                ("final_cost", models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ("tasks_done", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("assigned_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("archived_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, default="")),
                ("dispute_reason", models.TextField(blank=True, default="")),
                (
                    "driver",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="assigned_rides",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "passenger",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="rides",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "rides",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(("driver__isnull", True), ("status__in", ("pending", "offered")))
                            | models.Q(
                                ("driver__isnull", False),
                                ("status__in", ("assigned", "in_progress", "completed", "disputed", "flagged")),
                            )
                            | models.Q(("status", "cancelled"))
                        ),
                        name="ride_driver_matches_status",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("estimated_cost__gte", 0)),
                        name="ride_estimated_cost_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("final_cost__isnull", True)) | models.Q(("final_cost__gte", 0)),
                        name="ride_final_cost_non_negative",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ErrandTask",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("order", models.PositiveIntegerField()),
                ("title", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True, default="")),
                ("pickup_address", models.TextField()),
                ("pickup_latitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("pickup_longitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("dropoff_address", models.TextField()),
                ("dropoff_latitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("dropoff_longitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("state", models.CharField(choices=TASK_STATE_CHOICES, default="pending", max_length=20)),
                ("cost", models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ("duration_minutes", models.PositiveIntegerField(blank=True, null=True)),
                ("distance_km", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "ride",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tasks",
                        to="rides.ride",
                    ),
                ),
            ],
            options={
                "db_table": "errand_tasks",
                "ordering": ["ride", "order"],
                "constraints": [
                    models.UniqueConstraint(fields=("ride", "order"), name="unique_task_order_per_ride"),
                ],
            },
        ),
        migrations.CreateModel(
            name="TaskHistoryEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("from_state", models.CharField(choices=TASK_STATE_CHOICES, max_length=20)),
                ("action", models.CharField(choices=TASK_STATE_CHOICES, max_length=20)),
                ("actor_type", models.CharField(blank=True, default="", max_length=20)),
                ("timestamp", models.DateTimeField(auto_now_add=True)),
                (
                    "actor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "task",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="history",
                        to="rides.errandtask",
                    ),
                ),
            ],
            options={
                "db_table": "errand_task_history",
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="Bid",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount", models.DecimalField(decimal_places=2, max_digits=7)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("accepted", "Accepted"),
                            ("rejected", "Rejected"),
                            ("withdrawn", "Withdrawn"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("reason", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("responded_at", models.DateTimeField(blank=True, null=True)),
                (
                    "driver",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="bids",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "ride",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="bids",
                        to="rides.ride",
                    ),
                ),
            ],
            options={
                "db_table": "bids",
                "ordering": ["amount", "created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "accepted")),
                        fields=("ride",),
                        name="one_accepted_bid_per_ride",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("status", "pending")),
                        fields=("ride", "driver"),
                        name="one_pending_bid_per_driver",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount__gte", Decimal("1.00")), ("amount__lte", Decimal("9999.99"))),
                        name="bid_amount_in_range",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CostAuditRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("expected_total", models.DecimalField(decimal_places=2, max_digits=10)),
                ("actual_total", models.DecimalField(decimal_places=2, max_digits=10)),
                ("defects", models.JSONField(default=list)),
                ("resolved", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "ride",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="cost_audits",
                        to="rides.ride",
                    ),
                ),
            ],
            options={
                "db_table": "cost_audit_records",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="PricingConfiguration",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("service_type", models.CharField(blank=True, choices=SERVICE_TYPE_CHOICES, default="", max_length=20)),
                ("min_fare", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("min_distance_km", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ("price_per_km", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("vehicle_prices", models.JSONField(blank=True, default=dict)),
                ("size_multipliers", models.JSONField(blank=True, default=dict)),
                ("pricing_rules", models.JSONField(blank=True, default=dict)),
                ("is_active", models.BooleanField(default=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "pricing_configurations",
                "ordering": ["-updated_at"],
            },
        ),
    ]
