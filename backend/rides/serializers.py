from rest_framework import serializers

from drivers.serializers import DriverBasicSerializer
from realtime.events import BIDS, ERRAND_TASKS, RIDES
from services.ride_management import describe_task_state, ride_progress
from .models import Bid, ErrandTask, Ride, ServiceType, TaskHistoryEntry


# ==================== Change event snapshots ====================

class RideSnapshotSerializer(serializers.ModelSerializer):
    """Flat ride state carried by change events."""
    passenger_id = serializers.IntegerField(read_only=True)
    driver_id = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = Ride
        fields = ['id', 'service_type', 'status', 'passenger_id', 'driver_id',
                  'pickup_address', 'dropoff_address', 'estimated_cost', 'final_cost',
                  'is_series', 'scheduled_dates', 'tasks_done', 'created_at', 'updated_at',
                  'assigned_at', 'started_at', 'completed_at', 'cancelled_at']
        read_only_fields = fields


class BidSnapshotSerializer(serializers.ModelSerializer):
    ride_id = serializers.IntegerField(read_only=True)
    driver_id = serializers.IntegerField(read_only=True)
    # Bids have no updated_at column; the last response time orders their versions
    updated_at = serializers.SerializerMethodField()

    class Meta:
        model = Bid
        fields = ['id', 'ride_id', 'driver_id', 'amount', 'status', 'reason',
                  'created_at', 'responded_at', 'updated_at']
        read_only_fields = fields

    def get_updated_at(self, obj):
        stamp = obj.responded_at or obj.created_at
        return serializers.DateTimeField().to_representation(stamp) if stamp else None


class ErrandTaskSerializer(serializers.ModelSerializer):
    ride_id = serializers.IntegerField(read_only=True)
    state_label = serializers.SerializerMethodField()

    class Meta:
        model = ErrandTask
        fields = ['id', 'ride_id', 'order', 'title', 'description',
                  'pickup_address', 'pickup_latitude', 'pickup_longitude',
                  'dropoff_address', 'dropoff_latitude', 'dropoff_longitude',
                  'state', 'state_label', 'cost', 'duration_minutes', 'distance_km',
                  'created_at', 'updated_at']
        read_only_fields = fields

    def get_state_label(self, obj):
        return describe_task_state(obj.state)


SNAPSHOT_SERIALIZERS = {
    RIDES: RideSnapshotSerializer,
    BIDS: BidSnapshotSerializer,
    ERRAND_TASKS: ErrandTaskSerializer,
}


# ==================== API output ====================

class TaskHistoryEntrySerializer(serializers.ModelSerializer):
    actor_id = serializers.IntegerField(read_only=True, allow_null=True)

    class Meta:
        model = TaskHistoryEntry
        fields = ['id', 'from_state', 'action', 'actor_id', 'actor_type', 'timestamp']
        read_only_fields = fields


class ErrandTaskDetailSerializer(ErrandTaskSerializer):
    history = TaskHistoryEntrySerializer(many=True, read_only=True)

    class Meta(ErrandTaskSerializer.Meta):
        fields = ErrandTaskSerializer.Meta.fields + ['history']
        read_only_fields = fields


class BidSerializer(serializers.ModelSerializer):
    """Bid with the bidding driver's public details (shown to the passenger)"""
    ride_id = serializers.IntegerField(read_only=True)
    driver_id = serializers.IntegerField(read_only=True)
    driver = DriverBasicSerializer(read_only=True, source='driver.driver_profile')

    class Meta:
        model = Bid
        fields = ['id', 'ride_id', 'driver_id', 'driver', 'amount', 'status',
                  'reason', 'created_at', 'responded_at']
        read_only_fields = fields


class RideSerializer(serializers.ModelSerializer):
    """Ride detail with driver, tasks and progress"""
    passenger_id = serializers.IntegerField(read_only=True)
    driver_id = serializers.IntegerField(read_only=True, allow_null=True)
    driver = DriverBasicSerializer(read_only=True, source='driver.driver_profile', allow_null=True)
    tasks = ErrandTaskDetailSerializer(many=True, read_only=True)
    progress = serializers.SerializerMethodField()
    occurrences = serializers.IntegerField(read_only=True)
    total_fare = serializers.SerializerMethodField()

    class Meta:
        model = Ride
        fields = ['id', 'service_type', 'status', 'passenger_id', 'driver_id', 'driver',
                  'pickup_address', 'pickup_latitude', 'pickup_longitude',
                  'dropoff_address', 'dropoff_latitude', 'dropoff_longitude',
                  'is_round_trip', 'vehicle_type', 'package_size', 'number_of_trips',
                  'distance_km', 'duration_minutes', 'is_series', 'scheduled_dates',
                  'occurrences', 'estimated_cost', 'final_cost', 'total_fare',
                  'tasks_done', 'tasks', 'progress',
                  'created_at', 'updated_at', 'assigned_at', 'started_at',
                  'completed_at', 'cancelled_at', 'archived_at',
                  'cancellation_reason', 'dispute_reason']
        read_only_fields = fields

    def get_progress(self, obj):
        return ride_progress(obj)

    def get_total_fare(self, obj):
        per_occurrence = obj.final_cost if obj.final_cost is not None else obj.estimated_cost
        return str(per_occurrence * obj.occurrences)


# ==================== API input ====================

class TaskInputSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=200, required=False, allow_blank=True)
    description = serializers.CharField(required=False, allow_blank=True)
    pickup_address = serializers.CharField()
    pickup_latitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    pickup_longitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    dropoff_address = serializers.CharField()
    dropoff_latitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    dropoff_longitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    distance_km = serializers.DecimalField(max_digits=8, decimal_places=2, min_value=0, required=False, allow_null=True)
    duration_minutes = serializers.IntegerField(min_value=0, required=False, allow_null=True)


class RideCreateSerializer(serializers.Serializer):
    """Serializer for booking a ride; location rules are checked by create_ride"""
    service_type = serializers.ChoiceField(choices=ServiceType.choices)
    pickup_address = serializers.CharField(required=False, allow_blank=True, default='')
    pickup_latitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    pickup_longitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    dropoff_address = serializers.CharField(required=False, allow_blank=True, default='')
    dropoff_latitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    dropoff_longitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    tasks = TaskInputSerializer(many=True, required=False)
    is_round_trip = serializers.BooleanField(default=False)
    vehicle_type = serializers.CharField(required=False, allow_blank=True, default='')
    package_size = serializers.CharField(required=False, allow_blank=True, default='')
    number_of_trips = serializers.IntegerField(min_value=1, default=1)
    distance_km = serializers.DecimalField(max_digits=8, decimal_places=2, min_value=0, required=False, allow_null=True)
    is_series = serializers.BooleanField(default=False)
    scheduled_dates = serializers.ListField(child=serializers.DateField(), required=False, default=list)
    estimated_cost = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False, allow_null=True)

    def validate_scheduled_dates(self, value):
        return [day.isoformat() for day in value]


class BidCreateSerializer(serializers.Serializer):
    # Parsed by validate_bid_amount so users get the bid-specific messages
    amount = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class ReasonSerializer(serializers.Serializer):
    """Serializer for cancellation, dispute and decline reasons"""
    reason = serializers.CharField(required=False, allow_blank=True, default='')


class CompleteRideSerializer(serializers.Serializer):
    final_cost = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0, required=False, allow_null=True)


class TaskAdvanceSerializer(serializers.Serializer):
    expected_from_state = serializers.CharField(allow_blank=True)
    to_state = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class FareRequestSerializer(serializers.Serializer):
    service_type = serializers.CharField()
    params = serializers.DictField(required=False, default=dict)
    commission_rate = serializers.DecimalField(max_digits=4, decimal_places=3, min_value=0, max_value=1, required=False)


class DistributeRequestSerializer(serializers.Serializer):
    total = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    count = serializers.IntegerField(min_value=1, max_value=1000)
