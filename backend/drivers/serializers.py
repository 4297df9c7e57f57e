from rest_framework import serializers
from drivers.models import DriverProfile


class DriverBasicSerializer(serializers.ModelSerializer):
    """
    Lite version of driver info for ride details
    (sent to passengers alongside bids and assigned rides).
    """
    user_id = serializers.IntegerField(read_only=True)
    username = serializers.CharField(source="user.username", read_only=True)
    phone_number = serializers.CharField(source="user.phone_number", read_only=True)

    class Meta:
        model = DriverProfile
        fields = [
            "id",
            "user_id",
            "username",
            "phone_number",
            "vehicle_number",
            "vehicle_type",
        ]
