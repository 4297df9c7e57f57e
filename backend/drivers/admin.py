from django.contrib import admin
from drivers.models import DriverProfile


@admin.register(DriverProfile)
class DriverProfileAdmin(admin.ModelAdmin):
    """Admin panel for managing Driver Profiles"""

    list_display = [
        "user",
        "vehicle_number",
        "vehicle_type",
        "status",
        "approval_status",
    ]

    list_filter = [
        "status",
        "approval_status",
        "vehicle_type",
    ]

    search_fields = [
        "user__username",
        "vehicle_number",
    ]

    ordering = ("user__username",)
