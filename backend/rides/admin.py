"""Tells what to show in the Django admin interface for rides app"""

from django.contrib import admin

from services.pricing import invalidate_pricing_cache
from .models import Bid, CostAuditRecord, ErrandTask, PricingConfiguration, Ride, TaskHistoryEntry


class ErrandTaskInline(admin.TabularInline):
    model = ErrandTask
    extra = 0
    fields = ('order', 'title', 'state', 'cost', 'pickup_address', 'dropoff_address')
    readonly_fields = ('state',)


class BidInline(admin.TabularInline):
    model = Bid
    extra = 0
    fields = ('driver', 'amount', 'status', 'created_at', 'responded_at')
    readonly_fields = ('created_at', 'responded_at')


@admin.register(Ride)
class RideAdmin(admin.ModelAdmin):
    """Ride admin"""
    list_display = ['id', 'service_type', 'status', 'passenger', 'driver', 'estimated_cost', 'final_cost', 'created_at']
    list_filter = ['status', 'service_type', 'is_series', 'created_at']
    search_fields = ['passenger__username', 'driver__username', 'pickup_address', 'dropoff_address']
    readonly_fields = ['created_at', 'updated_at', 'assigned_at', 'started_at', 'completed_at', 'cancelled_at', 'archived_at']
    date_hierarchy = 'created_at'
    inlines = [ErrandTaskInline, BidInline]


@admin.register(Bid)
class BidAdmin(admin.ModelAdmin):
    list_display = ("id", "ride", "driver", "amount", "status", "created_at", "responded_at")
    list_filter = ("status",)
    search_fields = ("ride__id", "driver__username")


@admin.register(TaskHistoryEntry)
class TaskHistoryEntryAdmin(admin.ModelAdmin):
    list_display = ("task", "from_state", "action", "actor", "actor_type", "timestamp")
    list_filter = ("action", "actor_type")

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CostAuditRecord)
class CostAuditRecordAdmin(admin.ModelAdmin):
    list_display = ("ride", "expected_total", "actual_total", "resolved", "created_at")
    list_filter = ("resolved",)
    readonly_fields = ("ride", "expected_total", "actual_total", "defects", "created_at")


@admin.register(PricingConfiguration)
class PricingConfigurationAdmin(admin.ModelAdmin):
    list_display = ("__str__", "min_fare", "min_distance_km", "price_per_km", "is_active", "updated_at")
    list_filter = ("is_active", "service_type")

    def save_model(self, request, obj, form, change):
        super().save_model(request, obj, form, change)
        invalidate_pricing_cache(obj.service_type or None)

    def delete_model(self, request, obj):
        service_type = obj.service_type or None
        super().delete_model(request, obj)
        invalidate_pricing_cache(service_type)
