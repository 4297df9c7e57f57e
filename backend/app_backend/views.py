import os
import redis
from django.utils import timezone
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework import status
from channels.layers import get_channel_layer

from rides.models import Ride
from rides.tasks import audit_ride_costs_task


@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    """Health check endpoint for monitoring system status"""

    health_status = {
        "status": "healthy",
        "timestamp": timezone.now().isoformat(),
        "services": {}
    }

    def mark(service, error=None):
        if error is None:
            health_status["services"][service] = "healthy"
            return
        health_status["services"][service] = f"unhealthy: {error}"
        health_status["status"] = "unhealthy"

    # Database check
    try:
        Ride.objects.exists()
        mark("database")
    except Exception as e:
        mark("database", e)

    # Redis check
    try:
        redis_client = redis.Redis(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", 6379)),
            db=0,
            socket_timeout=3
        )
        redis_client.ping()
        mark("redis")
    except Exception as e:
        mark("redis", e)

    # Channel layer check
    try:
        if get_channel_layer() is not None:
            mark("channels")
        else:
            mark("channels", "no channel layer")
    except Exception as e:
        mark("channels", e)

    # Celery check (audit task registered)
    if audit_ride_costs_task.name in audit_ride_costs_task.app.tasks:
        mark("celery")
    else:
        mark("celery", "task not registered")

    status_code = (
        status.HTTP_200_OK
        if health_status["status"] == "healthy"
        else status.HTTP_503_SERVICE_UNAVAILABLE
    )

    return Response(health_status, status=status_code)
