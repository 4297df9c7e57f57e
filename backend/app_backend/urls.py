from django.contrib import admin
from django.urls import path, include

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Ride dispatch API (rides, bids, errand tasks, pricing)
    path('api/', include('rides.urls')),
]
