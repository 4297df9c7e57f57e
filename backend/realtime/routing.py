"""WebSocket URL routing for the realtime app."""

from django.urls import re_path

from .consumers.change_feed_consumer import ChangeFeedConsumer

websocket_urlpatterns = [
    # Change feed for drivers, passengers and operator dashboards
    # URL: ws://localhost:8000/ws/changes/?token=<jwt>
    re_path(
        r"ws/changes/$",
        ChangeFeedConsumer.as_asgi(),
        name="changes-ws"
    ),
]
