"""Realtime consumers for WebSocket communication."""

from .base import BaseConsumer
from .change_feed_consumer import ChangeFeedConsumer

__all__ = [
    "BaseConsumer",
    "ChangeFeedConsumer",
]
