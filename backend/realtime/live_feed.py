"""
Client side of the change feed.

ChannelLayerTransport subscribes to change groups straight on the Channels
layer (workers, dashboards, tests). LiveFeed wraps a transport into one
scoped subscription set: entering the context subscribes every filter,
leaving it tears everything down, and a broken or silent channel is
replaced by a complete resync of all filters.

Usage:
    async with LiveFeed(ChannelLayerTransport(), filters, on_event) as feed:
        ...
        feed.status  # connecting, connected, reconnecting, error, closed
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from channels.layers import get_channel_layer
from django.conf import settings

from services.exceptions import TransportError
from .events import MESSAGE_TYPE, ChangeEvent, merge_snapshot
from .filters import SubscriptionFilter

logger = logging.getLogger(__name__)

PROBE_MESSAGE_TYPE = "liveness.probe"


class ChannelStatus:
    """Status reported by the transport for one subscription channel."""
    SUBSCRIBED = "SUBSCRIBED"
    ALIVE = "ALIVE"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CLOSED = "CLOSED"


class FeedStatus:
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    CLOSED = "closed"


async def _call(callback, *args):
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
    return result


@dataclass
class Subscription:
    channel_name: str
    filter: SubscriptionFilter
    _close: Callable[[], Awaitable[None]] = field(repr=False)

    async def unsubscribe(self):
        await self._close()


class ChannelLayerTransport:
    """
    Change transport on a Channels layer.

    Each subscription gets its own channel, joined to the filter's group,
    and a reader task that hands matching events to the callback.
    """

    def __init__(self, channel_layer=None):
        self.channel_layer = channel_layer or get_channel_layer()
        if self.channel_layer is None:
            raise TransportError("No channel layer configured")
        self._status_callbacks: Dict[str, List[Callable]] = {}

    async def subscribe(self, table: str, event_kind: Optional[str], filter_expr: Optional[str], on_event) -> Subscription:
        subscription_filter = SubscriptionFilter.parse(table, event_kind, filter_expr)
        try:
            channel_name = await self.channel_layer.new_channel("livefeed")
            await self.channel_layer.group_add(subscription_filter.group_name, channel_name)
        except Exception as exc:
            raise TransportError(f"Could not subscribe to {subscription_filter.group_name}") from exc

        reader = asyncio.ensure_future(self._read(channel_name, subscription_filter, on_event))

        async def close():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            try:
                await self.channel_layer.group_discard(subscription_filter.group_name, channel_name)
            except Exception:
                logger.warning("Could not leave %s", subscription_filter.group_name, exc_info=True)
            self._notify(channel_name, ChannelStatus.CLOSED)
            self._status_callbacks.pop(channel_name, None)

        logger.debug("Subscribed %s to %s", channel_name, subscription_filter.group_name)
        return Subscription(channel_name=channel_name, filter=subscription_filter, _close=close)

    def subscribe_channel_status(self, channel_name: str, on_status: Callable) -> Callable[[], None]:
        """Register on_status(status, error) for a channel; returns the deregistration callable."""
        callbacks = self._status_callbacks.setdefault(channel_name, [])
        callbacks.append(on_status)

        def remove():
            if on_status in callbacks:
                callbacks.remove(on_status)
        return remove

    async def probe(self, channel_name: str):
        """Send a liveness probe through the channel; a working reader answers with ALIVE."""
        try:
            await self.channel_layer.send(channel_name, {"type": PROBE_MESSAGE_TYPE})
        except Exception as exc:
            raise TransportError(f"Probe failed for {channel_name}") from exc

    def _notify(self, channel_name: str, status: str, error: Optional[BaseException] = None):
        for callback in list(self._status_callbacks.get(channel_name, ())):
            try:
                callback(status, error)
            except Exception:
                logger.exception("Channel status callback failed for %s", channel_name)

    async def _read(self, channel_name: str, subscription_filter: SubscriptionFilter, on_event):
        self._notify(channel_name, ChannelStatus.SUBSCRIBED)
        while True:
            try:
                message = await self.channel_layer.receive(channel_name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Channel %s failed: %s", channel_name, exc)
                self._notify(channel_name, ChannelStatus.CHANNEL_ERROR, exc)
                return

            msg_type = message.get("type")
            if msg_type == PROBE_MESSAGE_TYPE:
                self._notify(channel_name, ChannelStatus.ALIVE)
            elif msg_type == MESSAGE_TYPE:
                event = ChangeEvent.from_message(message["event"])
                if subscription_filter.matches(event):
                    try:
                        await _call(on_event, event)
                    except Exception:
                        logger.exception("Event handler failed for %s", event.key)


class LiveFeed:
    """
    A scoped set of change subscriptions with reconnect and liveness checks.

    Connectivity problems never reach the event handler; they show up as
    status changes (on_status) and are repaired by reconnect(), which
    replaces the whole subscription set or nothing.
    """

    def __init__(
        self,
        transport,
        filters,
        on_event: Callable,
        on_status: Optional[Callable] = None,
        liveness_interval: Optional[float] = None,
        probe_timeout: float = 5.0,
        max_retries: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
    ):
        self.transport = transport
        self.filters = [f if isinstance(f, SubscriptionFilter) else SubscriptionFilter.from_dict(f) for f in filters]
        self.on_event = on_event
        self.on_status = on_status
        if liveness_interval is None:
            liveness_interval = settings.LIVE_FEED_LIVENESS_INTERVAL
        self.liveness_interval = liveness_interval
        self.probe_timeout = probe_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.status = FeedStatus.CLOSED
        self.snapshots: Dict[Any, Dict[str, Any]] = {}
        self.reconnect_count = 0
        self._subscriptions: List[Subscription] = []
        self._status_removers: List[Callable[[], None]] = []
        self._seen_events = deque(maxlen=512)
        self._lock = asyncio.Lock()
        self._liveness_task: Optional[asyncio.Task] = None
        self._reconnect_tasks: set = set()
        self._pending_probes: set = set()
        self._probes_answered: Optional[asyncio.Event] = None
        self._closed = False

    # ---------------------- Lifecycle ----------------------

    async def __aenter__(self):
        await self.connect()
        if self.liveness_interval:
            self._liveness_task = asyncio.ensure_future(self._liveness_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def connect(self) -> bool:
        self._closed = False
        self._set_status(FeedStatus.CONNECTING)
        try:
            async with self._lock:
                self._install(await self._subscribe_all())
        except TransportError as exc:
            logger.warning("Live feed connect failed: %s", exc)
            return await self.reconnect("initial connect failed")
        self._set_status(FeedStatus.CONNECTED)
        return True

    async def close(self):
        self._closed = True
        if self._liveness_task is not None:
            self._liveness_task.cancel()
            await asyncio.gather(self._liveness_task, return_exceptions=True)
            self._liveness_task = None
        if self._reconnect_tasks:
            pending = list(self._reconnect_tasks)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        async with self._lock:
            await self._teardown(self._subscriptions, self._status_removers)
            self._subscriptions, self._status_removers = [], []
        self._set_status(FeedStatus.CLOSED)

    @property
    def channel_names(self) -> List[str]:
        return [subscription.channel_name for subscription in self._subscriptions]

    # ---------------------- Reconnect ----------------------

    async def reconnect(self, reason: str = "") -> bool:
        """
        Re-establish every filter as one unit, retrying with exponential backoff.

        The new set replaces the old one only when all of its filters are
        subscribed; a partially built set is torn down again.
        """
        if self._closed:
            return False
        if self._lock.locked():
            logger.debug("Reconnect already in progress (%s)", reason)
            return False

        async with self._lock:
            logger.info("Live feed reconnecting: %s", reason or "requested")
            self._set_status(FeedStatus.RECONNECTING)
            delay = self.backoff_base
            for attempt in range(1, self.max_retries + 1):
                try:
                    subscriptions = await self._subscribe_all()
                except TransportError as exc:
                    logger.warning("Reconnect attempt %d/%d failed: %s", attempt, self.max_retries, exc)
                    if attempt < self.max_retries:
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, self.backoff_max)
                    continue

                old, old_removers = self._subscriptions, self._status_removers
                self._install(subscriptions)
                await self._teardown(old, old_removers)
                self.reconnect_count += 1
                self._set_status(FeedStatus.CONNECTED)
                return True

            await self._teardown(self._subscriptions, self._status_removers)
            self._subscriptions, self._status_removers = [], []
            self._set_status(FeedStatus.ERROR)
            return False

    async def _subscribe_all(self):
        subscriptions = []
        try:
            for subscription_filter in self.filters:
                subscriptions.append(await self.transport.subscribe(
                    subscription_filter.table,
                    subscription_filter.event,
                    subscription_filter.expression,
                    self._handle_event,
                ))
        except Exception as exc:
            await self._teardown(subscriptions, [])
            if isinstance(exc, TransportError):
                raise
            raise TransportError(str(exc)) from exc
        return subscriptions

    def _install(self, subscriptions: List[Subscription]):
        self._subscriptions = subscriptions
        self._status_removers = [
            self.transport.subscribe_channel_status(subscription.channel_name, self._channel_status_callback(subscription.channel_name))
            for subscription in subscriptions
        ]

    async def _teardown(self, subscriptions, removers):
        for remove in removers:
            remove()
        for subscription in subscriptions:
            try:
                await subscription.unsubscribe()
            except Exception:
                logger.warning("Unsubscribe failed for %s", subscription.channel_name, exc_info=True)

    def _channel_status_callback(self, channel_name: str):
        def on_channel_status(status, error=None):
            if channel_name not in self.channel_names:
                return
            if status == ChannelStatus.ALIVE:
                self._pending_probes.discard(channel_name)
                if not self._pending_probes and self._probes_answered is not None:
                    self._probes_answered.set()
            elif status == ChannelStatus.CHANNEL_ERROR:
                logger.warning("Channel %s reported an error: %s", channel_name, error)
                task = asyncio.ensure_future(self.reconnect(f"channel error on {channel_name}"))
                self._reconnect_tasks.add(task)
                task.add_done_callback(self._reconnect_tasks.discard)
        return on_channel_status

    # ---------------------- Liveness ----------------------

    async def _liveness_loop(self):
        while not self._closed:
            await asyncio.sleep(self.liveness_interval)
            try:
                await self.check_liveness()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Liveness check failed")

    async def check_liveness(self) -> bool:
        """
        Probe every channel; reconnect when any of them stays silent.

        Returns True when the feed is healthy afterwards.
        """
        if self._closed or self._lock.locked():
            return self.status == FeedStatus.CONNECTED
        if not self._subscriptions:
            return await self.reconnect("no live channels")

        self._pending_probes = set(self.channel_names)
        self._probes_answered = asyncio.Event()
        try:
            for channel_name in list(self._pending_probes):
                await self.transport.probe(channel_name)
            await asyncio.wait_for(self._probes_answered.wait(), self.probe_timeout)
        except TransportError as exc:
            return await self.reconnect(f"probe failed: {exc}")
        except asyncio.TimeoutError:
            silent = sorted(self._pending_probes)
            return await self.reconnect(f"silent channels: {', '.join(silent)}")
        finally:
            self._probes_answered = None
        return True

    async def on_visibility_change(self, visible: bool) -> Optional[bool]:
        """Coming back to the foreground triggers an immediate liveness check."""
        if not visible or self._closed:
            return None
        return await self.check_liveness()

    # ---------------------- Events ----------------------

    async def _handle_event(self, event: ChangeEvent):
        if event.event_id in self._seen_events:
            return
        self._seen_events.append(event.event_id)

        merged = merge_snapshot(self.snapshots.get(event.key), event)
        if merged is None:
            self.snapshots.pop(event.key, None)
        else:
            self.snapshots[event.key] = merged
        try:
            await _call(self.on_event, event, merged)
        except Exception:
            logger.exception("Live feed handler failed for %s", event.key)

    def _set_status(self, status: str):
        if status == self.status:
            return
        self.status = status
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception:
            logger.exception("Live feed status callback failed")
