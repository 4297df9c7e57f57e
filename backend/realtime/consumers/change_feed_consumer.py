"""Change feed WebSocket consumer: filtered, resyncable subscriptions to ride/bid/task changes."""

import logging
from collections import deque
from typing import Any, Dict, List

from channels.db import database_sync_to_async
from django.conf import settings
from django.utils import timezone

from realtime.events import BIDS, ERRAND_TASKS, RIDES, ChangeEvent
from realtime.filters import FILTERABLE_FIELDS, SubscriptionFilter
from services.exceptions import PermissionDenied, ValidationError
from .base import BaseConsumer

logger = logging.getLogger(__name__)

# Events reach a connection once per matching group; remember recent ids to drop repeats
SEEN_EVENT_LIMIT = 512
MAX_SUBSCRIPTIONS = 50

OPEN_RIDE_STATUSES = ("pending", "offered")


class ChangeFeedConsumer(BaseConsumer):
    """
    WebSocket consumer for the change feed.

    Client messages:
        - subscribe {filters: [{table, event, filter}]}
        - unsubscribe {subscription_ids: [...]} or {all: true}
        - resync {filters: [...]}: replace the whole filter set at once
        - ping: liveness check, answered with pong

    Server messages:
        - change {subscription_ids, event}
        - subscribed / unsubscribed / resynced / pong / error
    """

    async def on_connect(self):
        self.subscriptions: Dict[str, SubscriptionFilter] = {}
        self._subscription_seq = 0
        self._seen_events = deque(maxlen=SEEN_EVENT_LIMIT)

        await self.send_json({
            "type": "connection_established",
            "user_id": self.user_id,
            "role": self.role,
            "tables": {table: list(fields) for table, fields in FILTERABLE_FIELDS.items()},
            "liveness_interval": settings.LIVE_FEED_LIVENESS_INTERVAL,
        })

    async def handle_message(self, msg_type: str, data: Dict[str, Any]):
        """Handle change feed messages."""
        if msg_type == "subscribe":
            await self._handle_subscribe(data)
        elif msg_type == "unsubscribe":
            await self._handle_unsubscribe(data)
        elif msg_type == "resync":
            await self._handle_resync(data)
        elif msg_type == "ping":
            await self.send_success(
                "pong",
                timestamp=timezone.now().isoformat(),
                subscriptions=len(self.subscriptions),
                request_id=data.get("request_id"),
            )
        else:
            await self.send_error(f"Unknown message type: {msg_type}", code="validation_error")

    # ---------------------- Message Handlers ----------------------

    async def _handle_subscribe(self, data: Dict[str, Any]):
        requested = data["filters"] if "filters" in data else [data]
        filters = await self._parse_and_authorize(requested)

        added = []
        for subscription_filter in filters:
            existing = self._find(subscription_filter)
            if existing is None:
                if len(self.subscriptions) >= MAX_SUBSCRIPTIONS:
                    raise ValidationError(f"At most {MAX_SUBSCRIPTIONS} subscriptions per connection")
                existing = self._new_id()
                if subscription_filter.group_name not in self.joined_groups:
                    await self._join_group(subscription_filter.group_name)
                self.subscriptions[existing] = subscription_filter
            added.append(self._describe(existing))

        await self.send_success("subscribed", subscriptions=added, request_id=data.get("request_id"))

    async def _handle_unsubscribe(self, data: Dict[str, Any]):
        if data.get("all"):
            ids = list(self.subscriptions)
        else:
            ids = data.get("subscription_ids") or [data.get("subscription_id")]
        removed = [sid for sid in ids if self.subscriptions.pop(sid, None) is not None]
        await self._prune_groups()
        await self.send_success("unsubscribed", subscription_ids=removed, request_id=data.get("request_id"))

    async def _handle_resync(self, data: Dict[str, Any]):
        """
        Replace every subscription of this connection in one step.

        The new set is validated in full first; on any error the current set
        stays untouched. New groups are joined before old ones are left.
        """
        requested = data.get("filters")
        if not isinstance(requested, list):
            raise ValidationError("resync requires a list of filters", field="filters")
        if len(requested) > MAX_SUBSCRIPTIONS:
            raise ValidationError(f"At most {MAX_SUBSCRIPTIONS} subscriptions per connection")
        filters = await self._parse_and_authorize(requested)

        for group in {f.group_name for f in filters} - self.joined_groups:
            await self._join_group(group)

        replacement = {}
        for subscription_filter in dict.fromkeys(filters):
            replacement[self._new_id()] = subscription_filter
        self.subscriptions = replacement
        await self._prune_groups()

        logger.debug("User %s resynced %d subscription(s)", self.user_id, len(replacement))
        await self.send_success(
            "resynced",
            subscriptions=[self._describe(sid) for sid in replacement],
            request_id=data.get("request_id"),
        )

    # ---------------------- Group Event Handlers ----------------------

    async def change_event(self, message: Dict[str, Any]):
        """Sent by realtime.propagation for every committed change."""
        data = message.get("event") or {}
        event_id = data.get("event_id")
        if event_id and event_id in self._seen_events:
            return
        event = ChangeEvent.from_message(data)
        matched = [sid for sid, f in self.subscriptions.items() if f.matches(event)]
        if matched and self.role == "driver":
            matched = await self._drop_lost_ride_access(event, matched)
        if not matched:
            return
        if event_id:
            self._seen_events.append(event_id)
        await self.send_json({
            "type": "change",
            "subscription_ids": matched,
            "event": event.as_message(),
        })

    # ---------------------- Authorization ----------------------

    async def _parse_and_authorize(self, requested: List[Any]) -> List[SubscriptionFilter]:
        if not isinstance(requested, list):
            raise ValidationError("filters must be a list", field="filters")
        filters = [SubscriptionFilter.from_dict(item) for item in requested]
        for subscription_filter in filters:
            await self._authorize(subscription_filter)
        return filters

    async def _authorize(self, f: SubscriptionFilter):
        """
        Operators see everything. Other users see their own rides and bids,
        drivers also see open rides, and ride-scoped filters need the user to
        be allowed to view that ride.
        """
        if self.role == "operator":
            return
        if f.field is None:
            raise PermissionDenied("Only operators can subscribe to a whole table")

        own_value = str(self.user_id)
        if f.table == RIDES:
            if f.field in ("passenger_id", "driver_id") and f.value == own_value:
                return
            if f.field == "status" and self.role == "driver" and f.value in OPEN_RIDE_STATUSES:
                return
            if f.field == "id" and await self._can_view_ride(f.value):
                return
        elif f.table == BIDS:
            if f.field == "driver_id" and f.value == own_value:
                return
            if f.field == "ride_id" and await self._can_view_ride(f.value, owner_only=True):
                return
        elif f.table == ERRAND_TASKS:
            if f.field == "ride_id" and await self._can_view_ride(f.value):
                return
        raise PermissionDenied(f"Not allowed to subscribe to {f.table} where {f.expression}")

    async def _drop_lost_ride_access(self, event: ChangeEvent, matched: List[str]) -> List[str]:
        """
        Re-check ride-scoped subscriptions a driver got while the ride was open.

        Once the ride is assigned to someone else every subscription scoped
        to it is removed and the client told so; the remaining matches are
        returned.
        """
        allowed: Dict[str, bool] = {}
        for sid in matched:
            ride_id = _ride_scope(self.subscriptions[sid])
            if ride_id is not None and ride_id not in allowed:
                allowed[ride_id] = await self._still_allowed(ride_id, event)
        revoked = {ride_id for ride_id, ok in allowed.items() if not ok}
        if not revoked:
            return matched

        dropped = [sid for sid, f in self.subscriptions.items() if _ride_scope(f) in revoked]
        for sid in dropped:
            del self.subscriptions[sid]
        await self._prune_groups()
        logger.info("User %s lost access to ride(s) %s", self.user_id, ", ".join(sorted(revoked)))
        await self.send_success("unsubscribed", subscription_ids=dropped, reason="access_revoked")
        return [sid for sid in matched if sid not in dropped]

    async def _still_allowed(self, ride_id: str, event: ChangeEvent) -> bool:
        snapshot = event.snapshot
        if event.entity_type == RIDES and str(event.entity_id) == ride_id and "status" in snapshot:
            return (
                snapshot.get("passenger_id") == self.user_id
                or snapshot.get("driver_id") == self.user_id
                or snapshot["status"] in OPEN_RIDE_STATUSES
            )
        return await self._can_view_ride(ride_id)

    @database_sync_to_async
    def _can_view_ride(self, ride_id, owner_only: bool = False) -> bool:
        from rides.models import Ride

        ride = Ride.objects.filter(pk=ride_id).values("passenger_id", "driver_id", "status").first()
        if ride is None:
            return False
        if ride["passenger_id"] == self.user_id:
            return True
        if owner_only:
            return False
        if ride["driver_id"] == self.user_id:
            return True
        return self.role == "driver" and ride["status"] in OPEN_RIDE_STATUSES

    # ---------------------- Helpers ----------------------

    def _new_id(self) -> str:
        self._subscription_seq += 1
        return f"sub-{self._subscription_seq}"

    def _find(self, subscription_filter: SubscriptionFilter):
        for sid, existing in self.subscriptions.items():
            if existing == subscription_filter:
                return sid
        return None

    def _describe(self, sid: str) -> Dict[str, Any]:
        return {"id": sid, **self.subscriptions[sid].as_dict()}

    async def _prune_groups(self):
        wanted = {f.group_name for f in self.subscriptions.values()}
        for group in list(self.joined_groups - wanted):
            await self._leave_group(group)


def _ride_scope(f: SubscriptionFilter):
    """Ride id a filter is scoped to through ride access, or None."""
    if (f.table, f.field) in ((RIDES, "id"), (ERRAND_TASKS, "ride_id")):
        return f.value
    return None
