"""ChangeEvent: the notification sent for every committed ride, bid or task mutation."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.utils import timezone


class EventKind:
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"

    ALL = (CREATED, UPDATED, DELETED)


RIDES = "rides"
BIDS = "bids"
ERRAND_TASKS = "errand_tasks"

TABLES = (RIDES, BIDS, ERRAND_TASKS)

# Channel layer message type; consumers handle it in change_event()
MESSAGE_TYPE = "change.event"


@dataclass
class ChangeEvent:
    entity_type: str
    entity_id: Any
    event_kind: str
    snapshot: Dict[str, Any]
    timestamp: str = field(default_factory=lambda: timezone.now().isoformat())
    # Filterable field values before the mutation, so subscribers of the old value hear about it
    previous: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def as_message(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "event_kind": self.event_kind,
            "snapshot": self.snapshot,
            "previous": self.previous,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            event_kind=data["event_kind"],
            snapshot=data.get("snapshot") or {},
            timestamp=data.get("timestamp") or timezone.now().isoformat(),
            previous=data.get("previous") or {},
            event_id=data.get("event_id") or uuid.uuid4().hex,
        )

    @property
    def key(self):
        return (self.entity_type, str(self.entity_id))

    @property
    def updated_at(self) -> Optional[str]:
        return self.snapshot.get("updated_at") or self.timestamp


def merge_snapshot(current: Optional[Dict[str, Any]], event: ChangeEvent) -> Optional[Dict[str, Any]]:
    """
    Apply an event to a locally held snapshot, last write wins on updated_at.

    Duplicate or stale events leave the current snapshot untouched. A deleted
    event returns None.
    """
    if event.event_kind == EventKind.DELETED:
        return None
    if current is None:
        return dict(event.snapshot)
    current_ts = current.get("updated_at") or ""
    incoming_ts = event.updated_at or ""
    if incoming_ts < current_ts:
        return current
    return dict(event.snapshot)
