"""
Subscription filters for the change feed.

A filter names a table, an event kind and optionally one equality predicate
written as ``field=eq.value``. Each filter maps onto one channel layer group,
so fan-out happens in the channel layer rather than per connection.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from services.exceptions import ValidationError
from .events import BIDS, ERRAND_TASKS, EventKind, RIDES, ChangeEvent

FILTERABLE_FIELDS = {
    RIDES: ("id", "passenger_id", "driver_id", "status", "service_type"),
    BIDS: ("id", "ride_id", "driver_id", "status"),
    ERRAND_TASKS: ("id", "ride_id", "state"),
}

ANY_EVENT = "*"
GROUP_PREFIX = "changes"

_FILTER_RE = re.compile(r"^(?P<field>[a-z_]+)=eq\.(?P<value>[A-Za-z0-9_\-]{1,64})$")


def _group(table: str, field_name: Optional[str] = None, value: Any = None) -> str:
    if field_name is None:
        return f"{GROUP_PREFIX}.{table}"
    return f"{GROUP_PREFIX}.{table}.{field_name}.{value}"


@dataclass(frozen=True)
class SubscriptionFilter:
    table: str
    event: str = ANY_EVENT
    field: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def parse(cls, table: str, event: Optional[str] = None, filter_expr: Optional[str] = None) -> "SubscriptionFilter":
        """Build a filter from wire values, rejecting unknown tables, fields and kinds."""
        if table not in FILTERABLE_FIELDS:
            raise ValidationError(f"Unknown table: {table}", field="table")
        event = event or ANY_EVENT
        if event != ANY_EVENT and event not in EventKind.ALL:
            raise ValidationError(f"Unknown event kind: {event}", field="event")
        if not filter_expr:
            return cls(table=table, event=event)

        match = _FILTER_RE.match(filter_expr.strip())
        if not match:
            raise ValidationError(f"Invalid filter (expected field=eq.value): {filter_expr}", field="filter")
        field_name = match.group("field")
        if field_name not in FILTERABLE_FIELDS[table]:
            raise ValidationError(f"Field {field_name} is not filterable on {table}", field="filter")
        return cls(table=table, event=event, field=field_name, value=match.group("value"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriptionFilter":
        if not isinstance(data, dict):
            raise ValidationError("Filter must be an object", field="filters")
        return cls.parse(data.get("table"), data.get("event"), data.get("filter"))

    @property
    def group_name(self) -> str:
        return _group(self.table, self.field, self.value)

    @property
    def expression(self) -> Optional[str]:
        return f"{self.field}=eq.{self.value}" if self.field else None

    def matches(self, event: ChangeEvent) -> bool:
        if event.entity_type != self.table:
            return False
        if self.event != ANY_EVENT and event.event_kind != self.event:
            return False
        if self.field is None:
            return True
        candidates = (event.snapshot.get(self.field), event.previous.get(self.field))
        return any(value is not None and str(value) == self.value for value in candidates)

    def as_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "event": self.event, "filter": self.expression}


def group_names_for(event: ChangeEvent) -> List[str]:
    """
    Every group an event is delivered to.

    When a filterable value changed, both the old and the new value group
    receive the event.
    """
    groups = [_group(event.entity_type)]
    for field_name in FILTERABLE_FIELDS.get(event.entity_type, ()):
        for source in (event.snapshot, event.previous):
            value = source.get(field_name)
            if value is None:
                continue
            name = _group(event.entity_type, field_name, value)
            if name not in groups:
                groups.append(name)
    return groups
