"""
Change propagation: turn committed mutations into ChangeEvents on the channel layer.

Services call publish_change() inside their transaction. Delivery is queued
with transaction.on_commit, so a rolled-back unit of work publishes nothing
and all events of a committed one go out together.
"""

import logging
from typing import Any, Dict, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction

from .events import MESSAGE_TYPE, ChangeEvent, EventKind
from .filters import FILTERABLE_FIELDS, group_names_for

logger = logging.getLogger(__name__)


def snapshot_for(entity_type: str, instance) -> Dict[str, Any]:
    """Serialize an instance into the JSON-safe snapshot carried by its events."""
    from rides.serializers import SNAPSHOT_SERIALIZERS

    serializer_class = SNAPSHOT_SERIALIZERS[entity_type]
    return dict(serializer_class(instance).data)


def filterable_values(entity_type: str, instance) -> Dict[str, Any]:
    """Capture the filterable fields of an instance before it is mutated."""
    return {name: getattr(instance, name, None) for name in FILTERABLE_FIELDS.get(entity_type, ())}


def deliver(event: ChangeEvent) -> bool:
    """Send an event to every group it belongs to. Failures are logged, never raised."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        logger.warning("No channel layer configured; dropping %s event for %s", event.event_kind, event.key)
        return False

    message = {"type": MESSAGE_TYPE, "event": event.as_message()}
    try:
        for group in group_names_for(event):
            async_to_sync(channel_layer.group_send)(group, message)
    except Exception:
        logger.exception("Failed to deliver %s event for %s", event.event_kind, event.key)
        return False

    logger.debug("Delivered %s event for %s", event.event_kind, event.key)
    return True


def publish_change(
    entity_type: str,
    instance,
    event_kind: str = EventKind.UPDATED,
    previous: Optional[Dict[str, Any]] = None,
) -> ChangeEvent:
    """
    Build the event for a mutation now and deliver it once the transaction commits.

    Args:
        entity_type: one of rides, bids, errand_tasks
        instance: the mutated model instance (already saved)
        event_kind: created, updated or deleted
        previous: filterable values before the mutation, see filterable_values()
    """
    snapshot = snapshot_for(entity_type, instance)
    changed = {
        name: str(value) for name, value in (previous or {}).items()
        if value is not None and str(value) != str(snapshot.get(name))
    }
    event = ChangeEvent(
        entity_type=entity_type,
        entity_id=instance.pk,
        event_kind=event_kind,
        snapshot=snapshot,
        previous=changed,
    )
    transaction.on_commit(lambda: deliver(event))
    return event
