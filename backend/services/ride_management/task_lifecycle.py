"""
Errand task state machine.

Tasks move strictly forward through TASK_STATE_ORDER, one step at a time, and
only the active task (the first task in order that is not completed) may
move. Every transition appends a TaskHistoryEntry.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from django.db import transaction

from rides.models import ErrandTask, Ride, RideStatus, TaskHistoryEntry, TaskState
from realtime.events import ERRAND_TASKS, RIDES
from realtime.propagation import filterable_values, publish_change
from services.exceptions import (
    InvalidTransition,
    OutOfOrder,
    PermissionDenied,
    PreconditionFailed,
    TaskNotFoundError,
    ValidationError,
)
from .queries import actor_type, lock_ride

logger = logging.getLogger(__name__)

TASK_STATE_ORDER = [
    TaskState.PENDING,
    TaskState.ACTIVATED,
    TaskState.DRIVER_ON_WAY,
    TaskState.DRIVER_ARRIVED,
    TaskState.STARTED,
    TaskState.COMPLETED,
]

TASK_STATE_LABELS = {
    TaskState.PENDING: "Awaiting activation",
    TaskState.ACTIVATED: "Task activated",
    TaskState.DRIVER_ON_WAY: "Driver en route to task",
    TaskState.DRIVER_ARRIVED: "Driver arrived",
    TaskState.STARTED: "Task in progress",
    TaskState.COMPLETED: "Task completed",
}

# Older clients wrote these values
LEGACY_TASK_STATES = {
    "task_activated": TaskState.ACTIVATED,
    "driver_en_route": TaskState.DRIVER_ON_WAY,
    "task_started": TaskState.STARTED,
    "in_progress": TaskState.STARTED,
    "complete_task": TaskState.COMPLETED,
    "completed_task": TaskState.COMPLETED,
}

# Ride statuses in which tasks may advance
TASK_ACTIVE_RIDE_STATUSES = (RideStatus.ASSIGNED, RideStatus.IN_PROGRESS)


@dataclass
class TaskResult:
    """Result object for task operations."""
    task: ErrandTask
    ride: Ride
    changed: bool = True
    message: str = ""


@dataclass
class TaskProgress:
    total: int
    completed: int
    remaining: int
    active_task: Optional[ErrandTask]

    def as_dict(self):
        active = self.active_task
        return {
            "total": self.total,
            "completed": self.completed,
            "remaining": self.remaining,
            "active_task_id": active.id if active else None,
            "active_task_order": active.order if active else None,
            "active_task_state": active.state if active else None,
            "active_task_label": describe_task_state(active.state) if active else None,
        }


# ---------------------- State helpers ----------------------

def normalize_task_state(value) -> str:
    """
    Map a stored or submitted state string onto a known state.

    Empty values read as pending and legacy aliases are translated. Anything
    else is rejected so corrupted data surfaces instead of being rewritten.
    """
    if value is None or str(value).strip() == "":
        return TaskState.PENDING
    normalized = str(value).strip().lower()
    if normalized in TaskState.values:
        return TaskState(normalized)
    if normalized in LEGACY_TASK_STATES:
        return LEGACY_TASK_STATES[normalized]
    logger.warning("Rejected unrecognized task state %r", value)
    raise ValidationError(f"Unrecognized task state: {value}", field="state")


def state_index(state) -> int:
    return TASK_STATE_ORDER.index(normalize_task_state(state))


def next_task_state(state) -> Optional[str]:
    index = state_index(state)
    if index + 1 >= len(TASK_STATE_ORDER):
        return None
    return TASK_STATE_ORDER[index + 1]


def describe_task_state(state) -> str:
    return TASK_STATE_LABELS[normalize_task_state(state)]


def active_task(tasks: List[ErrandTask]) -> Optional[ErrandTask]:
    """First task in declared order that is not completed."""
    for task in sorted(tasks, key=lambda t: t.order):
        if normalize_task_state(task.state) != TaskState.COMPLETED:
            return task
    return None


def task_progress(tasks: List[ErrandTask]) -> TaskProgress:
    tasks = list(tasks)
    completed = sum(1 for task in tasks if normalize_task_state(task.state) == TaskState.COMPLETED)
    return TaskProgress(
        total=len(tasks),
        completed=completed,
        remaining=max(len(tasks) - completed, 0),
        active_task=active_task(tasks),
    )


# ---------------------- Transitions ----------------------

def _apply(task: ErrandTask, to_state: str, actor) -> None:
    """Persist one transition with its history entry and queue the change event."""
    previous = filterable_values(ERRAND_TASKS, task)
    from_state = normalize_task_state(task.state)
    task.state = to_state
    task.save(update_fields=["state", "updated_at"])
    TaskHistoryEntry.objects.create(
        task=task,
        from_state=from_state,
        action=to_state,
        actor=actor,
        actor_type=actor_type(actor),
    )
    publish_change(ERRAND_TASKS, task, previous=previous)
    logger.info("Task %s of ride %s: %s -> %s", task.id, task.ride_id, from_state, to_state)


def activate_next_task(ride: Ride, actor=None) -> Optional[ErrandTask]:
    """
    Move the active task from pending to activated.

    Called with the ride row already locked, when a bid is accepted and after
    each task completes.
    """
    task = active_task(list(ride.tasks.select_for_update()))
    if task is None or normalize_task_state(task.state) != TaskState.PENDING:
        return None
    _apply(task, TaskState.ACTIVATED, actor)
    return task


def _check_actor(ride: Ride, actor) -> None:
    if actor is None or getattr(actor, "is_operator", False):
        return
    if actor.id != ride.driver_id:
        raise PermissionDenied("Only the assigned driver can update errand tasks")


@transaction.atomic
def advance_task(ride_id, task_id, expected_from_state, actor, to_state=None) -> TaskResult:
    """
    Move a task one step forward.

    Args:
        ride_id: ID of the errands ride
        task_id: ID of the task to move
        expected_from_state: the state the caller believes the task is in
        actor: user performing the transition (assigned driver or operator)
        to_state: target state; defaults to the state after expected_from_state

    Returns:
        TaskResult; changed is False when the task already holds the target
        state (a retried request).

    Raises:
        InvalidTransition: target skips a state or moves backwards
        OutOfOrder: task is not the active task of the ride
        PreconditionFailed: task is no longer in expected_from_state, or the
            ride is not assigned / in progress
    """
    ride = lock_ride(ride_id)
    if not ride.is_errand:
        raise PreconditionFailed("Only errand rides have tasks")
    _check_actor(ride, actor)

    tasks = list(ride.tasks.select_for_update().order_by("order"))
    task = next((t for t in tasks if str(t.id) == str(task_id)), None)
    if task is None:
        raise TaskNotFoundError("Task not found on this ride", task_id=task_id)

    expected = normalize_task_state(expected_from_state)
    current = normalize_task_state(task.state)
    target = normalize_task_state(to_state) if to_state else next_task_state(expected)

    if target is None:
        raise InvalidTransition("Task is already completed", task_id=task.id)
    if state_index(target) <= state_index(expected):
        raise InvalidTransition(f"Cannot move task from {expected} back to {target}", task_id=task.id)
    if state_index(target) != state_index(expected) + 1:
        raise InvalidTransition(f"Cannot skip from {expected} to {target}", task_id=task.id)

    if current == target:
        return TaskResult(task=task, ride=ride, changed=False, message="Task already in requested state")

    if ride.status not in TASK_ACTIVE_RIDE_STATUSES:
        raise PreconditionFailed(f"Ride is {ride.status}; tasks cannot be advanced", ride_id=ride.id)

    active = active_task(tasks)
    if active is None or active.id != task.id:
        raise OutOfOrder(
            "Only the active task can be updated",
            task_id=task.id,
            active_task_id=active.id if active else None,
        )
    if current != expected:
        raise PreconditionFailed(
            f"Task is {current}, not {expected}",
            task_id=task.id,
            current_state=current,
        )

    _apply(task, target, actor)

    if target == TaskState.STARTED and ride.status == RideStatus.ASSIGNED:
        from .ride_lifecycle import mark_ride_started
        mark_ride_started(ride)

    if target == TaskState.COMPLETED:
        progress = task_progress(tasks)
        ride_previous = filterable_values(RIDES, ride)
        ride.tasks_done = progress.completed
        ride.save(update_fields=["tasks_done", "updated_at"])
        if progress.remaining == 0:
            from .ride_lifecycle import finalize_completion
            finalize_completion(ride)
        else:
            publish_change(RIDES, ride, previous=ride_previous)
            activate_next_task(ride, actor)

    return TaskResult(task=task, ride=ride, message=describe_task_state(target))
