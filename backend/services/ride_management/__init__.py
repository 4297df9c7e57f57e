"""
Ride management service - Core ride and errand task lifecycle operations.

This module handles:
    - Creating rides
    - Starting, completing and cancelling rides
    - Disputes and operator flags
    - Advancing errand tasks in order
    - Querying ride progress
"""

from .ride_lifecycle import (
    RideResult,
    cancel_ride,
    complete_ride,
    create_ride,
    dispute_ride,
    flag_ride,
    get_ride_for_user,
    ride_progress,
    start_ride,
)
from .task_lifecycle import (
    TASK_STATE_ORDER,
    TaskResult,
    advance_task,
    describe_task_state,
    normalize_task_state,
)

__all__ = [
    # Ride lifecycle
    "RideResult",
    "create_ride",
    "start_ride",
    "complete_ride",
    "cancel_ride",
    "dispute_ride",
    "flag_ride",
    "get_ride_for_user",
    "ride_progress",
    # Task lifecycle
    "TASK_STATE_ORDER",
    "TaskResult",
    "advance_task",
    "describe_task_state",
    "normalize_task_state",
]
