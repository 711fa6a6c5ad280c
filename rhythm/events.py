"""
Event types for the scheduler's serialization queue.

Timer fires, user actions and resync triggers all arrive as typed events
on one queue.Queue; worker threads drain it.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any


class EventType(Enum):
    """All event types handled by the scheduler loop."""

    # Timer subsystem
    ALARM_FIRE = auto()                 # An alarm's instant arrived (data: alarm_id)

    # Notification surface
    NOTIFICATION_ACTION = auto()        # Button pressed (data: (notification_id, action_index))
    NOTIFICATION_DISMISSED = auto()     # Closed without action (data: notification_id)

    # Reconciliation
    RESYNC_REQUEST = auto()             # Startup / definition change / periodic (data: reason str)
    PROMOTION_TICK = auto()             # Status auto-promotion sweep

    # System
    SHUTDOWN = auto()                   # Graceful shutdown requested


@dataclass(frozen=True)
class Event:
    type: EventType
    data: Any = None
