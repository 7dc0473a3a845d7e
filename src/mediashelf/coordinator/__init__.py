"""Bounded two-stage work coordination."""

from .locks import KeyedLock
from .models import Priority, WorkItem
from .queues import PriorityWorkQueue, QueueClosedError
from .service import WorkCoordinator

__all__ = [
    "KeyedLock",
    "Priority",
    "WorkItem",
    "PriorityWorkQueue",
    "QueueClosedError",
    "WorkCoordinator",
]
