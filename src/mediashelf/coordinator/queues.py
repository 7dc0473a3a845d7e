"""Bounded two-lane work queue with blocking backpressure."""

from __future__ import annotations

import queue
import threading
import time
from collections import deque
from typing import Optional

from .models import Priority, WorkItem


class QueueClosedError(RuntimeError):
    """Raised when producing into a queue that has been closed."""


class PriorityWorkQueue:
    """FIFO queue with a user-priority lane served before the normal lane.

    Both lanes share ``capacity``; ``put`` blocks while the queue is full. After
    ``fairness_window`` consecutive user-lane dequeues one normal item is served
    if any is waiting, so background work always progresses.
    """

    def __init__(self, capacity: int, *, fairness_window: int = 4, name: str = "queue") -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.fairness_window = max(1, fairness_window)
        self.name = name
        self._lanes: dict[Priority, deque[WorkItem]] = {
            Priority.USER: deque(),
            Priority.NORMAL: deque(),
        }
        self._mutex = threading.Lock()
        self._not_empty = threading.Condition(self._mutex)
        self._not_full = threading.Condition(self._mutex)
        self._closed = False
        self._user_streak = 0
        self._unfinished = 0
        self.peak_size = 0
        self.blocked_puts = 0

    def put(self, item: WorkItem, *, timeout: Optional[float] = None) -> None:
        """Append ``item`` to its lane, waiting while the queue is full.

        Raises:
            QueueClosedError: If the queue is closed before space frees up.
            queue.Full: If ``timeout`` elapses first.
        """
        with self._not_full:
            deadline = None if timeout is None else time.monotonic() + timeout
            waited = False
            while not self._closed and self._size() >= self.capacity:
                if not waited:
                    self.blocked_puts += 1
                    waited = True
                if deadline is None:
                    self._not_full.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise queue.Full(f"{self.name} is full")
                    self._not_full.wait(remaining)
            if self._closed:
                raise QueueClosedError(f"{self.name} is closed")
            self._lanes[item.priority].append(item)
            self._unfinished += 1
            self.peak_size = max(self.peak_size, self._size())
            self._not_empty.notify()

    def get(self, *, timeout: Optional[float] = None) -> Optional[WorkItem]:
        """Remove and return the next item.

        Returns:
            Optional[WorkItem]: ``None`` when the queue is closed or ``timeout`` elapses.
        """
        with self._not_empty:
            deadline = None if timeout is None else time.monotonic() + timeout
            while not self._closed and self._size() == 0:
                if deadline is None:
                    self._not_empty.wait()
                else:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._not_empty.wait(remaining)
            if self._closed:
                return None
            item = self._next()
            self._not_full.notify()
            return item

    def close(self) -> None:
        """Stop accepting and handing out items; wake every waiter."""
        with self._mutex:
            self._closed = True
            self._not_empty.notify_all()
            self._not_full.notify_all()

    def drain(self) -> list[WorkItem]:
        """Remove and return every queued item, user lane first."""
        with self._mutex:
            items = list(self._lanes[Priority.USER]) + list(self._lanes[Priority.NORMAL])
            for lane in self._lanes.values():
                lane.clear()
            self._unfinished -= len(items)
            self._not_full.notify_all()
            return items

    def task_done(self) -> None:
        """Mark one item returned by :meth:`get` as fully processed."""
        with self._mutex:
            if self._unfinished <= 0:
                raise ValueError("task_done() called too many times")
            self._unfinished -= 1

    @property
    def unfinished_tasks(self) -> int:
        """Return items that were queued but not yet marked done."""
        with self._mutex:
            return self._unfinished

    @property
    def closed(self) -> bool:
        """Return whether :meth:`close` has been called."""
        return self._closed

    def __len__(self) -> int:
        with self._mutex:
            return self._size()

    def _size(self) -> int:
        return len(self._lanes[Priority.USER]) + len(self._lanes[Priority.NORMAL])

    def _next(self) -> WorkItem:
        user = self._lanes[Priority.USER]
        normal = self._lanes[Priority.NORMAL]
        if user and not (normal and self._user_streak >= self.fairness_window):
            self._user_streak += 1
            return user.popleft()
        self._user_streak = 0
        return normal.popleft()


__all__ = ["PriorityWorkQueue", "QueueClosedError"]
