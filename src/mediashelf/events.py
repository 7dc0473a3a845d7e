"""Lifecycle events and best-effort fan-out to subscribers."""

from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel, Field

from mediashelf.state.models import utcnow

LOGGER = logging.getLogger(__name__)

Subscriber = Callable[["LifecycleEvent"], None]


class EventKind(str, Enum):
    """Lifecycle milestones published by the pipeline."""

    DISCOVERED = "discovered"
    CLASSIFIED = "classified"
    READY_FOR_CONFIRMATION = "ready_for_confirmation"
    MOVED = "moved"
    FAILED = "failed"


class LifecycleEvent(BaseModel):
    """A single published milestone.

    Attributes:
        kind: Milestone type.
        fingerprint: Item fingerprint, when known.
        path: Path relevant to the milestone.
        detail: Free-form description.
        data: Additional string attributes (category, confidence, error kind...).
        timestamp: Publication time.
    """

    kind: EventKind
    fingerprint: Optional[str] = None
    path: Optional[str] = None
    detail: Optional[str] = None
    data: Dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class EventBus:
    """Deliver events to subscribers from a background thread.

    ``publish`` never blocks: when the buffer is full the event is dropped and
    counted. Subscriber exceptions are logged and otherwise ignored.
    """

    def __init__(self, capacity: int = 1000) -> None:
        self._queue: queue.Queue[LifecycleEvent | None] = queue.Queue(maxsize=capacity)
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.dropped = 0

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)
            self._ensure_thread()

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: LifecycleEvent) -> bool:
        """Queue ``event`` for delivery.

        Returns:
            bool: ``False`` when the event was dropped.
        """
        with self._lock:
            if not self._subscribers:
                return True
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            LOGGER.debug("Event buffer full; dropped %s event for %s", event.kind.value, event.fingerprint)
            return False
        return True

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until queued events have been delivered.

        Returns:
            bool: ``True`` if the buffer drained before ``timeout``.
        """
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self) -> None:
        """Stop the delivery thread after pending events are delivered."""
        thread = self._thread
        if thread is None:
            return
        self.flush()
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        thread.join(timeout=5)
        self._thread = None

    def _ensure_thread(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="mediashelf-events", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                with self._lock:
                    subscribers = list(self._subscribers)
                for subscriber in subscribers:
                    try:
                        subscriber(event)
                    except Exception:  # noqa: BLE001 - subscribers must not break delivery
                        LOGGER.exception("Event subscriber failed for %s", event.kind.value)
            finally:
                self._queue.task_done()


__all__ = ["EventKind", "LifecycleEvent", "EventBus", "Subscriber"]
