"""Two-stage work coordinator: registration then classification/organization."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from mediashelf.classification.categories import CategoryRegistry
from mediashelf.classification.engine import ClassificationEngine
from mediashelf.classification.models import ClassificationDecision, ClassificationRequest
from mediashelf.config.models import MediaShelfConfig
from mediashelf.errors import (
    ErrorKind,
    FingerprintError,
    InvalidTransitionError,
    NotConfirmableError,
    PipelineError,
)
from mediashelf.events import EventBus, EventKind, LifecycleEvent
from mediashelf.ingestion.fingerprint import HashComputer
from mediashelf.ingestion.metadata import analyze_filename
from mediashelf.organization.engine import OrganizationEngine
from mediashelf.state import StateRepository, iter_resumable
from mediashelf.state.machine import record_failure, reset, transition
from mediashelf.state.models import Decision, FileStatus, TrackedItem

from .locks import KeyedLock
from .models import Priority, WorkItem
from .queues import PriorityWorkQueue, QueueClosedError

LOGGER = logging.getLogger(__name__)


class WorkCoordinator:
    """Run the registration and classification worker pools.

    Registration workers hash discovered paths and create or refresh tracked
    items. Classification workers batch items through the classification engine
    and hand confirmed items to the organization engine. A keyed lock
    serializes all work on one fingerprint; it is never held across the
    classifier call.
    """

    def __init__(
        self,
        config: MediaShelfConfig,
        repository: StateRepository,
        classification: ClassificationEngine,
        organization: OrganizationEngine,
        registry: CategoryRegistry,
        *,
        hasher: Optional[HashComputer] = None,
        events: Optional[EventBus] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            config: Immutable runtime configuration.
            repository: Persistence capability for tracked items.
            classification: Classification decision engine.
            organization: Engine performing moves.
            registry: Shared category registry.
            hasher: Fingerprint service.
            events: Optional lifecycle event bus.
            locks: Keyed lock shared with other components.
        """
        self._config = config
        self._repository = repository
        self._classification = classification
        self._organization = organization
        self._registry = registry
        self._hasher = hasher or HashComputer()
        self._events = events
        self.locks = locks or KeyedLock()

        queues = config.queues
        self.registration_queue = PriorityWorkQueue(
            queues.registration_capacity, fairness_window=queues.fairness_window, name="registration"
        )
        self.classification_queue = PriorityWorkQueue(
            queues.classification_capacity, fairness_window=queues.fairness_window, name="classification"
        )
        self._workers: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._timers: set[threading.Timer] = set()
        self._activity = threading.Condition()
        self._in_flight = 0
        self._path_attempts: dict[str, int] = {}
        self._unavailable_attempts: dict[str, int] = {}
        # Guards both attempt tables; workers and retry timers update them.
        self._attempts_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        """Return whether worker threads are active."""
        return bool(self._workers) and not self._stop_event.is_set()

    def start(self, *, resume: bool = True) -> None:
        """Start the worker pools and optionally queue resumable items."""
        if self._workers:
            raise RuntimeError("WorkCoordinator is already running.")
        queues = self._config.queues
        for index in range(queues.registration_workers):
            self._spawn(self._registration_loop, f"mediashelf-register-{index}")
        for index in range(queues.classification_workers):
            self._spawn(self._classification_loop, f"mediashelf-classify-{index}")
        LOGGER.info(
            "Started %d registration and %d classification workers",
            queues.registration_workers,
            queues.classification_workers,
        )
        if resume:
            self.resume()

    def resume(self) -> int:
        """Queue every item a previous run left unfinished.

        Returns:
            int: Number of items queued.
        """
        count = 0
        for item in iter_resumable(self._repository):
            try:
                if item.status is FileStatus.NEW:
                    self.submit_path(item.source_path)
                else:
                    self.submit_fingerprint(item.fingerprint)
            except QueueClosedError:
                break
            count += 1
        if count:
            LOGGER.info("Resumed %d unfinished item(s)", count)
        return count

    def stop(self, grace_seconds: Optional[float] = None) -> list[WorkItem]:
        """Stop accepting work and wait for in-flight items.

        Args:
            grace_seconds: How long in-flight items may take to finish.

        Returns:
            list[WorkItem]: Queued work that was not started. The matching
            items stay ``New``/``Processing`` in the store and are resumed on
            the next start.
        """
        grace = self._config.queues.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self._stop_event.set()
        with self._activity:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self.registration_queue.close()
        self.classification_queue.close()

        deadline = time.monotonic() + grace
        for worker in self._workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))
        stuck = [worker.name for worker in self._workers if worker.is_alive()]
        if stuck:
            LOGGER.warning("Workers still busy after %.1fs grace: %s", grace, ", ".join(stuck))
        self._workers = []

        leftovers = self.registration_queue.drain() + self.classification_queue.drain()
        if leftovers:
            LOGGER.info("%d queued item(s) left for the next start", len(leftovers))
        return leftovers

    def wait_idle(self, timeout: float = 30.0) -> bool:
        """Block until no work is queued, running or scheduled for retry.

        Returns:
            bool: ``True`` if the coordinator went idle before ``timeout``.
        """
        deadline = time.monotonic() + timeout
        with self._activity:
            while True:
                idle = (
                    self._in_flight == 0
                    and not self._timers
                    and self.registration_queue.unfinished_tasks == 0
                    and self.classification_queue.unfinished_tasks == 0
                )
                if idle:
                    return True
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._activity.wait(min(remaining, 0.05))

    def stats(self) -> dict[str, int]:
        """Return queue depths and the number of items being worked on."""
        with self._activity:
            in_flight = self._in_flight
            scheduled = len(self._timers)
        return {
            "registration_queued": len(self.registration_queue),
            "classification_queued": len(self.classification_queue),
            "registration_peak": self.registration_queue.peak_size,
            "classification_peak": self.classification_queue.peak_size,
            "blocked_puts": self.registration_queue.blocked_puts + self.classification_queue.blocked_puts,
            "in_flight": in_flight,
            "scheduled_retries": scheduled,
        }

    # ------------------------------------------------------------------ #
    # Producers                                                          #
    # ------------------------------------------------------------------ #

    def submit_path(self, path: Path, priority: Priority = Priority.NORMAL, *, timeout: Optional[float] = None) -> None:
        """Queue a discovered path for registration, blocking while the queue is full."""
        self.registration_queue.put(WorkItem(source_path=Path(path), priority=priority), timeout=timeout)

    def submit_fingerprint(
        self,
        fingerprint: str,
        priority: Priority = Priority.NORMAL,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Queue a registered item for classification or organization."""
        self.classification_queue.put(WorkItem(fingerprint=fingerprint, priority=priority), timeout=timeout)

    # ------------------------------------------------------------------ #
    # Operator actions                                                   #
    # ------------------------------------------------------------------ #

    def confirm(self, fingerprint: str, category: str) -> TrackedItem:
        """Confirm ``category`` for a classified item and queue its move.

        Confirming an item that is already on its way to the library with the
        same category succeeds without doing anything.

        Raises:
            NotConfirmableError: If the item is not awaiting confirmation.
        """
        canonical = self._registry.resolve(category)
        if not canonical:
            raise NotConfirmableError("category must not be empty")
        with self.locks.hold(fingerprint):
            item = self._repository.require(fingerprint)
            if item.status in (FileStatus.READY_TO_MOVE, FileStatus.MOVING, FileStatus.MOVED):
                if item.category == canonical:
                    return item
                raise NotConfirmableError(
                    f"{fingerprint[:12]} was already confirmed as {item.category!r}"
                )
            if item.status is not FileStatus.CLASSIFIED:
                raise NotConfirmableError(f"{fingerprint[:12]} is {item.status.value}, not classified")
            item.category = self._registry.register(canonical)
            transition(item, FileStatus.READY_TO_MOVE, reason="confirmed")
            item = self._repository.upsert(item)
        LOGGER.info("Confirmed %s as %s", item.display_name, item.category)
        if self.running:
            self.submit_fingerprint(fingerprint, Priority.USER)
        return item

    def ignore(self, fingerprint: str) -> TrackedItem:
        """Move a non-terminal item to ``Ignored``."""
        with self.locks.hold(fingerprint):
            item = self._repository.require(fingerprint)
            transition(item, FileStatus.IGNORED, reason="operator")
            self._forget_attempts(fingerprint, path=item.source_path)
            return self._repository.upsert(item)

    def reset(self, fingerprint: str) -> TrackedItem:
        """Reset an item to ``New`` and queue it for registration again."""
        with self.locks.hold(fingerprint):
            item = reset(self._repository.require(fingerprint))
            self._forget_attempts(fingerprint, path=item.source_path)
            item = self._repository.upsert(item)
        if self.running:
            self.submit_path(item.source_path, Priority.USER)
        return item

    def reprocess(self, fingerprint: str) -> TrackedItem:
        """Retry a failed item at user priority with a fresh retry budget.

        Raises:
            InvalidTransitionError: If the item is not in ``Error`` or ``Retry``.
        """
        with self.locks.hold(fingerprint):
            item = self._repository.require(fingerprint)
            if item.status is FileStatus.ERROR:
                transition(item, FileStatus.RETRY, reason="operator")
            elif item.status is not FileStatus.RETRY:
                raise InvalidTransitionError(f"{fingerprint[:12]} is {item.status.value}, not in error")
            item.retry_count = 0
            item = self._repository.upsert(item)
        if self.running:
            self.submit_fingerprint(fingerprint, Priority.USER)
        return item

    def process_now(self, fingerprint: str) -> TrackedItem:
        """Work one item synchronously in the caller's thread.

        Used when no workers are running, e.g. for one-off CLI commands.
        """
        self._process_batch([WorkItem(fingerprint=fingerprint, priority=Priority.USER)])
        return self._repository.require(fingerprint)

    # ------------------------------------------------------------------ #
    # Registration stage                                                 #
    # ------------------------------------------------------------------ #

    def _registration_loop(self) -> None:
        while True:
            work = self.registration_queue.get()
            if work is None:
                return
            self._begin()
            try:
                self._register(work)
            except Exception:  # noqa: BLE001 - one item must not stop the worker
                LOGGER.exception("Registration of %s failed unexpectedly", work.key)
            finally:
                self._end()
                self.registration_queue.task_done()

    def _register(self, work: WorkItem) -> None:
        path = work.source_path
        assert path is not None
        if not path.exists():
            LOGGER.info("Dropping %s: file disappeared before registration", path)
            return
        try:
            fingerprint = self._hasher.compute(path)
        except FingerprintError as exc:
            self._path_failed(work, exc)
            return
        self._forget_attempts(path=path)

        with self.locks.hold(fingerprint):
            item = self._repository.get_by_fingerprint(fingerprint)
            if item is None:
                item = self._new_item(fingerprint, path)
                self._publish(EventKind.DISCOVERED, item, detail=str(path))
            elif item.status is not FileStatus.NEW:
                self._reconcile_duplicate(item, path)
                return
            elif item.source_path != path and not item.source_path.exists():
                item.source_path = path
                item.display_name = path.name
            transition(item, FileStatus.PROCESSING, reason="registered")
            self._repository.upsert(item)

        try:
            self.classification_queue.put(WorkItem(fingerprint=fingerprint, priority=work.priority))
        except QueueClosedError:
            LOGGER.debug("%s left in processing; queue closed", fingerprint[:12])

    def _new_item(self, fingerprint: str, path: Path) -> TrackedItem:
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        item = TrackedItem(
            fingerprint=fingerprint,
            source_path=path,
            display_name=path.name,
            size_bytes=size,
            metadata=analyze_filename(path.name).as_metadata(),
        )
        LOGGER.info("Registered %s (%s)", path.name, fingerprint[:12])
        return self._repository.upsert(item)

    def _reconcile_duplicate(self, item: TrackedItem, path: Path) -> None:
        if item.source_path == path:
            LOGGER.debug("%s already tracked at %s", item.fingerprint[:12], path)
            return
        if not item.status.terminal and not item.source_path.exists():
            LOGGER.info("%s relocated from %s to %s", item.fingerprint[:12], item.source_path, path)
            item.source_path = path
            self._repository.upsert(item)
            return
        LOGGER.info(
            "Duplicate content at %s suppressed; already tracked as %s (%s)",
            path,
            item.fingerprint[:12],
            item.status.value,
        )

    def _path_failed(self, work: WorkItem, exc: PipelineError) -> None:
        path = work.source_path
        key = str(path)
        attempts = self._count_attempt(self._path_attempts, key)
        self._publish_raw(EventKind.FAILED, None, str(path), exc.detail, {"error_kind": exc.kind.value})
        if exc.kind.retryable and attempts <= self._config.retry.max_retries:
            delay = self._backoff(attempts)
            LOGGER.warning("Hashing %s failed (%s); retry %d in %.1fs", path, exc.detail, attempts, delay)
            self._schedule(delay, lambda: self.registration_queue.put(work))
            return
        self._forget_attempts(path=path)
        LOGGER.error("Giving up on %s: %s", path, exc)

    # ------------------------------------------------------------------ #
    # Classification stage                                               #
    # ------------------------------------------------------------------ #

    def _classification_loop(self) -> None:
        batch_size = self._classification.batch_size
        while True:
            work = self.classification_queue.get()
            if work is None:
                return
            batch = [work]
            while len(batch) < batch_size:
                extra = self.classification_queue.get(timeout=0)
                if extra is None:
                    break
                batch.append(extra)
            self._begin(len(batch))
            try:
                self._process_batch(batch)
            except Exception:  # noqa: BLE001 - one batch must not stop the worker
                LOGGER.exception("Classification batch failed unexpectedly")
            finally:
                self._end(len(batch))
                for _ in batch:
                    self.classification_queue.task_done()

    def _process_batch(self, batch: list[WorkItem]) -> None:
        to_classify: list[ClassificationRequest] = []
        to_organize: list[str] = []
        seen: set[str] = set()
        for work in batch:
            fingerprint = work.fingerprint
            if fingerprint is None or fingerprint in seen:
                continue
            seen.add(fingerprint)
            with self.locks.hold(fingerprint):
                item = self._repository.get_by_fingerprint(fingerprint)
                if item is None:
                    continue
                if item.status is FileStatus.RETRY:
                    target = FileStatus.READY_TO_MOVE if item.category else FileStatus.PROCESSING
                    transition(item, target, reason=f"retry {item.retry_count}")
                    item = self._repository.upsert(item)
                if item.status is FileStatus.PROCESSING:
                    to_classify.append(
                        ClassificationRequest(fingerprint=fingerprint, display_name=item.display_name)
                    )
                elif item.status is FileStatus.READY_TO_MOVE:
                    to_organize.append(fingerprint)
                else:
                    LOGGER.debug("Skipping %s in status %s", fingerprint[:12], item.status.value)

        if to_classify:
            outcome = self._classification.classify(to_classify)
            for fingerprint, decision in outcome.decisions.items():
                if self._apply_decision(fingerprint, decision):
                    to_organize.append(fingerprint)
            for fingerprint in outcome.unavailable:
                self._classifier_unavailable(fingerprint)
            for fingerprint, detail in outcome.errors.items():
                with self.locks.hold(fingerprint):
                    self._fail(fingerprint, ErrorKind.IO_TRANSIENT, detail)

        for fingerprint in to_organize:
            self._organize(fingerprint)

    def _apply_decision(self, fingerprint: str, decision: ClassificationDecision) -> bool:
        with self.locks.hold(fingerprint):
            item = self._repository.get_by_fingerprint(fingerprint)
            if item is None or item.status is not FileStatus.PROCESSING:
                return False
            self._forget_attempts(fingerprint)
            self._classification.apply(item, decision)
            data = {"category": decision.category, "confidence": f"{decision.confidence:.2f}"}
            if decision.decision is Decision.AUTO:
                transition(item, FileStatus.READY_TO_MOVE, reason="auto")
            item = self._repository.upsert(item)
            self._publish(EventKind.CLASSIFIED, item, detail=decision.decision.value, data=data)
            if decision.decision is not Decision.AUTO:
                LOGGER.info(
                    "%s awaits confirmation (%s, %.2f)", item.display_name, decision.decision.value, decision.confidence
                )
                self._publish(
                    EventKind.READY_FOR_CONFIRMATION,
                    item,
                    detail=decision.decision.value,
                    data={**data, "alternatives": ",".join(decision.alternatives)},
                )
                return False
            return True

    def _organize(self, fingerprint: str) -> None:
        with self.locks.hold(fingerprint):
            try:
                self._organization.organize(fingerprint)
            except PipelineError as exc:
                if exc.kind is ErrorKind.INVALID_TRANSITION:
                    LOGGER.debug("Not organizing %s: %s", fingerprint[:12], exc.detail)
                    return
                self._fail(fingerprint, exc.kind, exc.detail)

    def _classifier_unavailable(self, fingerprint: str) -> None:
        attempts = self._count_attempt(self._unavailable_attempts, fingerprint)
        delay = self._backoff(attempts)
        LOGGER.warning("Classifier unavailable; %s requeued in %.1fs", fingerprint[:12], delay)
        self._schedule(delay, lambda: self.submit_fingerprint(fingerprint))

    # ------------------------------------------------------------------ #
    # Failure handling                                                   #
    # ------------------------------------------------------------------ #

    def _fail(self, fingerprint: str, kind: ErrorKind, detail: str) -> None:
        """Record a failure and schedule a retry when the policy allows it.

        The caller holds the item's lock.
        """
        item = self._repository.get_by_fingerprint(fingerprint)
        if item is None or item.status.terminal:
            return
        record_failure(item, kind, detail)
        self._publish(EventKind.FAILED, item, detail=detail, data={"error_kind": kind.value})

        if kind.retryable and item.retry_count < self._config.retry.max_retries:
            item.retry_count += 1
            transition(item, FileStatus.RETRY, reason=kind.value)
            self._repository.upsert(item)
            delay = self._backoff(item.retry_count)
            LOGGER.warning(
                "%s failed (%s: %s); retry %d/%d in %.1fs",
                item.display_name,
                kind.value,
                detail,
                item.retry_count,
                self._config.retry.max_retries,
                delay,
            )
            self._schedule(delay, lambda: self.submit_fingerprint(fingerprint))
            return

        self._repository.upsert(item)
        self._forget_attempts(fingerprint, path=item.source_path)
        LOGGER.error("%s failed permanently (%s): %s", item.display_name, kind.value, detail)

    def _count_attempt(self, table: dict[str, int], key: str) -> int:
        with self._attempts_lock:
            table[key] = table.get(key, 0) + 1
            return table[key]

    def _forget_attempts(self, fingerprint: Optional[str] = None, *, path: Optional[Path] = None) -> None:
        with self._attempts_lock:
            if fingerprint is not None:
                self._unavailable_attempts.pop(fingerprint, None)
            if path is not None:
                self._path_attempts.pop(str(path), None)

    def _backoff(self, attempt: int) -> float:
        retry = self._config.retry
        return min(retry.backoff_seconds * (2 ** max(0, attempt - 1)), retry.max_backoff_seconds)

    def _schedule(self, delay: float, action: Callable[[], None]) -> None:
        if self._stop_event.is_set() or not self._workers:
            return

        def _fire() -> None:
            try:
                action()
            except QueueClosedError:
                LOGGER.debug("Retry dropped; coordinator is stopping")
            finally:
                with self._activity:
                    self._timers.discard(timer)
                    self._activity.notify_all()

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._activity:
            self._timers.add(timer)
        timer.start()

    # ------------------------------------------------------------------ #
    # Helpers                                                            #
    # ------------------------------------------------------------------ #

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._workers.append(thread)

    def _begin(self, count: int = 1) -> None:
        with self._activity:
            self._in_flight += count

    def _end(self, count: int = 1) -> None:
        with self._activity:
            self._in_flight -= count
            self._activity.notify_all()

    def _publish(
        self,
        kind: EventKind,
        item: TrackedItem,
        *,
        detail: Optional[str] = None,
        data: Optional[dict[str, str]] = None,
    ) -> None:
        self._publish_raw(kind, item.fingerprint, str(item.source_path), detail, data)

    def _publish_raw(
        self,
        kind: EventKind,
        fingerprint: Optional[str],
        path: Optional[str],
        detail: Optional[str],
        data: Optional[dict[str, str]],
    ) -> None:
        if self._events is None:
            return
        self._events.publish(
            LifecycleEvent(kind=kind, fingerprint=fingerprint, path=path, detail=detail, data=data or {})
        )


__all__ = ["WorkCoordinator"]
