"""Wire every pipeline component from one configuration."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from mediashelf.classification import CategoryRegistry, ClassificationEngine, Classifier, HeuristicClassifier
from mediashelf.config import require_runnable
from mediashelf.config.models import MediaShelfConfig
from mediashelf.coordinator import KeyedLock, WorkCoordinator
from mediashelf.events import EventBus, LifecycleEvent
from mediashelf.history import ProcessingHistory
from mediashelf.ingestion import HashComputer
from mediashelf.organization import (
    MoveExecutor,
    OrganizationEngine,
    PathGenerator,
    RecoveryOutcome,
    TransactionLog,
)
from mediashelf.state import StateRepository
from mediashelf.state.models import FileStatus, TrackedItem
from mediashelf.watch import DiscoveryService

LOGGER = logging.getLogger(__name__)


class MediaShelf:
    """Facade owning the repository, engines, coordinator and discovery.

    Read-only operations work with any configuration; anything that can move
    files first checks that the conflict policy was chosen explicitly.
    """

    def __init__(
        self,
        config: MediaShelfConfig,
        *,
        classifier: Optional[Classifier] = None,
        roots: Optional[Iterable[Path]] = None,
        force_copy: bool = False,
    ) -> None:
        """Build every component.

        Args:
            config: Immutable configuration shared by all components.
            classifier: Classifier capability; defaults to the filename heuristic.
            roots: Override for the configured watch roots.
            force_copy: Always use the copy/verify move path.
        """
        self.config = config
        self.state_dir = config.state.directory.expanduser()
        self.library_root = config.organization.library_root.expanduser()

        self.repository = StateRepository(self.state_dir)
        self.registry = CategoryRegistry()
        for item in self.repository.query_by_status(FileStatus.MOVED):
            if item.category:
                self.registry.register(item.category)
                self.registry.record_usage(item.category)

        self.events = EventBus()
        self.history = ProcessingHistory(self.state_dir)
        self.history.attach(self.events)
        self.locks = KeyedLock()
        hasher = HashComputer(chunk_size=config.organization.copy_buffer_kb * 1024)

        self.classification = ClassificationEngine(
            classifier or HeuristicClassifier(self.registry),
            config.classification,
            self.registry,
            max_concurrent_calls=config.queues.classification_workers,
        )
        self.journal = TransactionLog.in_directory(self.state_dir)
        self.executor = MoveExecutor(
            self.journal,
            hasher=hasher,
            buffer_size=config.organization.copy_buffer_kb * 1024,
            timeout_seconds=config.organization.move_timeout_seconds,
            force_copy=force_copy,
        )
        self.paths = PathGenerator(
            self.library_root,
            config.organization.path_template,
            # Moves only run after require_runnable, so the fallback is never used.
            config.organization.conflict_resolution or "skip",
        )
        self.organization = OrganizationEngine(
            self.repository, self.executor, self.paths, self.registry, events=self.events
        )
        self.coordinator = WorkCoordinator(
            config,
            self.repository,
            self.classification,
            self.organization,
            self.registry,
            hasher=hasher,
            events=self.events,
            locks=self.locks,
        )
        self.discovery = DiscoveryService(
            config.discovery,
            self.coordinator.submit_path,
            self.repository,
            roots=roots,
            skip_dirs=[self.library_root, self.state_dir],
            idle_check=lambda: len(self.coordinator.registration_queue) == 0,
        )
        self._started = False

    # ------------------------------------------------------------------ #
    # Lifecycle                                                          #
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Recover interrupted moves, resume unfinished items and start watching."""
        require_runnable(self.config)
        self.recover()
        self.coordinator.start(resume=True)
        self.discovery.start()
        self._started = True
        self.discovery.scan_once()

    def stop(self) -> None:
        """Stop discovery and workers; unfinished items resume on the next start."""
        if self._started:
            self.discovery.stop()
        self.coordinator.stop()
        self.classification.close()
        self.events.close()
        self._started = False

    def scan_once(self, *, timeout: float = 300.0) -> dict[str, Any]:
        """Process everything currently under the watch roots, then stop.

        Returns:
            dict[str, Any]: Number of submitted paths, whether the run finished
            within ``timeout``, and item counts per status.
        """
        require_runnable(self.config)
        self.recover()
        self.coordinator.start(resume=True)
        try:
            submitted = self.discovery.scan_once(respect_quiet_window=False)
            finished = self.coordinator.wait_idle(timeout)
        finally:
            self.coordinator.stop()
        self.events.flush()
        return {"submitted": submitted, "finished": finished, "items": self.repository.stats()}

    def __enter__(self) -> "MediaShelf":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # ------------------------------------------------------------------ #
    # Operator actions                                                   #
    # ------------------------------------------------------------------ #

    def confirm(self, fingerprint: str, category: str) -> TrackedItem:
        """Confirm a category; the item is moved right away when no workers run."""
        require_runnable(self.config)
        item = self.coordinator.confirm(fingerprint, category)
        if not self.coordinator.running and item.status is FileStatus.READY_TO_MOVE:
            item = self.coordinator.process_now(fingerprint)
        return item

    def ignore(self, fingerprint: str) -> TrackedItem:
        """Stop processing an item for good."""
        return self.coordinator.ignore(fingerprint)

    def reset(self, fingerprint: str) -> TrackedItem:
        """Reset an item to ``New``; it is picked up again on the next run."""
        return self.coordinator.reset(fingerprint)

    def reprocess(self, fingerprint: str) -> TrackedItem:
        """Retry a failed item with a fresh retry budget."""
        item = self.coordinator.reprocess(fingerprint)
        if not self.coordinator.running:
            require_runnable(self.config)
            item = self.coordinator.process_now(fingerprint)
        return item

    def recover(self) -> list[RecoveryOutcome]:
        """Finish or roll back moves interrupted by a crash."""
        require_runnable(self.config)
        return self.organization.recover()

    # ------------------------------------------------------------------ #
    # Queries                                                            #
    # ------------------------------------------------------------------ #

    def items(self, *statuses: FileStatus) -> list[TrackedItem]:
        """Return tracked items, optionally restricted to ``statuses``."""
        if statuses:
            return self.repository.query_by_status(*statuses)
        return self.repository.all_items()

    def stats(self) -> dict[str, Any]:
        """Return item counts, queue depths and dropped event count."""
        return {
            "items": self.repository.stats(),
            "queues": self.coordinator.stats(),
            "events_dropped": self.events.dropped,
        }

    def item_history(self, fingerprint: str) -> list[LifecycleEvent]:
        """Return the lifecycle events recorded for ``fingerprint``, oldest first."""
        self.events.flush()
        return self.history.read(fingerprint)

    def subscribe(self, callback: Callable[[LifecycleEvent], None]) -> Callable[[], None]:
        """Register a lifecycle event subscriber."""
        return self.events.subscribe(callback)


__all__ = ["MediaShelf"]
