"""Drive confirmed items through the move lifecycle."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from mediashelf.classification.categories import CategoryRegistry
from mediashelf.errors import ErrorKind, InvalidTransitionError, MoveError
from mediashelf.events import EventBus, EventKind, LifecycleEvent
from mediashelf.state import StateRepository
from mediashelf.state.machine import record_failure, transition
from mediashelf.state.models import FileStatus, TrackedItem, utcnow

from .executor import MoveExecutor
from .models import MoveOutcome, MovePhase, RecoveryOutcome, TransactionLogEntry
from .paths import PathGenerator

LOGGER = logging.getLogger(__name__)

_ROLLED_BACK_DETAIL = "interrupted move rolled back"
# Fresh names tried when a rename-policy target is taken mid-move.
_RENAME_ATTEMPTS = 3
_RESUMABLE_MOVE_STATES = frozenset(
    {FileStatus.ERROR, FileStatus.RETRY, FileStatus.READY_TO_MOVE, FileStatus.MOVING}
)


class OrganizationEngine:
    """Generate target paths, move files and record the outcome.

    Callers must hold the item's keyed lock around :meth:`organize`.
    """

    def __init__(
        self,
        repository: StateRepository,
        executor: MoveExecutor,
        paths: PathGenerator,
        registry: CategoryRegistry,
        *,
        events: Optional[EventBus] = None,
    ) -> None:
        self._repository = repository
        self._executor = executor
        self._paths = paths
        self._registry = registry
        self._events = events

    def organize(self, fingerprint: str) -> TrackedItem:
        """Move a ``ReadyToMove`` item into the library.

        Returns:
            TrackedItem: The item in ``Moved`` status.

        Raises:
            InvalidTransitionError: If the item is not ``ReadyToMove``.
            MoveError: If the move failed; the item is persisted in ``Error``.
        """
        item = self._repository.require(fingerprint)
        if item.status is not FileStatus.READY_TO_MOVE:
            raise InvalidTransitionError(
                f"{fingerprint[:12]} is {item.status.value}, expected {FileStatus.READY_TO_MOVE.value}"
            )
        if not item.category:
            raise InvalidTransitionError(f"{fingerprint[:12]} has no confirmed category")

        try:
            target, renamed = self._plan_target(item)
        except MoveError as exc:
            self._fail(item, exc)
            raise

        item.target_path = target
        transition(item, FileStatus.MOVING, reason="renamed" if renamed else None)
        item = self._repository.upsert(item)

        attempts = _RENAME_ATTEMPTS if self._paths.conflict_policy == "rename" else 1
        for attempt in range(1, attempts + 1):
            try:
                outcome = self._executor.move(
                    item.fingerprint,
                    item.source_path,
                    target,
                    overwrite=self._paths.conflict_policy == "overwrite",
                )
                break
            except MoveError as exc:
                if exc.kind is not ErrorKind.MOVE_CONFLICT or attempt == attempts:
                    self._fail(item, exc)
                    raise
                LOGGER.info("%s: %s was taken during the move; choosing another name", item.fingerprint[:12], target)
                try:
                    target, _ = self._plan_target(item)
                except MoveError as plan_exc:
                    self._fail(item, plan_exc)
                    raise
                item.target_path = target
                item = self._repository.upsert(item)

        item = self._mark_moved(item, outcome)
        LOGGER.info("Moved %s to %s", item.display_name, outcome.destination)
        return item

    def _plan_target(self, item: TrackedItem) -> tuple[Path, bool]:
        assert item.category is not None
        return self._paths.target_for(
            category=item.category,
            filename=item.display_name,
            fingerprint=item.fingerprint,
            metadata=item.metadata,
            source=item.source_path,
        )

    def recover(self) -> list[RecoveryOutcome]:
        """Replay the transaction log and reconcile item states with it.

        Items still ``Moving`` without an open transaction crashed either
        after the move committed or before it was journaled; the filesystem
        decides which.
        """
        committed = {
            entry.fingerprint: entry
            for entry in self._executor.journal.entries()
            if entry.phase is MovePhase.COMMITTED
        }
        outcomes = self._executor.recover()
        for outcome in outcomes:
            item = self._repository.get_by_fingerprint(outcome.entry.fingerprint)
            if item is None:
                LOGGER.warning("Recovered move for untracked fingerprint %s", outcome.entry.fingerprint[:12])
                continue
            if outcome.rolled_forward:
                if item.status not in _RESUMABLE_MOVE_STATES:
                    LOGGER.warning(
                        "%s: move completed but item is %s; leaving it unchanged",
                        item.fingerprint[:12],
                        item.status.value,
                    )
                    continue
                self._walk_to_moving(item)
                self._mark_moved(
                    item,
                    MoveOutcome(
                        fingerprint=item.fingerprint,
                        source=outcome.entry.from_path,
                        destination=outcome.entry.to_path,
                    ),
                )
            elif item.status in (FileStatus.MOVING, FileStatus.READY_TO_MOVE):
                detail = _ROLLED_BACK_DETAIL if outcome.action == "rolled_back" else outcome.detail
                self._record_interrupted(item, detail)

        handled = {outcome.entry.fingerprint for outcome in outcomes}
        for item in self._repository.query_by_status(FileStatus.MOVING):
            if item.fingerprint not in handled:
                self._settle_stranded(item, committed.get(item.fingerprint))
        self._executor.journal.compact()
        return outcomes

    def _settle_stranded(self, item: TrackedItem, entry: Optional[TransactionLogEntry]) -> None:
        source = entry.from_path if entry is not None else item.source_path
        target = entry.to_path if entry is not None else item.target_path
        if target is not None and target.exists() and not source.exists():
            LOGGER.info("%s: move to %s had committed before the crash", item.fingerprint[:12], target)
            self._mark_moved(item, MoveOutcome(fingerprint=item.fingerprint, source=source, destination=target))
            return
        if source.exists():
            detail = _ROLLED_BACK_DETAIL
        else:
            detail = f"file missing after interrupted move: {source}"
        self._record_interrupted(item, detail)

    def _record_interrupted(self, item: TrackedItem, detail: str) -> None:
        record_failure(item, ErrorKind.IO_TRANSIENT, detail)
        self._repository.upsert(item)
        LOGGER.warning("%s: %s", item.fingerprint[:12], detail)
        self._publish(EventKind.FAILED, item, detail=detail)

    def _mark_moved(self, item: TrackedItem, outcome: MoveOutcome) -> TrackedItem:
        item.moved_to_path = outcome.destination
        item.target_path = outcome.destination
        item.moved_at = utcnow()
        item.clear_error()
        transition(item, FileStatus.MOVED)
        if item.category:
            self._registry.record_usage(item.category)
        stored = self._repository.upsert(item)
        self._publish(
            EventKind.MOVED,
            stored,
            detail=str(outcome.destination),
            data={"category": stored.category or "", "from": str(outcome.source)},
        )
        return stored

    def _walk_to_moving(self, item: TrackedItem) -> None:
        if item.status is FileStatus.ERROR:
            transition(item, FileStatus.RETRY, reason="recovery")
        if item.status is FileStatus.RETRY:
            transition(item, FileStatus.READY_TO_MOVE, reason="recovery")
        if item.status is FileStatus.READY_TO_MOVE:
            transition(item, FileStatus.MOVING, reason="recovery")

    def _fail(self, item: TrackedItem, exc: MoveError) -> None:
        record_failure(item, exc.kind, exc.detail)
        self._repository.upsert(item)
        LOGGER.warning("Move of %s failed (%s): %s", item.display_name, exc.kind.value, exc.detail)

    def _publish(
        self,
        kind: EventKind,
        item: TrackedItem,
        *,
        detail: Optional[str] = None,
        data: Optional[dict[str, str]] = None,
    ) -> None:
        if self._events is None:
            return
        self._events.publish(
            LifecycleEvent(
                kind=kind,
                fingerprint=item.fingerprint,
                path=str(item.source_path),
                detail=detail,
                data=data or {},
            )
        )


__all__ = ["OrganizationEngine"]
