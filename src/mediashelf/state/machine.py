"""Lifecycle state machine for tracked items."""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from mediashelf.errors import ErrorKind, InvalidTransitionError

from .models import FileStatus, TrackedItem, utcnow

LOGGER = logging.getLogger(__name__)

_NON_TERMINAL = frozenset(status for status in FileStatus if not status.terminal)

TRANSITIONS: Mapping[FileStatus, frozenset[FileStatus]] = {
    FileStatus.NEW: frozenset({FileStatus.PROCESSING}),
    FileStatus.PROCESSING: frozenset({FileStatus.CLASSIFIED, FileStatus.ERROR}),
    FileStatus.CLASSIFIED: frozenset({FileStatus.READY_TO_MOVE, FileStatus.ERROR}),
    FileStatus.READY_TO_MOVE: frozenset({FileStatus.MOVING, FileStatus.ERROR}),
    FileStatus.MOVING: frozenset({FileStatus.MOVED, FileStatus.ERROR}),
    # A confirmed item whose move failed resumes at ReadyToMove instead of
    # repeating classification.
    FileStatus.ERROR: frozenset({FileStatus.RETRY}),
    FileStatus.RETRY: frozenset({FileStatus.PROCESSING, FileStatus.READY_TO_MOVE}),
    FileStatus.MOVED: frozenset(),
    FileStatus.IGNORED: frozenset(),
}


def can_transition(current: FileStatus, target: FileStatus) -> bool:
    """Return whether ``current → target`` is a permitted automatic edge."""
    if target is FileStatus.IGNORED:
        return current in _NON_TERMINAL
    return target in TRANSITIONS[current]


def transition(item: TrackedItem, target: FileStatus, *, reason: Optional[str] = None) -> TrackedItem:
    """Move ``item`` to ``target`` if the edge is allowed.

    Args:
        item: Item to update in place.
        target: Desired status.
        reason: Optional note included in the debug log.

    Returns:
        TrackedItem: The same item, for chaining.

    Raises:
        InvalidTransitionError: If the edge is not part of the lifecycle.
    """
    current = item.status
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"{item.fingerprint[:12]}: {current.value} -> {target.value} is not allowed"
        )
    item.status = target
    item.audit.touch()
    LOGGER.debug(
        "%s: %s -> %s%s",
        item.fingerprint[:12],
        current.value,
        target.value,
        f" ({reason})" if reason else "",
    )
    return item


def record_failure(item: TrackedItem, kind: ErrorKind, detail: str) -> TrackedItem:
    """Transition ``item`` to ``Error`` and store the failure details."""
    if item.status is not FileStatus.ERROR:
        transition(item, FileStatus.ERROR, reason=kind.value)
    item.error_kind = kind
    item.error_detail = detail
    item.last_error_at = utcnow()
    return item


def reset(item: TrackedItem) -> TrackedItem:
    """Explicit operator reset back to ``New``, clearing derived fields.

    This is the only way to leave a terminal status.
    """
    previous = item.status
    if item.moved_to_path is not None:
        item.source_path = item.moved_to_path
        item.moved_to_path = None
        item.moved_at = None
    item.status = FileStatus.NEW
    item.suggested_category = None
    item.category = None
    item.confidence = 0.0
    item.alternative_categories = []
    item.decision = None
    item.target_path = None
    item.retry_count = 0
    item.classified_at = None
    item.clear_error()
    item.audit.touch()
    LOGGER.info("%s: reset from %s", item.fingerprint[:12], previous.value)
    return item


__all__ = ["TRANSITIONS", "can_transition", "transition", "record_failure", "reset"]
