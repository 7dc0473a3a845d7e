"""State data models for tracked files."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from mediashelf.errors import ErrorKind


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


class FileStatus(str, Enum):
    """Lifecycle status of a tracked item.

    ``New → Processing → Classified → ReadyToMove → Moving → Moved`` is the happy
    path; ``Moved`` and ``Ignored`` are terminal.
    """

    NEW = "new"
    PROCESSING = "processing"
    CLASSIFIED = "classified"
    READY_TO_MOVE = "ready_to_move"
    MOVING = "moving"
    MOVED = "moved"
    ERROR = "error"
    RETRY = "retry"
    IGNORED = "ignored"

    @property
    def terminal(self) -> bool:
        """Return whether no automatic transition leaves this status."""
        return self in (FileStatus.MOVED, FileStatus.IGNORED)


class Decision(str, Enum):
    """Outcome of the confidence policy."""

    AUTO = "auto"
    SUGGEST = "suggest"
    MANUAL = "manual"


class AuditInfo(BaseModel):
    """Audit values embedded in every persisted entity."""

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    active: bool = True

    def touch(self) -> None:
        """Refresh the modification timestamp."""
        self.updated_at = utcnow()


class TrackedItem(BaseModel):
    """One tracked file, identified by its content fingerprint.

    Attributes:
        fingerprint: Content digest; immutable primary identity.
        source_path: Where the file currently lives outside the library.
        display_name: File name as discovered.
        size_bytes: File size at discovery time.
        status: Current lifecycle status.
        suggested_category: Category proposed by the classifier.
        category: Confirmed category used for organization.
        confidence: Classifier confidence for ``suggested_category``.
        alternative_categories: Runner-up categories offered for confirmation.
        decision: Confidence policy outcome.
        target_path: Destination chosen by the organization engine.
        moved_to_path: Where the file ended up after a completed move.
        metadata: Structural markers extracted at discovery (season, episode...).
        error_kind: Category of the last failure.
        error_detail: Human-readable detail of the last failure.
        retry_count: Transient failures consumed so far.
        classified_at: When classification completed.
        moved_at: When the move committed.
        last_error_at: When the last failure was recorded.
        audit: Creation/modification/soft-delete values.
    """

    fingerprint: str
    source_path: Path
    display_name: str
    size_bytes: int = 0
    status: FileStatus = FileStatus.NEW
    suggested_category: Optional[str] = None
    category: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    alternative_categories: List[str] = Field(default_factory=list)
    decision: Optional[Decision] = None
    target_path: Optional[Path] = None
    moved_to_path: Optional[Path] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None
    retry_count: int = 0
    classified_at: Optional[datetime] = None
    moved_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    audit: AuditInfo = Field(default_factory=AuditInfo)

    @property
    def awaiting_confirmation(self) -> bool:
        """Return whether the item waits for an external ``confirm`` call."""
        return self.status is FileStatus.CLASSIFIED and self.decision is not Decision.AUTO

    def clear_error(self) -> None:
        """Drop failure details after a successful step."""
        self.error_kind = None
        self.error_detail = None


class StoreSnapshot(BaseModel):
    """On-disk representation of the item store."""

    items: Dict[str, TrackedItem] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


__all__ = ["utcnow", "FileStatus", "Decision", "AuditInfo", "TrackedItem", "StoreSnapshot"]
