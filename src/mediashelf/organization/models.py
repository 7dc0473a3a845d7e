"""Organization data models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from mediashelf.state.models import utcnow


class MovePhase(str, Enum):
    """Progress markers written to the transaction log, in order."""

    BEGUN = "begun"
    COPIED = "copied"
    VERIFIED = "verified"
    SOURCE_REMOVED = "source_removed"
    COMMITTED = "committed"
    # Closing marker written after a rollback; earlier lines keep the last
    # successful phase.
    ROLLED_BACK = "rolled_back"

    @property
    def closed(self) -> bool:
        """Return whether the transaction needs no recovery."""
        return self in (MovePhase.COMMITTED, MovePhase.ROLLED_BACK)

    @property
    def rank(self) -> int:
        """Return the position of the phase within a move."""
        return _PHASE_ORDER.index(self)

    def at_least(self, other: "MovePhase") -> bool:
        """Return whether this phase is ``other`` or later."""
        return self.rank >= other.rank


_PHASE_ORDER = [
    MovePhase.BEGUN,
    MovePhase.COPIED,
    MovePhase.VERIFIED,
    MovePhase.SOURCE_REMOVED,
    MovePhase.COMMITTED,
    MovePhase.ROLLED_BACK,
]


class TransactionLogEntry(BaseModel):
    """One line of the move transaction log.

    Attributes:
        txn_id: Identifier shared by every phase of one move.
        fingerprint: Item being moved.
        from_path: Source path.
        to_path: Final destination path.
        temp_path: Temporary copy used by cross-volume moves.
        phase: Last phase reached.
        timestamp: When the phase was reached.
    """

    txn_id: str
    fingerprint: str
    from_path: Path
    to_path: Path
    temp_path: Optional[Path] = None
    phase: MovePhase
    timestamp: datetime = Field(default_factory=utcnow)


class MoveOutcome(BaseModel):
    """Result of a completed move.

    Attributes:
        fingerprint: Item that was moved.
        source: Original path.
        destination: Final path.
        cross_volume: Whether the copy/verify path was used.
        conflict_applied: Whether the destination was altered by the conflict policy.
    """

    fingerprint: str
    source: Path
    destination: Path
    cross_volume: bool = False
    conflict_applied: bool = False


class RecoveryOutcome(BaseModel):
    """What crash recovery did with one unfinished transaction.

    Attributes:
        entry: Last log entry of the transaction.
        action: ``rolled_forward``, ``rolled_back`` or ``failed``.
        detail: Human-readable note.
    """

    entry: TransactionLogEntry
    action: str
    detail: str = ""

    @property
    def rolled_forward(self) -> bool:
        """Return whether the move was completed."""
        return self.action == "rolled_forward"


__all__ = ["MovePhase", "TransactionLogEntry", "MoveOutcome", "RecoveryOutcome"]
