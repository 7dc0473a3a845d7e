"""Queue payloads exchanged between pipeline stages."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from mediashelf.state.models import utcnow


class Priority(str, Enum):
    """Queue lane for a work item."""

    NORMAL = "normal"
    USER = "user"


class WorkItem(BaseModel):
    """Ephemeral unit of work.

    Registration work carries ``source_path``; classification work carries
    ``fingerprint``.

    Attributes:
        fingerprint: Item identity once hashed.
        source_path: Path to hash when the fingerprint is not known yet.
        priority: Lane the item is queued on.
        enqueued_at: Time the item was created.
    """

    model_config = ConfigDict(frozen=True)

    fingerprint: Optional[str] = None
    source_path: Optional[Path] = None
    priority: Priority = Priority.NORMAL
    enqueued_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _require_identity(self) -> "WorkItem":
        if self.fingerprint is None and self.source_path is None:
            raise ValueError("WorkItem needs a fingerprint or a source_path")
        return self

    @property
    def key(self) -> str:
        """Return a label for logs."""
        if self.fingerprint:
            return self.fingerprint[:12]
        return str(self.source_path)


__all__ = ["Priority", "WorkItem"]
