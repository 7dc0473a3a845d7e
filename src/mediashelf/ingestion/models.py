"""Ingestion data models."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel


class PendingFile(BaseModel):
    """A file observed on disk that has not been validated yet.

    Attributes:
        path: Absolute path of the file.
        size_bytes: Size reported by ``stat``.
        modified_at: Modification timestamp reported by ``stat``.
    """

    path: Path
    size_bytes: int
    modified_at: Optional[datetime] = None


class ValidationOutcome(BaseModel):
    """Result of checking a candidate against discovery rules.

    Attributes:
        path: Candidate path.
        accepted: Whether the candidate may be queued.
        reason: Why the candidate was rejected.
    """

    path: Path
    accepted: bool
    reason: Optional[str] = None


__all__ = ["PendingFile", "ValidationOutcome"]
