"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

import errno
from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories that drive retry and escalation policy."""

    IO_TRANSIENT = "io_transient"
    PERMISSION = "permission"
    DUPLICATE = "duplicate"
    CLASSIFIER_UNAVAILABLE = "classifier_unavailable"
    MOVE_CONFLICT = "move_conflict"
    CORRUPTION = "corruption"
    INVALID_TRANSITION = "invalid_transition"
    NOT_CONFIRMABLE = "not_confirmable"

    @property
    def retryable(self) -> bool:
        """Return whether failures of this kind are retried automatically."""
        return self in (ErrorKind.IO_TRANSIENT, ErrorKind.CLASSIFIER_UNAVAILABLE)


_PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


class MediaShelfError(Exception):
    """Base exception for the package."""


class PipelineError(MediaShelfError):
    """Failure attributed to a single tracked item.

    Attributes:
        kind: Error category used to choose the recovery policy.
        detail: Human-readable description suitable for operators.
    """

    def __init__(self, kind: ErrorKind, detail: str) -> None:
        super().__init__(detail)
        self.kind = kind
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


class FingerprintError(PipelineError):
    """Raised when file content cannot be read for hashing."""


class ClassifierUnavailableError(PipelineError):
    """Raised when the external classifier cannot be reached or times out."""

    def __init__(self, detail: str = "classifier unavailable") -> None:
        super().__init__(ErrorKind.CLASSIFIER_UNAVAILABLE, detail)


class MoveError(PipelineError):
    """Raised when a move cannot be completed and has been rolled back."""


class InvalidTransitionError(PipelineError):
    """Raised when a lifecycle edge is not permitted."""

    def __init__(self, detail: str) -> None:
        super().__init__(ErrorKind.INVALID_TRANSITION, detail)


class NotConfirmableError(PipelineError):
    """Raised when a confirmation targets an item outside a confirmable status."""

    def __init__(self, detail: str) -> None:
        super().__init__(ErrorKind.NOT_CONFIRMABLE, detail)


def classify_os_error(exc: OSError) -> ErrorKind:
    """Map an ``OSError`` onto the retry taxonomy.

    Args:
        exc: Operating-system error raised by a filesystem call.

    Returns:
        ErrorKind: ``PERMISSION`` for access problems, ``IO_TRANSIENT`` otherwise.
    """
    if isinstance(exc, PermissionError) or exc.errno in _PERMISSION_ERRNOS:
        return ErrorKind.PERMISSION
    return ErrorKind.IO_TRANSIENT


__all__ = [
    "ErrorKind",
    "MediaShelfError",
    "PipelineError",
    "FingerprintError",
    "ClassifierUnavailableError",
    "MoveError",
    "InvalidTransitionError",
    "NotConfirmableError",
    "classify_os_error",
]
