"""State management errors."""

from mediashelf.errors import MediaShelfError


class StateError(MediaShelfError):
    """Base exception for state repository operations."""


class MissingStateError(StateError):
    """Raised when a requested item is not tracked."""
