"""Custom exceptions for configuration management."""

from mediashelf.errors import MediaShelfError


class ConfigError(MediaShelfError):
    """Raised when configuration data cannot be processed."""
