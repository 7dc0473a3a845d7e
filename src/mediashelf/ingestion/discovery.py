"""File discovery and candidate validation."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from mediashelf.config.models import DiscoverySettings

from .models import PendingFile, ValidationOutcome

LOGGER = logging.getLogger(__name__)


def _is_hidden(path: Path) -> bool:
    return any(part.startswith(".") for part in path.parts if part not in (".", ".."))


class CandidateValidator:
    """Apply size, extension and exclusion rules to discovered files."""

    def __init__(
        self,
        *,
        extensions: Iterable[str],
        exclude_patterns: Iterable[str],
        min_size_bytes: int,
    ) -> None:
        self.extensions = {extension.lower() for extension in extensions}
        self.exclude_patterns = [re.compile(pattern, re.IGNORECASE) for pattern in exclude_patterns]
        self.min_size_bytes = min_size_bytes

    @classmethod
    def from_settings(cls, settings: DiscoverySettings) -> "CandidateValidator":
        """Build a validator from discovery settings."""
        return cls(
            extensions=settings.extensions,
            exclude_patterns=settings.exclude_patterns,
            min_size_bytes=int(settings.min_file_size_mb * 1024 * 1024),
        )

    def validate(self, pending: PendingFile) -> ValidationOutcome:
        """Check ``pending`` against every rule, first failure wins."""
        path = pending.path
        if self.extensions and path.suffix.lower() not in self.extensions:
            return ValidationOutcome(path=path, accepted=False, reason=f"extension {path.suffix!r} not allowed")
        for pattern in self.exclude_patterns:
            if pattern.search(str(path)):
                return ValidationOutcome(
                    path=path, accepted=False, reason=f"matches exclusion {pattern.pattern!r}"
                )
        if pending.size_bytes < self.min_size_bytes:
            return ValidationOutcome(
                path=path,
                accepted=False,
                reason=f"size {pending.size_bytes} below minimum {self.min_size_bytes}",
            )
        return ValidationOutcome(path=path, accepted=True)


class DirectoryScanner:
    """Discover files within one or more directory trees."""

    def __init__(
        self,
        *,
        recursive: bool,
        include_hidden: bool = False,
        skip_dirs: Sequence[Path] = (),
    ) -> None:
        self.recursive = recursive
        self.include_hidden = include_hidden
        self.skip_dirs = [Path(directory).expanduser().absolute() for directory in skip_dirs]

    def scan(self, root: Path) -> Iterator[PendingFile]:
        """Yield regular files under ``root``."""
        root = root.expanduser().absolute()
        if not root.exists():
            LOGGER.warning("Watch root %s does not exist", root)
            return

        for path in self._iter_paths(root):
            pending = self.describe(path, root)
            if pending is not None:
                yield pending

    def describe(self, path: Path, root: Path | None = None) -> PendingFile | None:
        """Return a ``PendingFile`` for ``path`` or ``None`` when it is not eligible."""
        if any(directory == path or directory in path.parents for directory in self.skip_dirs):
            return None
        try:
            if not path.is_file():
                return None
            stat = path.stat()
        except OSError:
            return None
        if not self.include_hidden:
            relative = path
            if root is not None:
                try:
                    relative = path.relative_to(root)
                except ValueError:
                    relative = Path(path.name)
            if _is_hidden(relative):
                return None
        return PendingFile(
            path=path,
            size_bytes=stat.st_size,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def _iter_paths(self, root: Path) -> Iterable[Path]:
        if root.is_file():
            yield root
            return

        if self.recursive:
            yield from root.rglob("*")
        else:
            yield from root.iterdir()


__all__ = ["CandidateValidator", "DirectoryScanner"]
