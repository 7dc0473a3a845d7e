"""Content fingerprinting."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import BinaryIO

from mediashelf.errors import FingerprintError, classify_os_error

DEFAULT_CHUNK_SIZE = 1024 * 1024


class HashComputer:
    """Compute SHA-256 content digests with a fixed-size streaming buffer."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size

    def compute(self, path: Path) -> str:
        """Return the hex digest of the file at ``path``.

        Raises:
            FingerprintError: If the file cannot be opened or read.
        """
        try:
            with Path(path).open("rb") as stream:
                return self.compute_stream(stream)
        except OSError as exc:
            raise FingerprintError(classify_os_error(exc), f"{path}: {exc}") from exc

    def compute_stream(self, stream: BinaryIO) -> str:
        """Return the hex digest of everything remaining in ``stream``."""
        digest = hashlib.sha256()
        try:
            for chunk in iter(lambda: stream.read(self.chunk_size), b""):
                digest.update(chunk)
        except OSError as exc:
            name = getattr(stream, "name", "<stream>")
            raise FingerprintError(classify_os_error(exc), f"{name}: {exc}") from exc
        return digest.hexdigest()
