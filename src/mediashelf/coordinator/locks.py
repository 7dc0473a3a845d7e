"""Per-fingerprint mutual exclusion."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional


@dataclass
class _Entry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """Hand out one lock per key, discarding entries nobody references."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str, *, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for ``key`` for the duration of the block.

        Raises:
            TimeoutError: If the lock cannot be acquired within ``timeout``.
        """
        with self._guard:
            entry = self._entries.setdefault(key, _Entry())
            entry.holders += 1
        acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
        try:
            if not acquired:
                raise TimeoutError(f"lock for {key[:12]} not acquired within {timeout}s")
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def locked(self, key: str) -> bool:
        """Return whether some thread currently holds ``key``."""
        with self._guard:
            entry = self._entries.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


__all__ = ["KeyedLock"]
