"""State persistence helpers for tracked items."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import defaultdict
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from .errors import MissingStateError, StateError
from .models import AuditInfo, Decision, FileStatus, StoreSnapshot, TrackedItem, utcnow

LOGGER = logging.getLogger(__name__)

ITEMS_FILENAME = "items.json"


class StateRepository:
    """Key-value store of tracked items keyed by fingerprint.

    Items are held in memory with a status index and a source-path index and are
    written through to ``items.json`` inside ``directory`` on every upsert. When
    ``directory`` is ``None`` the store lives in memory only. Callers always
    receive copies; changes become visible through :meth:`upsert`.
    """

    def __init__(self, directory: Path | None = None) -> None:
        """Initialize the repository.

        Args:
            directory: State directory; ``None`` keeps the store in memory.
        """
        self._directory = directory.expanduser() if directory is not None else None
        self._lock = threading.RLock()
        self._items: dict[str, TrackedItem] = {}
        self._by_status: dict[FileStatus, set[str]] = defaultdict(set)
        self._by_path: dict[str, str] = {}
        self._created_at = utcnow()
        if self._directory is not None:
            self._load()

    @property
    def directory(self) -> Path | None:
        """Return the directory holding persisted state."""
        return self._directory

    def get_by_fingerprint(self, fingerprint: str) -> Optional[TrackedItem]:
        """Return a copy of the item for ``fingerprint`` or ``None``."""
        with self._lock:
            item = self._items.get(fingerprint)
            return item.model_copy(deep=True) if item is not None else None

    def require(self, fingerprint: str) -> TrackedItem:
        """Return the item for ``fingerprint``.

        Raises:
            MissingStateError: If the fingerprint is not tracked.
        """
        item = self.get_by_fingerprint(fingerprint)
        if item is None:
            raise MissingStateError(f"No tracked item with fingerprint {fingerprint}")
        return item

    def upsert(self, item: TrackedItem) -> TrackedItem:
        """Insert or replace ``item`` and persist the store.

        Args:
            item: Item to store; a copy is kept.

        Returns:
            TrackedItem: The stored copy's snapshot.
        """
        stored = item.model_copy(deep=True)
        stored.audit.touch()
        with self._lock:
            previous = self._items.get(stored.fingerprint)
            if previous is not None:
                self._by_status[previous.status].discard(previous.fingerprint)
                previous_key = _path_key(previous.source_path)
                if self._by_path.get(previous_key) == previous.fingerprint:
                    del self._by_path[previous_key]
            self._index(stored)
            self._save()
        return stored.model_copy(deep=True)

    def query_by_status(self, *statuses: FileStatus) -> list[TrackedItem]:
        """Return copies of items in any of ``statuses``, oldest first."""
        with self._lock:
            selected = [
                self._items[fingerprint]
                for status in statuses
                for fingerprint in self._by_status.get(status, ())
            ]
            selected.sort(key=lambda item: item.audit.created_at)
            return [item.model_copy(deep=True) for item in selected]

    def find_by_source_path(self, path: Path) -> Optional[TrackedItem]:
        """Return the item last seen at ``path``, if any."""
        with self._lock:
            fingerprint = self._by_path.get(_path_key(path))
            if fingerprint is None:
                return None
            return self._items[fingerprint].model_copy(deep=True)

    def all_items(self) -> list[TrackedItem]:
        """Return copies of every tracked item, oldest first."""
        return self.query_by_status(*FileStatus)

    def stats(self) -> dict[str, int]:
        """Return the number of items per status."""
        with self._lock:
            return {status.value: len(self._by_status.get(status, ())) for status in FileStatus}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _index(self, item: TrackedItem) -> None:
        self._items[item.fingerprint] = item
        self._by_status[item.status].add(item.fingerprint)
        self._by_path[_path_key(item.source_path)] = item.fingerprint

    def _load(self) -> None:
        path = self._items_path()
        if path is None or not path.exists():
            return
        try:
            snapshot = StoreSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValidationError, ValueError) as exc:
            raise StateError(f"Invalid item store at {path}: {exc}") from exc
        self._created_at = snapshot.created_at
        for item in snapshot.items.values():
            self._index(item)
        LOGGER.debug("Loaded %d tracked items from %s", len(self._items), path)

    def _save(self) -> None:
        path = self._items_path()
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        snapshot = StoreSnapshot(items=self._items, created_at=self._created_at, updated_at=utcnow())
        payload = snapshot.model_dump(mode="json")
        temp = path.with_suffix(".json.tmp")
        with temp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp, path)

    def _items_path(self) -> Path | None:
        if self._directory is None:
            return None
        return self._directory / ITEMS_FILENAME


def _path_key(path: Path) -> str:
    return str(Path(path).expanduser().absolute())


def iter_resumable(repository: StateRepository) -> Iterable[TrackedItem]:
    """Yield items a restarted pipeline must pick up again."""
    yield from repository.query_by_status(
        FileStatus.NEW,
        FileStatus.PROCESSING,
        FileStatus.RETRY,
        FileStatus.READY_TO_MOVE,
    )


__all__ = [
    "StateRepository",
    "ITEMS_FILENAME",
    "iter_resumable",
    "AuditInfo",
    "Decision",
    "FileStatus",
    "TrackedItem",
    "StateError",
    "MissingStateError",
]
