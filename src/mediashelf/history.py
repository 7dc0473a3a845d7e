"""Per-item processing history built from lifecycle events."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from mediashelf.events import EventBus, LifecycleEvent

LOGGER = logging.getLogger(__name__)

HISTORY_DIRNAME = "history"


class ProcessingHistory:
    """Append every lifecycle event of an item to its own JSON Lines file.

    Files live at ``<state_dir>/history/<fingerprint>.jsonl`` and survive
    restarts, so an item's full path through the pipeline (discovery,
    classification, failures, retries, the final move) can be reviewed later.
    Events without a fingerprint, such as hashing failures, are not recorded.
    """

    def __init__(self, state_dir: Path, *, max_entries: Optional[int] = 200) -> None:
        """Initialize the history store.

        Args:
            state_dir: State directory holding the ``history`` folder.
            max_entries: Entries kept per item; older ones are dropped.
        """
        self.directory = Path(state_dir).expanduser() / HISTORY_DIRNAME
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def attach(self, events: EventBus) -> Callable[[], None]:
        """Subscribe to ``events`` and return the unsubscribe callable."""
        return events.subscribe(self.record)

    def record(self, event: LifecycleEvent) -> None:
        """Append ``event`` to its item's history."""
        if not event.fingerprint:
            return
        path = self._path_for(event.fingerprint)
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(event.model_dump_json() + "\n")
                if self._max_entries is not None:
                    self._trim(path)
            except OSError as exc:
                LOGGER.error("Unable to record history for %s: %s", event.fingerprint[:12], exc)

    def read(self, fingerprint: str) -> list[LifecycleEvent]:
        """Return the recorded events of ``fingerprint``, oldest first."""
        path = self._path_for(fingerprint)
        if not path.exists():
            return []
        entries: list[LifecycleEvent] = []
        with self._lock, path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(LifecycleEvent.model_validate_json(line))
                except (ValidationError, ValueError):
                    LOGGER.warning("Skipping unreadable history line in %s", path)
        return entries

    def _trim(self, path: Path) -> None:
        lines = path.read_text(encoding="utf-8").splitlines()
        assert self._max_entries is not None
        if len(lines) <= self._max_entries:
            return
        path.write_text("\n".join(lines[-self._max_entries :]) + "\n", encoding="utf-8")

    def _path_for(self, fingerprint: str) -> Path:
        return self.directory / f"{fingerprint}.jsonl"


__all__ = ["ProcessingHistory", "HISTORY_DIRNAME"]
