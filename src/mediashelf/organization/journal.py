"""Append-only move transaction log."""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from mediashelf.state.errors import StateError
from mediashelf.state.models import utcnow

from .models import MovePhase, TransactionLogEntry

LOGGER = logging.getLogger(__name__)

TRANSACTIONS_FILENAME = "transactions.jsonl"


class TransactionLog:
    """JSON Lines log with one fsync'd line per move phase.

    Writers for the same fingerprint are serialized by the coordinator's keyed
    lock; the internal lock only keeps lines from interleaving.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    @classmethod
    def in_directory(cls, directory: Path) -> "TransactionLog":
        """Return the log stored inside a state directory."""
        return cls(Path(directory).expanduser() / TRANSACTIONS_FILENAME)

    def begin(
        self,
        fingerprint: str,
        from_path: Path,
        to_path: Path,
        *,
        temp_path: Optional[Path] = None,
    ) -> TransactionLogEntry:
        """Record the start of a move and return its entry."""
        entry = TransactionLogEntry(
            txn_id=uuid.uuid4().hex,
            fingerprint=fingerprint,
            from_path=from_path,
            to_path=to_path,
            temp_path=temp_path,
            phase=MovePhase.BEGUN,
        )
        self._append(entry)
        return entry

    def advance(self, entry: TransactionLogEntry, phase: MovePhase) -> TransactionLogEntry:
        """Record that ``entry`` reached ``phase``."""
        updated = entry.model_copy(update={"phase": phase, "timestamp": utcnow()})
        self._append(updated)
        return updated

    def entries(self) -> Iterator[TransactionLogEntry]:
        """Yield every readable entry in write order.

        A truncated final line left behind by a crash is skipped.
        """
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield TransactionLogEntry.model_validate_json(line)
                except (ValidationError, ValueError):
                    LOGGER.warning("Skipping unreadable transaction log line %d in %s", number, self.path)

    def pending(self) -> list[TransactionLogEntry]:
        """Return the last entry of every transaction that is still open."""
        latest: dict[str, TransactionLogEntry] = {}
        for entry in self.entries():
            latest[entry.txn_id] = entry
        return [entry for entry in latest.values() if not entry.phase.closed]

    def compact(self) -> int:
        """Rewrite the log keeping only unfinished transactions.

        Returns:
            int: Number of lines dropped.
        """
        with self._lock:
            if not self.path.exists():
                return 0
            all_entries = list(self.entries())
            open_ids = {entry.txn_id for entry in self.pending()}
            kept = [entry for entry in all_entries if entry.txn_id in open_ids]
            temp = self.path.with_suffix(".jsonl.tmp")
            try:
                with temp.open("w", encoding="utf-8") as handle:
                    for entry in kept:
                        handle.write(entry.model_dump_json() + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(temp, self.path)
            except OSError as exc:
                raise StateError(f"Unable to compact transaction log {self.path}: {exc}") from exc
        dropped = len(all_entries) - len(kept)
        if dropped:
            LOGGER.debug("Compacted %d transaction log lines", dropped)
        return dropped

    def _append(self, entry: TransactionLogEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json")) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
                handle.flush()
                os.fsync(handle.fileno())


__all__ = ["TransactionLog", "TRANSACTIONS_FILENAME"]
