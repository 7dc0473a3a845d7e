"""Atomic file moves with rollback and crash recovery."""

from __future__ import annotations

import errno
import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional

from mediashelf.errors import ErrorKind, FingerprintError, MoveError, classify_os_error
from mediashelf.ingestion.fingerprint import HashComputer

from .journal import TransactionLog
from .models import MoveOutcome, MovePhase, RecoveryOutcome, TransactionLogEntry

LOGGER = logging.getLogger(__name__)

# link() failures meaning the filesystem has no hard links, not a real error.
_NO_HARDLINKS = frozenset(
    code
    for code in (
        getattr(errno, "EPERM", None),
        getattr(errno, "ENOTSUP", None),
        getattr(errno, "EOPNOTSUPP", None),
        getattr(errno, "ENOSYS", None),
        getattr(errno, "EMLINK", None),
    )
    if code is not None
)


class _Deadline:
    def __init__(self, seconds: Optional[float]) -> None:
        self._expires = None if seconds is None else time.monotonic() + seconds
        self.seconds = seconds

    def check(self, what: str) -> None:
        if self._expires is not None and time.monotonic() > self._expires:
            raise MoveError(ErrorKind.IO_TRANSIENT, f"{what} exceeded the {self.seconds}s move timeout")


class MoveExecutor:
    """Move files into the library, journaling every step.

    Same-volume moves link the source at the destination and then unlink it,
    so an existing destination is never replaced unless ``overwrite`` is set.
    Cross-volume moves copy to a hidden temporary file next to the
    destination, verify its size and digest, remove the source, then put the
    copy in place. A failure before the source is removed deletes the partial
    copy; a failure to place the copy puts it back at the source path.
    """

    def __init__(
        self,
        journal: TransactionLog,
        *,
        hasher: Optional[HashComputer] = None,
        buffer_size: int = 1024 * 1024,
        timeout_seconds: Optional[float] = None,
        force_copy: bool = False,
    ) -> None:
        """Initialize the executor.

        Args:
            journal: Transaction log receiving phase records.
            hasher: Digest helper used to verify copies.
            buffer_size: Size of the streaming copy buffer in bytes.
            timeout_seconds: Deadline applied to each move.
            force_copy: Always take the copy/verify path, even on one volume.
        """
        self.journal = journal
        self._hasher = hasher or HashComputer(chunk_size=buffer_size)
        self._buffer_size = buffer_size
        self._timeout = timeout_seconds
        self._force_copy = force_copy
        self._placement_lock = threading.Lock()

    def move(
        self,
        fingerprint: str,
        source: Path,
        destination: Path,
        *,
        overwrite: bool = False,
    ) -> MoveOutcome:
        """Move ``source`` to ``destination``.

        Args:
            fingerprint: Expected content digest of ``source``.
            source: File to move.
            destination: Final path; its parent is created when missing.
            overwrite: Whether an existing ``destination`` may be replaced.

        Returns:
            MoveOutcome: Description of the committed move.

        Raises:
            MoveError: If the move failed; the source is left in place. A
                destination that appears while the move runs is reported as
                ``MOVE_CONFLICT``.
        """
        deadline = _Deadline(self._timeout)
        if not source.is_file():
            raise MoveError(ErrorKind.IO_TRANSIENT, f"source file is missing: {source}")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MoveError(classify_os_error(exc), f"cannot create {destination.parent}: {exc}") from exc
        self._check_free(destination, overwrite)

        temp = _temp_path_for(destination, fingerprint)
        entry = self.journal.begin(fingerprint, source, destination, temp_path=temp)

        if not self._force_copy:
            try:
                self._place(source, destination, overwrite)
            except FileExistsError as exc:
                self._close_rolled_back(entry)
                raise MoveError(ErrorKind.MOVE_CONFLICT, f"target already exists: {destination}") from exc
            except OSError as exc:
                if exc.errno != errno.EXDEV:
                    self._close_rolled_back(entry)
                    raise MoveError(classify_os_error(exc), f"move {source} -> {destination}: {exc}") from exc
                LOGGER.debug("%s: %s is on another volume; copying", fingerprint[:12], destination)
            else:
                self.journal.advance(entry, MovePhase.COMMITTED)
                return MoveOutcome(fingerprint=fingerprint, source=source, destination=destination)

        self._copy_verify_commit(entry, deadline, overwrite)
        return MoveOutcome(fingerprint=fingerprint, source=source, destination=destination, cross_volume=True)

    def recover(self) -> list[RecoveryOutcome]:
        """Finish or undo every transaction left open by a crash.

        A transaction whose file already sits at the destination is completed,
        as is one that reached ``verified`` with its copy intact; anything
        else is rolled back.
        """
        outcomes: list[RecoveryOutcome] = []
        for entry in self.journal.pending():
            try:
                outcomes.append(self._recover_entry(entry))
            except OSError as exc:
                LOGGER.error("Recovery of %s failed: %s", entry.fingerprint[:12], exc)
                outcomes.append(RecoveryOutcome(entry=entry, action="failed", detail=str(exc)))
        if outcomes:
            LOGGER.info("Recovered %d interrupted move(s)", len(outcomes))
        return outcomes

    def _place(self, path: Path, destination: Path, overwrite: bool) -> None:
        """Put ``path`` at ``destination`` in one step.

        Raises:
            FileExistsError: If ``destination`` exists and ``overwrite`` is off.
            OSError: For any other failure; ``path`` is left in place.
        """
        if overwrite:
            os.replace(path, destination)
            return
        try:
            os.link(path, destination)
        except FileExistsError:
            raise
        except OSError as exc:
            if exc.errno not in _NO_HARDLINKS:
                raise
            with self._placement_lock:
                if destination.exists():
                    raise FileExistsError(errno.EEXIST, "target already exists", str(destination)) from exc
                os.rename(path, destination)
            return
        try:
            path.unlink()
        except OSError:
            # Drop our own link again; ``path`` still holds the data.
            destination.unlink()
            raise

    def _copy_verify_commit(self, entry: TransactionLogEntry, deadline: _Deadline, overwrite: bool) -> None:
        source, destination = entry.from_path, entry.to_path
        temp = entry.temp_path
        assert temp is not None
        try:
            expected_size = source.stat().st_size
            self._stream_copy(source, temp, deadline)
            entry = self.journal.advance(entry, MovePhase.COPIED)
            self._verify(entry, temp, expected_size, deadline)
            self._check_free(destination, overwrite)
            entry = self.journal.advance(entry, MovePhase.VERIFIED)
            source.unlink()
        except MoveError:
            self._rollback(entry)
            raise
        except OSError as exc:
            self._rollback(entry)
            raise MoveError(classify_os_error(exc), f"copy {source} -> {destination}: {exc}") from exc
        entry = self.journal.advance(entry, MovePhase.SOURCE_REMOVED)

        try:
            self._place(temp, destination, overwrite)
        except FileExistsError as exc:
            self._restore_source(entry)
            raise MoveError(ErrorKind.MOVE_CONFLICT, f"target already exists: {destination}") from exc
        except OSError as exc:
            self._restore_source(entry)
            raise MoveError(classify_os_error(exc), f"place {destination}: {exc}") from exc
        self.journal.advance(entry, MovePhase.COMMITTED)

    def _restore_source(self, entry: TransactionLogEntry) -> None:
        """Put the verified copy back at the source path after a failed placement.

        When that fails too the transaction stays open and the copy stays at
        its temporary path for recovery.
        """
        assert entry.temp_path is not None
        try:
            self._place(entry.temp_path, entry.from_path, False)
        except OSError as exc:
            LOGGER.error(
                "%s: unable to restore %s; verified copy kept at %s: %s",
                entry.fingerprint[:12],
                entry.from_path,
                entry.temp_path,
                exc,
            )
            return
        self._close_rolled_back(entry)
        LOGGER.info("%s: restored %s after a failed placement", entry.fingerprint[:12], entry.from_path)

    def _stream_copy(self, source: Path, temp: Path, deadline: _Deadline) -> None:
        with source.open("rb") as reader, temp.open("wb") as writer:
            for chunk in iter(lambda: reader.read(self._buffer_size), b""):
                writer.write(chunk)
                deadline.check("copy")
            writer.flush()
            os.fsync(writer.fileno())

    def _verify(self, entry: TransactionLogEntry, temp: Path, expected_size: int, deadline: _Deadline) -> None:
        actual_size = temp.stat().st_size
        if actual_size != expected_size:
            raise MoveError(
                ErrorKind.CORRUPTION,
                f"copy of {entry.from_path} has {actual_size} bytes, expected {expected_size}",
            )
        try:
            digest = self._hasher.compute(temp)
        except FingerprintError as exc:
            raise MoveError(exc.kind, exc.detail) from exc
        deadline.check("verification")
        if digest != entry.fingerprint:
            raise MoveError(ErrorKind.CORRUPTION, f"digest mismatch after copying {entry.from_path}")

    def _rollback(self, entry: TransactionLogEntry) -> None:
        temp = entry.temp_path
        if temp is not None and temp.exists():
            try:
                temp.unlink()
            except OSError as exc:
                LOGGER.error("Unable to remove partial copy %s: %s", temp, exc)
                return
        self._close_rolled_back(entry)
        LOGGER.info("%s: rolled back move of %s", entry.fingerprint[:12], entry.from_path)

    def _close_rolled_back(self, entry: TransactionLogEntry) -> None:
        self.journal.advance(entry, MovePhase.ROLLED_BACK)

    def _recover_entry(self, entry: TransactionLogEntry) -> RecoveryOutcome:
        source, destination, temp = entry.from_path, entry.to_path, entry.temp_path
        temp_exists = temp is not None and temp.exists()
        # After the source was removed, a file at its path belongs to someone else.
        source_ours = source.exists() and not entry.phase.at_least(MovePhase.SOURCE_REMOVED)
        placed = destination.exists() and (
            self._holds_copy(entry) or not (source_ours or temp_exists)
        )

        if not placed and temp_exists and entry.phase.at_least(MovePhase.VERIFIED) and not destination.exists():
            assert temp is not None
            try:
                self._place(temp, destination, False)
            except FileExistsError:
                LOGGER.warning("%s: %s was taken while recovering", entry.fingerprint[:12], destination)
            else:
                placed, temp_exists = True, False

        if placed:
            if source_ours:
                source.unlink()
                entry = self.journal.advance(entry, MovePhase.SOURCE_REMOVED)
            if temp_exists:
                assert temp is not None
                temp.unlink()
            self.journal.advance(entry, MovePhase.COMMITTED)
            LOGGER.info("%s: completed interrupted move to %s", entry.fingerprint[:12], destination)
            return RecoveryOutcome(entry=entry, action="rolled_forward", detail="interrupted move completed")

        if temp_exists and not source_ours:
            assert temp is not None
            try:
                self._place(temp, source, False)
            except OSError as exc:
                LOGGER.error(
                    "%s: %s is taken and %s cannot be restored; copy kept at %s: %s",
                    entry.fingerprint[:12],
                    destination,
                    source,
                    temp,
                    exc,
                )
                return RecoveryOutcome(entry=entry, action="failed", detail=f"copy kept at {temp}")
            self._close_rolled_back(entry)
            LOGGER.info("%s: %s is taken; restored %s", entry.fingerprint[:12], destination, source)
            return RecoveryOutcome(entry=entry, action="rolled_back", detail="target taken; source restored")

        self._rollback(entry)
        return RecoveryOutcome(entry=entry, action="rolled_back", detail="interrupted move rolled back")

    def _holds_copy(self, entry: TransactionLogEntry) -> bool:
        """Return whether the destination is this transaction's file."""
        for candidate in (entry.from_path, entry.temp_path):
            if candidate is not None and _same_file(candidate, entry.to_path):
                return True
        if not entry.phase.at_least(MovePhase.VERIFIED):
            return False
        try:
            return self._hasher.compute(entry.to_path) == entry.fingerprint
        except FingerprintError:
            return False

    @staticmethod
    def _check_free(destination: Path, overwrite: bool) -> None:
        if not overwrite and destination.exists():
            raise MoveError(ErrorKind.MOVE_CONFLICT, f"target already exists: {destination}")


def _temp_path_for(destination: Path, fingerprint: str) -> Path:
    return destination.with_name(f".{destination.name}.{fingerprint[:12]}.partial")


def _same_file(first: Path, second: Path) -> bool:
    try:
        return os.path.samefile(first, second)
    except OSError:
        return False


__all__ = ["MoveExecutor"]
