"""Move execution, rollback, transaction log and crash recovery tests."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Optional

import pytest

from mediashelf.classification import CategoryRegistry
from mediashelf.errors import ErrorKind, InvalidTransitionError, MoveError
from mediashelf.events import EventBus, EventKind
from mediashelf.organization import (
    MoveExecutor,
    MovePhase,
    OrganizationEngine,
    PathGenerator,
    TransactionLog,
    TransactionLogEntry,
)
from mediashelf.state import StateRepository
from mediashelf.state.models import FileStatus, TrackedItem

CONTENT = b"episode bytes" * 512


def _digest(content: bytes = CONTENT) -> str:
    return hashlib.sha256(content).hexdigest()


def _setup(tmp_path: Path) -> tuple[Path, Path, TransactionLog]:
    source = tmp_path / "inbox" / "Show.Name.S01E01.mkv"
    source.parent.mkdir(parents=True)
    source.write_bytes(CONTENT)
    destination = tmp_path / "library" / "SHOW NAME" / "Show.Name.S01E01.mkv"
    return source, destination, TransactionLog.in_directory(tmp_path / "state")


def _phases(journal: TransactionLog) -> list[MovePhase]:
    return [entry.phase for entry in journal.entries()]


def test_same_volume_move_journals_only_begin_and_commit(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)

    outcome = MoveExecutor(journal).move(_digest(), source, destination)

    assert not source.exists()
    assert destination.read_bytes() == CONTENT
    assert not outcome.cross_volume
    assert _phases(journal) == [MovePhase.BEGUN, MovePhase.COMMITTED]
    assert journal.pending() == []


def test_copy_path_verifies_and_journals_every_phase(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)

    outcome = MoveExecutor(journal, buffer_size=100, force_copy=True).move(_digest(), source, destination)

    assert outcome.cross_volume
    assert not source.exists()
    assert destination.read_bytes() == CONTENT
    assert list(destination.parent.glob(".*.partial")) == []
    assert _phases(journal) == [
        MovePhase.BEGUN,
        MovePhase.COPIED,
        MovePhase.VERIFIED,
        MovePhase.SOURCE_REMOVED,
        MovePhase.COMMITTED,
    ]


def test_digest_mismatch_rolls_back(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)

    with pytest.raises(MoveError) as excinfo:
        MoveExecutor(journal, force_copy=True).move("0" * 64, source, destination)

    assert excinfo.value.kind is ErrorKind.CORRUPTION
    assert source.read_bytes() == CONTENT
    assert not destination.exists()
    assert list(destination.parent.iterdir()) == []
    assert _phases(journal) == [MovePhase.BEGUN, MovePhase.COPIED, MovePhase.ROLLED_BACK]
    assert journal.pending() == []


def test_existing_destination_is_refused_without_overwrite(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)
    destination.parent.mkdir(parents=True)
    destination.write_bytes(b"already here")

    with pytest.raises(MoveError) as excinfo:
        MoveExecutor(journal).move(_digest(), source, destination)

    assert excinfo.value.kind is ErrorKind.MOVE_CONFLICT
    assert destination.read_bytes() == b"already here"
    assert source.exists()
    assert _phases(journal) == []


class _RacingLog(TransactionLog):
    """Transaction log that lets another writer take the destination once, at ``phase``."""

    def __init__(self, path: Path, phase: Optional[MovePhase]) -> None:
        super().__init__(path)
        self._phase = phase

    def _append(self, entry: TransactionLogEntry) -> None:
        super()._append(entry)
        if entry.phase is self._phase:
            self._phase = None
            entry.to_path.write_bytes(b"written by someone else")


@pytest.mark.parametrize(("force_copy", "phase"), [(False, MovePhase.BEGUN), (True, MovePhase.VERIFIED)])
def test_destination_taken_during_move_is_not_replaced(tmp_path: Path, force_copy: bool, phase: MovePhase) -> None:
    source, destination, _ = _setup(tmp_path)
    journal = _RacingLog(tmp_path / "state" / "racing.jsonl", phase)

    with pytest.raises(MoveError) as excinfo:
        MoveExecutor(journal, force_copy=force_copy).move(_digest(), source, destination)

    assert excinfo.value.kind is ErrorKind.MOVE_CONFLICT
    assert destination.read_bytes() == b"written by someone else"
    assert source.read_bytes() == CONTENT
    assert list(destination.parent.glob(".*.partial")) == []
    assert _phases(journal)[-1] is MovePhase.ROLLED_BACK
    assert journal.pending() == []




def test_overwrite_replaces_destination(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)
    destination.parent.mkdir(parents=True)
    destination.write_bytes(b"old")

    MoveExecutor(journal, force_copy=True).move(_digest(), source, destination, overwrite=True)

    assert destination.read_bytes() == CONTENT


def test_missing_source_is_transient(tmp_path: Path) -> None:
    _, destination, journal = _setup(tmp_path)

    with pytest.raises(MoveError) as excinfo:
        MoveExecutor(journal).move(_digest(), tmp_path / "gone.mkv", destination)

    assert excinfo.value.kind is ErrorKind.IO_TRANSIENT


def _crash_at(tmp_path: Path, phase: MovePhase) -> tuple[Path, Path, Path, TransactionLog]:
    """Leave the filesystem and log as a copy-path move interrupted at ``phase``."""
    source, destination, journal = _setup(tmp_path)
    destination.parent.mkdir(parents=True)
    temp = destination.with_name(f".{destination.name}.partial")
    entry = journal.begin(_digest(), source, destination, temp_path=temp)
    temp.write_bytes(CONTENT[: len(CONTENT) // 2])
    for step in (MovePhase.COPIED, MovePhase.VERIFIED, MovePhase.SOURCE_REMOVED):
        if not phase.at_least(step):
            break
        if step is MovePhase.COPIED:
            temp.write_bytes(CONTENT)
        if step is MovePhase.SOURCE_REMOVED:
            source.unlink()
        entry = journal.advance(entry, step)
    return source, destination, temp, journal


@pytest.mark.parametrize(
    ("phase", "forward"),
    [
        (MovePhase.BEGUN, False),
        (MovePhase.COPIED, False),
        (MovePhase.VERIFIED, True),
        (MovePhase.SOURCE_REMOVED, True),
    ],
)
def test_recovery_leaves_exactly_one_copy(tmp_path: Path, phase: MovePhase, forward: bool) -> None:
    source, destination, temp, journal = _crash_at(tmp_path, phase)

    outcomes = MoveExecutor(journal).recover()

    assert [outcome.rolled_forward for outcome in outcomes] == [forward]
    assert not temp.exists()
    assert source.exists() is not forward
    assert destination.exists() is forward
    if forward:
        assert destination.read_bytes() == CONTENT
    else:
        assert source.read_bytes() == CONTENT
    assert journal.pending() == []
    assert MoveExecutor(journal).recover() == []


def test_recovery_recognizes_completed_rename(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)
    journal.begin(_digest(), source, destination)
    destination.parent.mkdir(parents=True)
    source.rename(destination)

    outcomes = MoveExecutor(journal).recover()

    assert outcomes[0].rolled_forward
    assert destination.read_bytes() == CONTENT


def test_verified_crash_without_copy_keeps_source(tmp_path: Path) -> None:
    source, destination, temp, journal = _crash_at(tmp_path, MovePhase.VERIFIED)
    temp.unlink()

    outcomes = MoveExecutor(journal).recover()

    assert not outcomes[0].rolled_forward
    assert source.read_bytes() == CONTENT


def test_recovery_finishes_linked_but_unremoved_source(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)
    journal.begin(_digest(), source, destination)
    destination.parent.mkdir(parents=True)
    os.link(source, destination)

    outcomes = MoveExecutor(journal).recover()

    assert outcomes[0].rolled_forward
    assert not source.exists()
    assert destination.read_bytes() == CONTENT
    assert journal.pending() == []


def test_recovery_restores_source_when_destination_was_taken(tmp_path: Path) -> None:
    source, destination, temp, journal = _crash_at(tmp_path, MovePhase.SOURCE_REMOVED)
    destination.write_bytes(b"written by someone else")

    outcomes = MoveExecutor(journal).recover()

    assert outcomes[0].action == "rolled_back"
    assert destination.read_bytes() == b"written by someone else"
    assert source.read_bytes() == CONTENT
    assert not temp.exists()
    assert journal.pending() == []


def test_recovery_keeps_copy_when_source_cannot_be_restored(tmp_path: Path) -> None:
    source, destination, temp, journal = _crash_at(tmp_path, MovePhase.SOURCE_REMOVED)
    destination.write_bytes(b"written by someone else")
    source.write_bytes(b"new download")

    outcomes = MoveExecutor(journal).recover()

    assert outcomes[0].action == "failed"
    assert source.read_bytes() == b"new download"
    assert destination.read_bytes() == b"written by someone else"
    assert temp.read_bytes() == CONTENT
    assert len(journal.pending()) == 1


def test_recovery_of_begun_move_keeps_unrelated_destination(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)
    journal.begin(_digest(), source, destination)
    destination.parent.mkdir(parents=True)
    destination.write_bytes(b"written by someone else")

    outcomes = MoveExecutor(journal).recover()

    assert outcomes[0].action == "rolled_back"
    assert source.read_bytes() == CONTENT
    assert destination.read_bytes() == b"written by someone else"


def test_journal_skips_truncated_lines_and_compacts(tmp_path: Path) -> None:
    source, destination, journal = _setup(tmp_path)
    done = journal.begin("a" * 64, source, destination)
    journal.advance(done, MovePhase.COMMITTED)
    journal.begin("b" * 64, source, destination)
    with journal.path.open("a", encoding="utf-8") as handle:
        handle.write('{"txn_id": "trunc')

    pending = journal.pending()
    assert [entry.fingerprint[0] for entry in pending] == ["b"]

    dropped = journal.compact()
    assert dropped == 2
    assert [entry.fingerprint[0] for entry in journal.entries()] == ["b"]


def _engine(
    tmp_path: Path, policy: str = "skip", events: EventBus | None = None, **executor_options
) -> tuple[OrganizationEngine, StateRepository]:
    repository = StateRepository(tmp_path / "state")
    journal = TransactionLog.in_directory(tmp_path / "state")
    engine = OrganizationEngine(
        repository,
        MoveExecutor(journal, **executor_options),
        PathGenerator(tmp_path / "library", "{LibraryRoot}/{Category}/{Filename}", policy),  # type: ignore[arg-type]
        CategoryRegistry(),
        events=events,
    )
    return engine, repository


def _tracked(source: Path, status: FileStatus, category: str | None = "SHOW NAME") -> TrackedItem:
    return TrackedItem(
        fingerprint=_digest(),
        source_path=source,
        display_name=source.name,
        size_bytes=len(CONTENT),
        status=status,
        category=category,
    )


def test_organize_moves_ready_item(tmp_path: Path) -> None:
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    engine, repository = _engine(tmp_path, events=bus)
    source, destination, _ = _setup(tmp_path)
    repository.upsert(_tracked(source, FileStatus.READY_TO_MOVE))

    item = engine.organize(_digest())

    assert item.status is FileStatus.MOVED
    assert item.moved_to_path == destination
    assert item.moved_at is not None
    assert repository.require(_digest()).status is FileStatus.MOVED
    bus.flush()
    assert [event.kind for event in events] == [EventKind.MOVED]


def test_organize_requires_ready_item(tmp_path: Path) -> None:
    engine, repository = _engine(tmp_path)
    source, _, _ = _setup(tmp_path)
    repository.upsert(_tracked(source, FileStatus.CLASSIFIED))

    with pytest.raises(InvalidTransitionError):
        engine.organize(_digest())


def test_organize_conflict_leaves_item_in_error(tmp_path: Path) -> None:
    engine, repository = _engine(tmp_path)
    source, destination, _ = _setup(tmp_path)
    destination.parent.mkdir(parents=True)
    destination.write_bytes(b"other file")
    repository.upsert(_tracked(source, FileStatus.READY_TO_MOVE))

    with pytest.raises(MoveError):
        engine.organize(_digest())

    item = repository.require(_digest())
    assert item.status is FileStatus.ERROR
    assert item.error_kind is ErrorKind.MOVE_CONFLICT
    assert source.exists()


def test_engine_recovery_completes_verified_move(tmp_path: Path) -> None:
    engine, repository = _engine(tmp_path)
    source, destination, _, _ = _crash_at(tmp_path, MovePhase.VERIFIED)
    repository.upsert(_tracked(source, FileStatus.MOVING))

    engine.recover()

    item = repository.require(_digest())
    assert item.status is FileStatus.MOVED
    assert item.moved_to_path == destination
    assert not source.exists()


def test_engine_recovery_rolls_back_early_crash_to_error(tmp_path: Path) -> None:
    engine, repository = _engine(tmp_path)
    source, destination, _, journal = _crash_at(tmp_path, MovePhase.COPIED)
    repository.upsert(_tracked(source, FileStatus.MOVING))

    engine.recover()

    item = repository.require(_digest())
    assert item.status is FileStatus.ERROR
    assert item.error_kind is ErrorKind.IO_TRANSIENT
    assert item.error_detail == "interrupted move rolled back"
    assert source.exists()
    assert not destination.exists()
    assert list(journal.entries()) == []


def test_engine_recovery_marks_committed_move_whose_status_was_not_saved(tmp_path: Path) -> None:
    engine, repository = _engine(tmp_path)
    source, destination, journal = _setup(tmp_path)
    MoveExecutor(journal).move(_digest(), source, destination)
    repository.upsert(_tracked(source, FileStatus.MOVING))

    outcomes = engine.recover()

    assert outcomes == []
    item = repository.require(_digest())
    assert item.status is FileStatus.MOVED
    assert item.moved_to_path == destination
    assert list(journal.entries()) == []


def test_engine_recovery_fails_moving_item_that_was_never_journaled(tmp_path: Path) -> None:
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    engine, repository = _engine(tmp_path, events=bus)
    source, destination, _ = _setup(tmp_path)
    item = _tracked(source, FileStatus.MOVING)
    item.target_path = destination
    repository.upsert(item)

    engine.recover()

    stored = repository.require(_digest())
    assert stored.status is FileStatus.ERROR
    assert stored.error_kind is ErrorKind.IO_TRANSIENT
    assert stored.error_detail == "interrupted move rolled back"
    assert source.read_bytes() == CONTENT
    bus.flush()
    assert [event.kind for event in events] == [EventKind.FAILED]


def test_organize_picks_new_name_when_target_is_taken_mid_move(tmp_path: Path) -> None:
    repository = StateRepository(tmp_path / "state")
    journal = _RacingLog(tmp_path / "state" / "racing.jsonl", MovePhase.BEGUN)
    engine = OrganizationEngine(
        repository,
        MoveExecutor(journal),
        PathGenerator(tmp_path / "library", "{LibraryRoot}/{Category}/{Filename}", "rename"),
        CategoryRegistry(),
    )
    source, destination, _ = _setup(tmp_path)
    repository.upsert(_tracked(source, FileStatus.READY_TO_MOVE))

    item = engine.organize(_digest())

    assert item.status is FileStatus.MOVED
    assert item.moved_to_path != destination
    assert item.moved_to_path is not None and item.moved_to_path.read_bytes() == CONTENT
    assert destination.read_bytes() == b"written by someone else"
