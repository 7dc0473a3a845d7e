"""Per-item processing history tests."""

from __future__ import annotations

from pathlib import Path

from mediashelf.events import EventBus, EventKind, LifecycleEvent
from mediashelf.history import ProcessingHistory

FINGERPRINT = "ab" * 32


def test_events_are_kept_per_item_across_instances(tmp_path: Path) -> None:
    history = ProcessingHistory(tmp_path / "state")
    history.record(LifecycleEvent(kind=EventKind.DISCOVERED, fingerprint=FINGERPRINT, detail="inbox/a.mkv"))
    history.record(LifecycleEvent(kind=EventKind.DISCOVERED, fingerprint="cd" * 32))
    history.record(LifecycleEvent(kind=EventKind.FAILED, fingerprint=FINGERPRINT, data={"error_kind": "io_transient"}))

    reloaded = ProcessingHistory(tmp_path / "state")
    events = reloaded.read(FINGERPRINT)

    assert [event.kind for event in events] == [EventKind.DISCOVERED, EventKind.FAILED]
    assert events[0].detail == "inbox/a.mkv"
    assert events[1].data == {"error_kind": "io_transient"}
    assert (tmp_path / "state" / "history" / f"{FINGERPRINT}.jsonl").exists()


def test_events_without_fingerprint_are_not_recorded(tmp_path: Path) -> None:
    history = ProcessingHistory(tmp_path)

    history.record(LifecycleEvent(kind=EventKind.FAILED, path="inbox/unreadable.mkv"))

    assert not history.directory.exists()
    assert history.read(FINGERPRINT) == []


def test_old_entries_are_trimmed(tmp_path: Path) -> None:
    history = ProcessingHistory(tmp_path, max_entries=3)

    for index in range(5):
        history.record(LifecycleEvent(kind=EventKind.FAILED, fingerprint=FINGERPRINT, detail=str(index)))

    assert [event.detail for event in history.read(FINGERPRINT)] == ["2", "3", "4"]


def test_unreadable_lines_are_skipped(tmp_path: Path) -> None:
    history = ProcessingHistory(tmp_path)
    history.record(LifecycleEvent(kind=EventKind.MOVED, fingerprint=FINGERPRINT))
    with (history.directory / f"{FINGERPRINT}.jsonl").open("a", encoding="utf-8") as handle:
        handle.write('{"kind": "mov')

    assert [event.kind for event in history.read(FINGERPRINT)] == [EventKind.MOVED]


def test_attached_history_follows_the_bus(tmp_path: Path) -> None:
    bus = EventBus()
    history = ProcessingHistory(tmp_path)
    unsubscribe = history.attach(bus)

    bus.publish(LifecycleEvent(kind=EventKind.CLASSIFIED, fingerprint=FINGERPRINT))
    bus.flush()
    unsubscribe()
    bus.publish(LifecycleEvent(kind=EventKind.MOVED, fingerprint=FINGERPRINT))
    bus.close()

    assert [event.kind for event in history.read(FINGERPRINT)] == [EventKind.CLASSIFIED]
