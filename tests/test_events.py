"""Lifecycle event bus tests."""

from __future__ import annotations

import threading

from mediashelf.events import EventBus, EventKind, LifecycleEvent


def _event(kind: EventKind = EventKind.DISCOVERED, fingerprint: str = "f") -> LifecycleEvent:
    return LifecycleEvent(kind=kind, fingerprint=fingerprint)


def test_subscribers_receive_events_in_order() -> None:
    bus = EventBus()
    received: list[str] = []
    bus.subscribe(lambda event: received.append(event.fingerprint or ""))

    for name in ("a", "b", "c"):
        assert bus.publish(_event(fingerprint=name))

    assert bus.flush()
    assert received == ["a", "b", "c"]
    bus.close()


def test_publish_without_subscribers_is_a_no_op() -> None:
    bus = EventBus(capacity=1)

    for _ in range(5):
        assert bus.publish(_event())

    assert bus.dropped == 0


def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    received: list[EventKind] = []

    def _broken(event: LifecycleEvent) -> None:
        raise RuntimeError("notifier down")

    bus.subscribe(_broken)
    bus.subscribe(lambda event: received.append(event.kind))

    bus.publish(_event(EventKind.MOVED))
    bus.publish(_event(EventKind.FAILED))
    bus.flush()

    assert received == [EventKind.MOVED, EventKind.FAILED]
    bus.close()


def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    received: list[LifecycleEvent] = []
    unsubscribe = bus.subscribe(received.append)

    bus.publish(_event())
    bus.flush()
    unsubscribe()
    bus.publish(_event())
    bus.flush()

    assert len(received) == 1
    bus.close()


def test_full_buffer_drops_instead_of_blocking() -> None:
    bus = EventBus(capacity=1)
    gate = threading.Event()
    bus.subscribe(lambda event: gate.wait(5))

    results = [bus.publish(_event()) for _ in range(3)]

    assert False in results
    assert bus.dropped >= 1
    gate.set()
    bus.close()
