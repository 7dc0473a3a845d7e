"""Classification decision policy, batching and registry tests."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Sequence

import pytest

from mediashelf.classification import (
    CategoryRegistry,
    ClassificationEngine,
    ClassificationRequest,
    ClassificationResult,
    HeuristicClassifier,
    normalize_category,
)
from mediashelf.config.models import ClassificationSettings
from mediashelf.errors import ClassifierUnavailableError
from mediashelf.state.models import Decision, FileStatus, TrackedItem


def _engine(classifier, registry: CategoryRegistry | None = None, **settings) -> ClassificationEngine:
    return ClassificationEngine(classifier, ClassificationSettings(**settings), registry or CategoryRegistry())


def _requests(*names: str) -> list[ClassificationRequest]:
    return [ClassificationRequest(fingerprint=f"{index:064d}", display_name=name) for index, name in enumerate(names)]


class _BatchClassifier:
    def __init__(self, batch_error: Exception | None = None, bad_name: str = "", truncate: bool = False) -> None:
        self.batch_error = batch_error
        self.bad_name = bad_name
        self.truncate = truncate
        self.single_calls: list[str] = []

    def classify(self, identifier: str, display_name: str) -> ClassificationResult:
        self.single_calls.append(display_name)
        if display_name == self.bad_name:
            raise RuntimeError("cannot parse")
        return ClassificationResult(category="SHOW", confidence=0.9)

    def classify_batch(self, requests: Sequence[ClassificationRequest]) -> list[ClassificationResult]:
        if self.batch_error is not None:
            raise self.batch_error
        results = [ClassificationResult(category="SHOW", confidence=0.9) for _ in requests]
        return results[:-1] if self.truncate else results


@pytest.mark.parametrize(
    ("confidence", "decision"),
    [
        (0.90, Decision.AUTO),
        (0.85, Decision.AUTO),
        (0.84, Decision.SUGGEST),
        (0.60, Decision.SUGGEST),
        (0.50, Decision.SUGGEST),
        (0.49, Decision.MANUAL),
        (0.20, Decision.MANUAL),
    ],
)
def test_confidence_thresholds(stub_classifier, confidence: float, decision: Decision) -> None:
    engine = _engine(stub_classifier)

    assert engine.decide(confidence, "SHOW") is decision


def test_empty_category_is_always_manual(stub_classifier) -> None:
    assert _engine(stub_classifier).decide(0.99, "") is Decision.MANUAL


def test_manual_decision_offers_guess_as_alternative(stub_classifier) -> None:
    stub_classifier.answers["a.mkv"] = ClassificationResult(category="show", confidence=0.2, alternatives=["other"])
    engine = _engine(stub_classifier)

    decision = engine.classify_one(_requests("a.mkv")[0])

    assert decision.decision is Decision.MANUAL
    assert decision.category == ""
    assert decision.alternatives == ["SHOW", "OTHER"]
    assert decision.requires_confirmation


def test_categories_resolve_through_registry_aliases(stub_classifier) -> None:
    registry = CategoryRegistry()
    registry.register("Show Name", aliases=["sn"])
    stub_classifier.answers["a.mkv"] = ClassificationResult(category="SN", confidence=0.7)

    decision = _engine(stub_classifier, registry).classify_one(_requests("a.mkv")[0])

    assert decision.category == "SHOW NAME"
    assert decision.decision is Decision.SUGGEST


def test_batch_call_used_when_supported() -> None:
    classifier = _BatchClassifier()

    batch = _engine(classifier).classify(_requests("a.mkv", "b.mkv", "c.mkv"))

    assert len(batch.decisions) == 3
    assert classifier.single_calls == []


def test_failed_batch_falls_back_to_single_calls() -> None:
    classifier = _BatchClassifier(batch_error=RuntimeError("batch rejected"), bad_name="b.mkv")
    requests = _requests("a.mkv", "b.mkv", "c.mkv")

    batch = _engine(classifier).classify(requests)

    assert set(batch.decisions) == {requests[0].fingerprint, requests[2].fingerprint}
    assert list(batch.errors) == [requests[1].fingerprint]
    assert classifier.single_calls == ["a.mkv", "b.mkv", "c.mkv"]


def test_short_batch_result_falls_back_to_single_calls() -> None:
    classifier = _BatchClassifier(truncate=True)

    batch = _engine(classifier).classify(_requests("a.mkv", "b.mkv"))

    assert len(batch.decisions) == 2
    assert classifier.single_calls == ["a.mkv", "b.mkv"]


def test_requests_are_chunked_by_batch_size() -> None:
    calls: list[int] = []

    class _Counting(_BatchClassifier):
        def classify_batch(self, requests):
            calls.append(len(requests))
            return super().classify_batch(requests)

    _engine(_Counting(), batch_size=2).classify(_requests("a", "b", "c", "d", "e"))

    assert calls == [2, 2]


def test_unavailable_classifier_marks_remaining_items(stub_classifier) -> None:
    stub_classifier.unavailable = True
    requests = _requests("a.mkv", "b.mkv")

    batch = _engine(stub_classifier).classify(requests)

    assert batch.decisions == {}
    assert batch.unavailable == [request.fingerprint for request in requests]
    assert stub_classifier.calls == ["a.mkv"]


def test_slow_classifier_times_out_as_unavailable() -> None:
    release = threading.Event()

    class _Hanging:
        def classify(self, identifier: str, display_name: str) -> ClassificationResult:
            release.wait(5)
            return ClassificationResult()

    engine = _engine(_Hanging(), timeout_seconds=0.05)
    try:
        with pytest.raises(ClassifierUnavailableError):
            engine.classify_one(_requests("a.mkv")[0])
    finally:
        release.set()
        engine.close()


def test_apply_records_decision_without_touching_target(stub_classifier) -> None:
    stub_classifier.answers["a.mkv"] = ClassificationResult(category="show", confidence=0.95)
    engine = _engine(stub_classifier)
    request = _requests("a.mkv")[0]
    item = TrackedItem(
        fingerprint=request.fingerprint,
        source_path=Path("/in/a.mkv"),
        display_name="a.mkv",
        status=FileStatus.PROCESSING,
    )

    engine.apply(item, engine.classify_one(request))

    assert item.status is FileStatus.CLASSIFIED
    assert item.category == "SHOW"
    assert item.suggested_category == "SHOW"
    assert item.decision is Decision.AUTO
    assert item.classified_at is not None
    assert item.target_path is None
    assert not item.awaiting_confirmation


def test_apply_suggestion_waits_for_confirmation(stub_classifier) -> None:
    stub_classifier.answers["a.mkv"] = ClassificationResult(category="show", confidence=0.6)
    engine = _engine(stub_classifier)
    request = _requests("a.mkv")[0]
    item = TrackedItem(
        fingerprint=request.fingerprint,
        source_path=Path("/in/a.mkv"),
        display_name="a.mkv",
        status=FileStatus.PROCESSING,
    )

    engine.apply(item, engine.classify_one(request))

    assert item.category is None
    assert item.suggested_category == "SHOW"
    assert item.awaiting_confirmation


@pytest.mark.parametrize(
    ("raw", "normalized"),
    [
        ("the.office", "OFFICE"),
        ("  Show-Name   Series ", "SHOW NAME"),
        ("A Team", "TEAM"),
        ("The", "THE"),
        ("", ""),
    ],
)
def test_normalize_category(raw: str, normalized: str) -> None:
    assert normalize_category(raw) == normalized


def test_registry_usage_and_similarity() -> None:
    registry = CategoryRegistry(["Show Name"])
    registry.record_usage("show.name")
    registry.record_usage("Other Show")

    assert registry.usage("SHOW NAME") == 1
    assert registry.known("other show")
    assert registry.similar("SHOW NAMES")[0] == "SHOW NAME"
    assert registry.categories() == ["OTHER", "SHOW NAME"]
    assert registry.most_used(1) == [("SHOW NAME", 1)]

    with pytest.raises(ValueError):
        registry.register("   ")


def test_heuristic_classifier_uses_episode_markers_and_registry() -> None:
    registry = CategoryRegistry()
    classifier = HeuristicClassifier(registry)

    unknown = classifier.classify("f", "Show.Name.S01E01.720p.mkv")
    assert unknown.category == "SHOW NAME"
    assert unknown.confidence == pytest.approx(0.75)

    registry.register("Show Name")
    known = classifier.classify("f", "Show.Name.S01E02.720p.mkv")
    assert known.confidence == pytest.approx(0.95)

    assert classifier.classify("f", "S01E01.mkv").category == ""
