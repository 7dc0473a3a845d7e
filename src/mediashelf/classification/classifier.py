"""Classifier capability interface and the built-in filename heuristic."""

from __future__ import annotations

import logging
from typing import Protocol, Sequence, runtime_checkable

from mediashelf.ingestion.metadata import analyze_filename

from .categories import CategoryRegistry, normalize_category
from .models import ClassificationRequest, ClassificationResult

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class Classifier(Protocol):
    """External capability that predicts a category for a file.

    Implementations raise :class:`mediashelf.errors.ClassifierUnavailableError`
    when they cannot answer at all; a low ``confidence`` means "no confident
    answer".
    """

    def classify(self, identifier: str, display_name: str) -> ClassificationResult:
        """Return the prediction for one file."""
        ...


@runtime_checkable
class BatchClassifier(Classifier, Protocol):
    """Classifier that also accepts several requests in one call."""

    def classify_batch(self, requests: Sequence[ClassificationRequest]) -> list[ClassificationResult]:
        """Return one prediction per request, in request order."""
        ...


class HeuristicClassifier:
    """Derive a series category from the file name alone.

    Confidence grows with the evidence found in the name: a season/episode
    marker, a quality marker, and a title the registry already knows.
    """

    def __init__(self, registry: CategoryRegistry | None = None) -> None:
        self._registry = registry or CategoryRegistry()

    def classify(self, identifier: str, display_name: str) -> ClassificationResult:
        info = analyze_filename(display_name)
        category = normalize_category(info.title)
        if not category:
            return ClassificationResult()

        confidence = 0.4
        if info.is_episode:
            confidence += 0.3
        if info.quality or info.codec:
            confidence += 0.05
        alternatives: list[str] = []
        if self._registry.known(category):
            category = self._registry.resolve(category)
            confidence += 0.2
        else:
            alternatives = [name for name in self._registry.similar(category) if name != category]
            if alternatives:
                confidence -= 0.1

        confidence = round(min(max(confidence, 0.0), 0.95), 2)
        LOGGER.debug("Heuristic classification of %s: %s (%.2f)", display_name, category, confidence)
        return ClassificationResult(category=category, confidence=confidence, alternatives=alternatives)

    def classify_batch(self, requests: Sequence[ClassificationRequest]) -> list[ClassificationResult]:
        return [self.classify(request.fingerprint, request.display_name) for request in requests]


__all__ = ["Classifier", "BatchClassifier", "HeuristicClassifier"]
