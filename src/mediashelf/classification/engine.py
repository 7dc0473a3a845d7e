"""Classification decision policy.

The engine owns thresholding and batching only; predictions come from an
injected classifier capability. Calls run on a small thread pool so that every
call can be given a deadline: a classifier that does not answer in time is
treated as unavailable rather than left to hang a worker.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Sequence, TypeVar

from mediashelf.config.models import ClassificationSettings
from mediashelf.errors import ClassifierUnavailableError, ErrorKind, PipelineError
from mediashelf.state.machine import transition
from mediashelf.state.models import Decision, FileStatus, TrackedItem, utcnow

from .categories import CategoryRegistry
from .classifier import BatchClassifier, Classifier
from .models import (
    ClassificationBatch,
    ClassificationDecision,
    ClassificationRequest,
    ClassificationResult,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ClassificationEngine:
    """Turn classifier answers into auto/suggest/manual decisions."""

    def __init__(
        self,
        classifier: Classifier,
        settings: ClassificationSettings,
        registry: CategoryRegistry,
        *,
        max_concurrent_calls: int = 4,
    ) -> None:
        self._classifier = classifier
        self._settings = settings
        self._registry = registry
        self._pool = ThreadPoolExecutor(
            max_workers=max(1, max_concurrent_calls), thread_name_prefix="mediashelf-classifier"
        )

    @property
    def batch_size(self) -> int:
        """Return the configured batch size."""
        return self._settings.batch_size

    def decide(self, confidence: float, category: str = "") -> Decision:
        """Apply the confidence thresholds.

        Args:
            confidence: Classifier-reported confidence.
            category: Suggested category; an empty category is always manual.

        Returns:
            Decision: ``AUTO`` at or above the auto threshold, ``SUGGEST`` at or
            above the suggestion threshold, ``MANUAL`` otherwise.
        """
        if not category or confidence < self._settings.suggest_threshold:
            return Decision.MANUAL
        if confidence >= self._settings.auto_threshold:
            return Decision.AUTO
        return Decision.SUGGEST

    def classify_one(self, request: ClassificationRequest) -> ClassificationDecision:
        """Classify a single item.

        Raises:
            ClassifierUnavailableError: If the classifier is down or timed out.
            PipelineError: If the classifier failed for this item.
        """
        result = self._call(lambda: self._classifier.classify(request.fingerprint, request.display_name))
        return self._to_decision(request.fingerprint, result)

    def classify(self, requests: Sequence[ClassificationRequest]) -> ClassificationBatch:
        """Classify ``requests`` in chunks of ``batch_size``.

        A failed batch call falls back to one call per item so that a single bad
        item cannot fail its neighbours. An unavailable classifier marks the
        whole chunk as unavailable without further attempts.
        """
        batch = ClassificationBatch()
        size = self._settings.batch_size
        for start in range(0, len(requests), size):
            self._classify_chunk(list(requests[start : start + size]), batch)
        return batch

    def apply(self, item: TrackedItem, decision: ClassificationDecision) -> TrackedItem:
        """Record ``decision`` on ``item`` and move it to ``Classified``.

        ``target_path`` is left untouched; auto decisions also set ``category``
        so that the item can be organized without confirmation.
        """
        item.suggested_category = decision.category or None
        item.confidence = decision.confidence
        item.alternative_categories = list(decision.alternatives)
        item.decision = decision.decision
        item.classified_at = utcnow()
        item.clear_error()
        if decision.decision is Decision.AUTO:
            item.category = decision.category
        transition(item, FileStatus.CLASSIFIED, reason=decision.decision.value)
        return item

    def close(self) -> None:
        """Release the call pool without waiting for hung calls."""
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _classify_chunk(self, chunk: list[ClassificationRequest], batch: ClassificationBatch) -> None:
        if len(chunk) > 1 and isinstance(self._classifier, BatchClassifier):
            classifier = self._classifier
            try:
                results = self._call(lambda: classifier.classify_batch(chunk))
            except ClassifierUnavailableError as exc:
                LOGGER.warning("Classifier unavailable for batch of %d: %s", len(chunk), exc.detail)
                batch.unavailable.extend(request.fingerprint for request in chunk)
                return
            except PipelineError as exc:
                LOGGER.info("Batch classification failed (%s); retrying items one by one", exc.detail)
            else:
                if len(results) == len(chunk):
                    for request, result in zip(chunk, results):
                        batch.decisions[request.fingerprint] = self._to_decision(request.fingerprint, result)
                    return
                LOGGER.info(
                    "Batch classification returned %d results for %d items; retrying one by one",
                    len(results),
                    len(chunk),
                )

        for position, request in enumerate(chunk):
            try:
                batch.decisions[request.fingerprint] = self.classify_one(request)
            except ClassifierUnavailableError as exc:
                LOGGER.warning("Classifier unavailable: %s", exc.detail)
                batch.unavailable.extend(pending.fingerprint for pending in chunk[position:])
                return
            except PipelineError as exc:
                batch.errors[request.fingerprint] = exc.detail

    def _call(self, func: Callable[[], T]) -> T:
        try:
            future = self._pool.submit(func)
        except RuntimeError as exc:
            raise ClassifierUnavailableError(f"classifier pool closed: {exc}") from exc
        try:
            return future.result(timeout=self._settings.timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise ClassifierUnavailableError(
                f"classifier did not answer within {self._settings.timeout_seconds}s"
            ) from exc
        except PipelineError:
            raise
        except Exception as exc:  # noqa: BLE001 - classifier is an external capability
            raise PipelineError(ErrorKind.IO_TRANSIENT, f"classifier failed: {exc}") from exc

    def _to_decision(self, fingerprint: str, result: ClassificationResult) -> ClassificationDecision:
        category = self._registry.resolve(result.category) if result.category else ""
        alternatives: list[str] = []
        for alternative in result.alternatives:
            resolved = self._registry.resolve(alternative)
            if resolved and resolved != category and resolved not in alternatives:
                alternatives.append(resolved)
        decision = self.decide(result.confidence, category)
        if decision is Decision.MANUAL:
            # A low-confidence guess is only offered as one of the alternatives.
            if category:
                alternatives.insert(0, category)
            category = ""
        return ClassificationDecision(
            fingerprint=fingerprint,
            category=category,
            confidence=result.confidence,
            alternatives=alternatives,
            decision=decision,
        )


__all__ = ["ClassificationEngine"]
