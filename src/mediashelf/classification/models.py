"""Classification data models."""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field

from mediashelf.state.models import Decision


class ClassificationRequest(BaseModel):
    """Input handed to the classifier capability.

    Attributes:
        fingerprint: Identity of the tracked item.
        display_name: File name the classifier inspects.
    """

    fingerprint: str
    display_name: str


class ClassificationResult(BaseModel):
    """Raw answer from the classifier capability.

    Attributes:
        category: Predicted category, empty when the classifier has no answer.
        confidence: Probability that ``category`` is correct.
        alternatives: Runner-up categories, best first.
    """

    category: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    alternatives: List[str] = Field(default_factory=list)


class ClassificationDecision(BaseModel):
    """Classifier answer after normalization and thresholding.

    Attributes:
        fingerprint: Identity of the tracked item.
        category: Normalized suggested category; empty for manual decisions.
        confidence: Confidence reported by the classifier.
        alternatives: Normalized alternatives offered for confirmation.
        decision: Outcome of the confidence policy.
    """

    fingerprint: str
    category: str = ""
    confidence: float = 0.0
    alternatives: List[str] = Field(default_factory=list)
    decision: Decision = Decision.MANUAL

    @property
    def requires_confirmation(self) -> bool:
        """Return whether an external confirmation is needed."""
        return self.decision is not Decision.AUTO


class ClassificationBatch(BaseModel):
    """Aggregated outcome of a batched classification call.

    Attributes:
        decisions: Decisions keyed by fingerprint.
        unavailable: Fingerprints that could not be classified because the
            classifier was unreachable.
        errors: Per-item failure messages keyed by fingerprint.
    """

    decisions: Dict[str, ClassificationDecision] = Field(default_factory=dict)
    unavailable: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)


__all__ = [
    "ClassificationRequest",
    "ClassificationResult",
    "ClassificationDecision",
    "ClassificationBatch",
]
