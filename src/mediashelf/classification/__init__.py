"""Classification decision policy and classifier capabilities."""

from .categories import CategoryRegistry, normalize_category
from .classifier import BatchClassifier, Classifier, HeuristicClassifier
from .engine import ClassificationEngine
from .models import (
    ClassificationBatch,
    ClassificationDecision,
    ClassificationRequest,
    ClassificationResult,
)

__all__ = [
    "CategoryRegistry",
    "normalize_category",
    "Classifier",
    "BatchClassifier",
    "HeuristicClassifier",
    "ClassificationEngine",
    "ClassificationBatch",
    "ClassificationDecision",
    "ClassificationRequest",
    "ClassificationResult",
]
