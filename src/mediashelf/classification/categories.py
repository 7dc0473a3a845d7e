"""Registry of known categories."""

from __future__ import annotations

import difflib
import re
import threading
from collections import Counter
from typing import Iterable, Optional

_SEPARATORS = re.compile(r"[._\-]+")
_WHITESPACE = re.compile(r"\s+")
_LEADING_ARTICLE = re.compile(r"^(THE|A)\s+")
_TRAILING_NOISE = re.compile(r"\s+(TV|SERIES|SHOW)$")


def normalize_category(name: str) -> str:
    """Return the canonical spelling of a category name.

    Upper-cases, turns ``._-`` runs into spaces, collapses whitespace and drops
    a leading ``THE``/``A`` and a trailing ``TV``/``SERIES``/``SHOW``.
    """
    if not name or not name.strip():
        return ""
    normalized = name.strip().upper()
    normalized = _SEPARATORS.sub(" ", normalized)
    normalized = _WHITESPACE.sub(" ", normalized).strip()
    stripped = _LEADING_ARTICLE.sub("", normalized)
    stripped = _TRAILING_NOISE.sub("", stripped).strip()
    return stripped or normalized


class CategoryRegistry:
    """Thread-safe map of categories and their aliases.

    One instance is created by the pipeline and handed to the classification
    and organization engines.
    """

    def __init__(self, categories: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._categories: set[str] = set()
        self._aliases: dict[str, str] = {}
        self._usage: Counter[str] = Counter()
        for category in categories:
            self.register(category)

    def register(self, name: str, aliases: Iterable[str] = ()) -> str:
        """Add ``name`` (and ``aliases`` pointing at it); return its canonical form.

        Raises:
            ValueError: If ``name`` normalizes to an empty string.
        """
        canonical = normalize_category(name)
        if not canonical:
            raise ValueError("Category name cannot be empty")
        with self._lock:
            self._categories.add(canonical)
            for alias in aliases:
                normalized_alias = normalize_category(alias)
                if normalized_alias and normalized_alias != canonical:
                    self._aliases[normalized_alias] = canonical
        return canonical

    def resolve(self, name: str) -> str:
        """Return the canonical category for ``name``, following aliases."""
        normalized = normalize_category(name)
        with self._lock:
            return self._aliases.get(normalized, normalized)

    def known(self, name: str) -> bool:
        """Return whether ``name`` resolves to a registered category."""
        resolved = self.resolve(name)
        with self._lock:
            return resolved in self._categories

    def similar(self, name: str, *, limit: int = 3, cutoff: float = 0.6) -> list[str]:
        """Return registered categories that look like ``name``."""
        normalized = normalize_category(name)
        with self._lock:
            candidates = sorted(self._categories)
        return difflib.get_close_matches(normalized, candidates, n=limit, cutoff=cutoff)

    def record_usage(self, name: str) -> None:
        """Count one organized file for the category ``name``."""
        canonical = self.resolve(name)
        if not canonical:
            return
        with self._lock:
            self._categories.add(canonical)
            self._usage[canonical] += 1

    def usage(self, name: str) -> int:
        """Return how many files were organized under ``name``."""
        canonical = self.resolve(name)
        with self._lock:
            return self._usage[canonical]

    def categories(self) -> list[str]:
        """Return every registered category, sorted."""
        with self._lock:
            return sorted(self._categories)

    def most_used(self, limit: Optional[int] = None) -> list[tuple[str, int]]:
        """Return categories ordered by organized file count."""
        with self._lock:
            return self._usage.most_common(limit)


__all__ = ["CategoryRegistry", "normalize_category"]
