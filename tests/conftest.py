"""Shared fixtures for the MediaShelf test suite."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import pytest

from mediashelf.classification.models import ClassificationResult
from mediashelf.config import resolve_with_precedence
from mediashelf.config.models import MediaShelfConfig
from mediashelf.errors import ClassifierUnavailableError
from mediashelf.logs import PACKAGE_LOGGER


class StubClassifier:
    """Classifier double answering from a display-name table."""

    def __init__(
        self,
        answers: Optional[Mapping[str, ClassificationResult]] = None,
        *,
        default: Optional[ClassificationResult] = None,
    ) -> None:
        self.answers = dict(answers or {})
        self.default = default or ClassificationResult()
        self.calls: list[str] = []
        self.unavailable = False
        self.failure: Optional[Exception] = None

    def classify(self, identifier: str, display_name: str) -> ClassificationResult:
        self.calls.append(display_name)
        if self.unavailable:
            raise ClassifierUnavailableError("stub classifier offline")
        if self.failure is not None:
            raise self.failure
        return self.answers.get(display_name, self.default)


@pytest.fixture
def stub_classifier() -> StubClassifier:
    return StubClassifier()


@pytest.fixture
def inbox(tmp_path: Path) -> Path:
    directory = tmp_path / "inbox"
    directory.mkdir()
    return directory


@pytest.fixture
def library(tmp_path: Path) -> Path:
    return tmp_path / "library"


@pytest.fixture
def media() -> Callable[..., Path]:
    """Return a helper writing a media file with the given content."""

    def _write(path: Path, content: bytes = b"media payload") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _write


@pytest.fixture
def make_config(tmp_path: Path, inbox: Path, library: Path) -> Callable[..., MediaShelfConfig]:
    """Return a factory for small, fast configurations rooted in ``tmp_path``.

    Keyword overrides use dotted keys, e.g. ``{"queues.registration_capacity": 5}``.
    """

    def _make(overrides: Optional[Mapping[str, Any]] = None) -> MediaShelfConfig:
        base = {
            "discovery": {
                "watch_roots": [str(inbox)],
                "quiet_window_seconds": 0,
                "min_file_size_mb": 0,
                "scan_interval_minutes": 0,
                "use_watcher": False,
            },
            "queues": {"shutdown_grace_seconds": 5},
            "retry": {"backoff_seconds": 0, "max_backoff_seconds": 0},
            "state": {"directory": str(tmp_path / "state")},
            "organization": {"library_root": str(library), "conflict_resolution": "skip"},
        }
        return resolve_with_precedence(
            defaults=MediaShelfConfig(),
            file_overrides=base,
            cli_overrides=overrides,
        )

    return _make


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
