"""Tests for the configuration manager and precedence rules."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from mediashelf.config import (
    ConfigError,
    ConfigManager,
    MediaShelfConfig,
    flatten_for_env,
    require_runnable,
    resolve_with_precedence,
)


def test_ensure_exists_writes_defaults_with_header(tmp_path: Path) -> None:
    manager = ConfigManager(config_path=tmp_path / "config.yaml", env={})

    path = manager.ensure_exists()

    text = path.read_text(encoding="utf-8")
    assert text.startswith("# MediaShelf configuration file")
    data = yaml.safe_load(text)
    assert data["organization"]["conflict_resolution"] is None
    assert data["discovery"]["extensions"] == [".mkv", ".mp4", ".avi", ".m4v", ".wmv"]


def test_defaults_match_documented_values() -> None:
    config = MediaShelfConfig()

    assert config.discovery.quiet_window_seconds == 3.0
    assert config.queues.registration_capacity == 100
    assert config.queues.classification_capacity == 50
    assert config.classification.auto_threshold == pytest.approx(0.85)
    assert config.classification.suggest_threshold == pytest.approx(0.50)
    assert config.classification.batch_size == 10
    assert config.retry.max_retries == 3
    assert config.organization.path_template == "{LibraryRoot}/{Category}/{Filename}"


def test_precedence_file_then_env_then_cli(tmp_path: Path) -> None:
    manager = ConfigManager(config_path=tmp_path / "config.yaml", env={})
    manager.save({"queues": {"registration_capacity": 5, "classification_capacity": 6}})

    env = {
        "MEDIASHELF__QUEUES__REGISTRATION_CAPACITY": "7",
        "MEDIASHELF__DISCOVERY__EXTENSIONS": "['.mkv']",
        "UNRELATED": "1",
    }
    config = manager.load(env_overrides=env, cli_overrides={"queues.registration_capacity": 9})

    assert config.queues.registration_capacity == 9
    assert config.queues.classification_capacity == 6
    assert config.discovery.extensions == [".mkv"]


def test_include_env_false_ignores_environment(tmp_path: Path) -> None:
    env = {"MEDIASHELF__RETRY__MAX_RETRIES": "8"}
    manager = ConfigManager(config_path=tmp_path / "config.yaml", env=env)

    assert manager.load().retry.max_retries == 8
    assert manager.load(include_env=False).retry.max_retries == 3


def test_invalid_values_raise_config_error(tmp_path: Path) -> None:
    manager = ConfigManager(config_path=tmp_path / "config.yaml", env={})
    manager.save({"queues": {"registration_capacity": 0}})

    with pytest.raises(ConfigError):
        manager.load()


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(ConfigError):
        resolve_with_precedence(defaults=MediaShelfConfig(), file_overrides={"queues": {"bogus": 1}})


def test_suggest_threshold_cannot_exceed_auto_threshold() -> None:
    with pytest.raises(ConfigError):
        resolve_with_precedence(
            defaults=MediaShelfConfig(),
            cli_overrides={"classification.suggest_threshold": 0.9, "classification.auto_threshold": 0.8},
        )


def test_extensions_require_leading_dot() -> None:
    with pytest.raises(ConfigError):
        resolve_with_precedence(defaults=MediaShelfConfig(), cli_overrides={"discovery.extensions": ["mkv"]})


def test_malformed_yaml_raises_config_error(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("queues: [unclosed", encoding="utf-8")

    with pytest.raises(ConfigError):
        ConfigManager(config_path=path, env={}).load()


def test_config_is_frozen() -> None:
    config = MediaShelfConfig()

    with pytest.raises(ValidationError):
        config.retry.max_retries = 10  # type: ignore[misc]


def test_require_runnable_needs_explicit_conflict_policy() -> None:
    with pytest.raises(ConfigError, match="conflict_resolution"):
        require_runnable(MediaShelfConfig())

    chosen = resolve_with_precedence(
        defaults=MediaShelfConfig(), cli_overrides={"organization.conflict_resolution": "rename"}
    )
    assert require_runnable(chosen) is chosen


def test_flatten_for_env_uses_double_underscore_keys() -> None:
    flat = flatten_for_env(MediaShelfConfig())

    assert flat["MEDIASHELF__QUEUES__FAIRNESS_WINDOW"] == "4"
    assert flat["MEDIASHELF__ORGANIZATION__CONFLICT_RESOLUTION"] == "null"
