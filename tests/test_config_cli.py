"""CLI tests for configuration commands."""

import os
from pathlib import Path
from typing import Any

from click.testing import CliRunner

from mediashelf.cli import cli
from mediashelf.config import ConfigManager


def _env_with_home(tmp_path: Path) -> dict[str, Any]:
    env = {key: value for key, value in os.environ.items() if not key.startswith("MEDIASHELF__")}
    env["HOME"] = str(tmp_path)
    return env


def _config_path(tmp_path: Path) -> Path:
    return tmp_path / ".mediashelf" / "config.yaml"


def test_config_view_creates_and_displays_config(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(cli, ["config", "view"], env=_env_with_home(tmp_path))

    assert result.exit_code == 0
    assert "discovery:" in result.output
    assert _config_path(tmp_path).exists()


def test_config_view_applies_environment_unless_disabled(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env_with_home(tmp_path)
    env["MEDIASHELF__QUEUES__FAIRNESS_WINDOW"] = "9"

    with_env = runner.invoke(cli, ["config", "view"], env=env)
    without_env = runner.invoke(cli, ["config", "view", "--no-env"], env=env)

    assert "fairness_window: 9" in with_env.output
    assert "fairness_window: 4" in without_env.output


def test_config_set_updates_value_and_writes_diff(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    result = runner.invoke(
        cli, ["config", "set", "organization.conflict_resolution", "--value", "rename"], env=env
    )

    assert result.exit_code == 0
    assert "rename" in result.output
    config = ConfigManager(config_path=_config_path(tmp_path), env={}).load(include_env=False)
    assert config.organization.conflict_resolution == "rename"


def test_config_set_twice_reports_no_changes(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env_with_home(tmp_path)
    args = ["config", "set", "retry.max_retries", "--value", "5"]

    runner.invoke(cli, args, env=env)
    result = runner.invoke(cli, args, env=env)

    assert result.exit_code == 0
    assert "No changes applied" in result.output


def test_config_set_rejects_invalid_value(tmp_path: Path) -> None:
    runner = CliRunner()
    env = _env_with_home(tmp_path)

    result = runner.invoke(
        cli, ["config", "set", "organization.conflict_resolution", "--value", "merge"], env=env
    )

    assert result.exit_code != 0
    assert "Invalid configuration values" in result.output
    config = ConfigManager(config_path=_config_path(tmp_path), env={}).load(include_env=False)
    assert config.organization.conflict_resolution is None
