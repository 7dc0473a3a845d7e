"""Configuration file handling and startup validation."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigError
from .models import MediaShelfConfig
from .resolver import (
    ENV_PREFIX,
    assign_nested,
    environment_overrides,
    flatten_for_env,
    resolve_with_precedence,
)

DEFAULT_CONFIG_PATH = Path("~/.mediashelf/config.yaml")
STAMP_PREFIX = "# Last updated: "
_HEADER_LINES = (
    "# MediaShelf configuration file",
    "# Generated automatically; manage via `mediashelf config set`.",
    "# organization.conflict_resolution must be set (skip, rename or overwrite)",
    "# before the pipeline will start.",
)


class ConfigManager:
    """Read and write the YAML configuration file and build resolved configs.

    Args:
        config_path: File location; defaults to ``~/.mediashelf/config.yaml``.
        env: Environment consulted for ``MEDIASHELF__`` overrides
            (``os.environ`` when omitted).
    """

    def __init__(self, config_path: Path | None = None, *, env: Mapping[str, str] | None = None) -> None:
        self._config_path = Path(config_path or DEFAULT_CONFIG_PATH).expanduser()
        self._env = os.environ if env is None else env

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(
        self,
        *,
        cli_overrides: Mapping[str, Any] | None = None,
        include_env: bool = True,
        ensure_file: bool = True,
        env_overrides: Mapping[str, str] | None = None,
    ) -> MediaShelfConfig:
        """Resolve the configuration from the file, environment and CLI overrides.

        Args:
            cli_overrides: Highest-precedence values, dotted keys allowed.
            include_env: Whether ``MEDIASHELF__`` variables are applied.
            ensure_file: Create the file with defaults when it is missing.
            env_overrides: Environment to use instead of the one given at
                construction.

        Raises:
            ConfigError: If the file cannot be parsed or values are invalid.
        """
        if ensure_file:
            self.ensure_exists()
        environ = self._env if env_overrides is None else env_overrides
        return resolve_with_precedence(
            defaults=MediaShelfConfig(),
            file_overrides=self._read_file(),
            env_overrides=environment_overrides(environ) if include_env else None,
            cli_overrides=cli_overrides,
        )

    def load_file_overrides(self) -> dict[str, Any]:
        """Return the raw mapping stored in the file (empty if missing)."""
        return self._read_file()

    def save(self, config: MediaShelfConfig | Mapping[str, Any]) -> None:
        """Write ``config`` to the file, replacing it atomically."""
        data = config.model_dump(mode="json") if isinstance(config, MediaShelfConfig) else dict(config)
        self._write_file(data)

    def ensure_exists(self) -> Path:
        """Write a default configuration file if none exists yet."""
        if not self._config_path.exists():
            self._write_file(MediaShelfConfig().model_dump(mode="json"))
        return self._config_path

    def read_text(self) -> str:
        if not self._config_path.exists():
            return ""
        return self._config_path.read_text(encoding="utf-8")

    def _read_file(self) -> dict[str, Any]:
        try:
            text = self._config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise ConfigError(f"Unable to read configuration file {self._config_path}: {exc}") from exc

        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Failed to parse configuration file {self._config_path}: {exc}") from exc
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ConfigError("Configuration file must contain a mapping at the top level.")
        return raw

    def _write_file(self, data: Mapping[str, Any]) -> None:
        stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        body = "\n".join(_HEADER_LINES + (STAMP_PREFIX + stamp,)) + "\n"
        body += yaml.safe_dump(dict(data), sort_keys=False)

        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._config_path.with_name(self._config_path.name + ".tmp")
        try:
            tmp_path.write_text(body, encoding="utf-8")
            os.replace(tmp_path, self._config_path)
        except OSError as exc:
            raise ConfigError(f"Unable to write configuration file {self._config_path}: {exc}") from exc


def require_runnable(config: MediaShelfConfig) -> MediaShelfConfig:
    """Validate settings that have no safe default before the pipeline starts.

    Raises:
        ConfigError: If the conflict policy has not been chosen explicitly.
    """
    if config.organization.conflict_resolution is None:
        raise ConfigError(
            "organization.conflict_resolution is not set; choose one of skip, rename or overwrite."
        )
    return config


__all__ = [
    "ConfigManager",
    "DEFAULT_CONFIG_PATH",
    "STAMP_PREFIX",
    "ENV_PREFIX",
    "MediaShelfConfig",
    "resolve_with_precedence",
    "environment_overrides",
    "flatten_for_env",
    "assign_nested",
    "require_runnable",
    "ConfigError",
]
