"""Layered configuration resolution.

Four layers are merged in order of increasing precedence: built-in defaults,
the YAML file, ``MEDIASHELF__SECTION__KEY`` environment variables and CLI
overrides. File and CLI layers may use dotted keys (``queues.fairness_window``)
as well as nested mappings.
"""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from copy import deepcopy
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml
from pydantic import ValidationError

from .exceptions import ConfigError
from .models import MediaShelfConfig

ENV_PREFIX = "MEDIASHELF__"


def resolve_with_precedence(
    *,
    defaults: MediaShelfConfig,
    file_overrides: Mapping[str, Any] | None = None,
    env_overrides: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> MediaShelfConfig:
    """Merge configuration layers: defaults < file < environment < CLI.

    Raises:
        ConfigError: If a layer is malformed or the merged values fail validation.
    """
    merged = defaults.model_dump(mode="json")
    for layer, overrides in (("file", file_overrides), ("environment", env_overrides), ("cli", cli_overrides)):
        if overrides is not None:
            _merge_into(merged, expand_dotted(overrides, layer=layer))

    try:
        return MediaShelfConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration values: {_describe(exc)}") from exc


def environment_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``MEDIASHELF__SECTION__KEY`` variables into a nested mapping.

    Values are read as YAML literals so that numbers, booleans, ``null`` and
    flow lists keep their type; unparsable values are kept as strings.
    """
    overrides: dict[str, Any] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        try:
            value: Any = yaml.safe_load(raw)
        except yaml.YAMLError:
            value = raw
        assign_nested(overrides, path, value)
    return overrides


def flatten_for_env(config: MediaShelfConfig) -> Dict[str, str]:
    """Render every setting as the environment variable that would override it."""
    flat: Dict[str, str] = {}
    for path, value in _leaves(config.model_dump(mode="json")):
        name = ENV_PREFIX + "__".join(part.upper() for part in path)
        if value is None:
            flat[name] = "null"
        elif isinstance(value, list):
            flat[name] = yaml.safe_dump(value, default_flow_style=True).strip()
        else:
            flat[name] = str(value)
    return flat


def expand_dotted(overrides: Mapping[str, Any], *, layer: str = "cli") -> dict[str, Any]:
    """Turn dotted keys into nested mappings, merging with nested input."""
    if not isinstance(overrides, MappingABC):
        raise ConfigError(f"{layer.capitalize()} overrides must be a mapping.")

    nested: dict[str, Any] = {}
    for key, value in overrides.items():
        if not isinstance(key, str) or not key.strip():
            raise ConfigError(f"{layer.capitalize()} override keys must be non-empty strings.")
        path = [part for part in key.split(".") if part]
        if isinstance(value, MappingABC):
            value = expand_dotted(value, layer=layer)
        parent = _parent_of(nested, path, layer=layer)
        existing = parent.get(path[-1])
        if isinstance(value, dict) and isinstance(existing, dict):
            _merge_into(existing, value)
        else:
            parent[path[-1]] = value
    return nested


def assign_nested(target: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign ``value`` into nested dictionaries following ``path``."""
    node = target
    for segment in path[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = node[segment] = {}
        node = child
    node[path[-1]] = value


def _parent_of(nested: dict[str, Any], path: list[str], *, layer: str) -> dict[str, Any]:
    node = nested
    for depth, segment in enumerate(path[:-1]):
        child = node.setdefault(segment, {})
        if not isinstance(child, dict):
            joined = ".".join(path[: depth + 1])
            raise ConfigError(f"{layer.capitalize()} override {'.'.join(path)} conflicts with value of {joined}.")
        node = child
    return node


def _merge_into(base: dict[str, Any], overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        current = base.get(key)
        if isinstance(value, MappingABC) and isinstance(current, dict):
            _merge_into(current, value)
        else:
            base[key] = deepcopy(value)


def _leaves(data: Mapping[str, Any], prefix: Optional[list[str]] = None) -> Iterable[tuple[list[str], Any]]:
    for key, value in data.items():
        path = (prefix or []) + [str(key)]
        if isinstance(value, MappingABC):
            yield from _leaves(value, path)
        else:
            yield path, value


def _describe(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "config"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


__all__ = [
    "ENV_PREFIX",
    "resolve_with_precedence",
    "environment_overrides",
    "flatten_for_env",
    "expand_dotted",
    "assign_nested",
]
