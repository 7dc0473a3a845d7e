"""Target path generation and conflict handling."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Mapping, Optional

from mediashelf.classification.categories import normalize_category
from mediashelf.config.models import ConflictPolicy
from mediashelf.errors import ErrorKind, MoveError

LOGGER = logging.getLogger(__name__)

_FORBIDDEN = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_UNDERSCORE_RUNS = re.compile(r"_{2,}")
_VARIABLE = re.compile(r"\{(\w+)\}")
_RESERVED_NAMES = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{index}" for index in range(1, 10)}
    | {f"LPT{index}" for index in range(1, 10)}
)
MAX_NUMBERED_SUFFIX = 10


def sanitize_component(value: str) -> str:
    """Return ``value`` as a single safe path component.

    Forbidden and control characters become ``_``; runs of ``_`` collapse;
    leading and trailing ``_``, spaces and dots are stripped; Windows reserved
    device names get a ``_`` prefix; an empty result becomes ``unknown``.
    """
    cleaned = _FORBIDDEN.sub("_", value)
    cleaned = _UNDERSCORE_RUNS.sub("_", cleaned)
    cleaned = cleaned.strip("_ .")
    if not cleaned:
        return "unknown"
    if cleaned.split(".", 1)[0].upper() in _RESERVED_NAMES:
        cleaned = f"_{cleaned}"
    return cleaned


class PathGenerator:
    """Render target paths from a template and apply the conflict policy.

    Supported variables: ``{LibraryRoot}``, ``{Category}``, ``{Filename}``,
    ``{FilenameWithoutExtension}``, ``{Extension}``, ``{Fingerprint}``,
    ``{Season}`` and ``{Episode}``. Unknown variables are kept verbatim. A
    segment whose only content is a missing season or episode is dropped.
    """

    def __init__(
        self,
        library_root: Path,
        template: str,
        conflict_policy: ConflictPolicy,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.library_root = Path(library_root).expanduser()
        self.template = template
        self.conflict_policy = conflict_policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def render(
        self,
        *,
        category: str,
        filename: str,
        fingerprint: str = "",
        metadata: Optional[Mapping[str, str]] = None,
    ) -> Path:
        """Return the target path for a file before conflict handling."""
        metadata = metadata or {}
        source_name = Path(filename)
        values = {
            "Category": normalize_category(category),
            "Filename": filename,
            "FilenameWithoutExtension": source_name.stem,
            "Extension": source_name.suffix.lstrip("."),
            "Fingerprint": fingerprint,
            "Season": metadata.get("season", ""),
            "Episode": metadata.get("episode", ""),
        }

        template = self.template.replace("\\", "/")
        prefix = "{LibraryRoot}"
        relative = template[len(prefix) :] if template.startswith(prefix) else template

        components: list[str] = []
        for segment in relative.split("/"):
            if not segment:
                continue
            variables = _VARIABLE.findall(segment)
            if variables and all(name in ("Season", "Episode") and not values[name] for name in variables):
                continue
            rendered = _VARIABLE.sub(lambda match: values.get(match.group(1), match.group(0)), segment)
            components.append(sanitize_component(rendered))

        return self.library_root.joinpath(*components)

    def resolve_conflict(self, candidate: Path, *, source: Optional[Path] = None) -> tuple[Path, bool]:
        """Apply the conflict policy to ``candidate``.

        Returns:
            tuple[Path, bool]: The destination to use and whether the policy
            altered it.

        Raises:
            MoveError: With ``MOVE_CONFLICT`` when the policy is ``skip`` and the
            target already exists.
        """
        if not candidate.exists() or (source is not None and candidate == source):
            return candidate, False

        if self.conflict_policy == "overwrite":
            LOGGER.info("Target %s exists; it will be overwritten", candidate)
            return candidate, False
        if self.conflict_policy == "skip":
            raise MoveError(ErrorKind.MOVE_CONFLICT, f"target already exists: {candidate}")

        for counter in range(1, MAX_NUMBERED_SUFFIX + 1):
            renamed = candidate.with_name(f"{candidate.stem} ({counter}){candidate.suffix}")
            if not renamed.exists():
                return renamed, True
        stamp = self._clock().strftime("%Y%m%d_%H%M%S")
        renamed = candidate.with_name(f"{candidate.stem}_{stamp}{candidate.suffix}")
        if renamed.exists():
            raise MoveError(ErrorKind.MOVE_CONFLICT, f"no free name for {candidate}")
        return renamed, True

    def target_for(
        self,
        *,
        category: str,
        filename: str,
        fingerprint: str = "",
        metadata: Optional[Mapping[str, str]] = None,
        source: Optional[Path] = None,
    ) -> tuple[Path, bool]:
        """Render the target path and resolve conflicts in one step."""
        candidate = self.render(category=category, filename=filename, fingerprint=fingerprint, metadata=metadata)
        return self.resolve_conflict(candidate, source=source)


__all__ = ["PathGenerator", "sanitize_component", "MAX_NUMBERED_SUFFIX"]
