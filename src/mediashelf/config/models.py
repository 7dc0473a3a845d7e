"""Configuration models describing MediaShelf settings."""

from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

ConflictPolicy = Literal["skip", "rename", "overwrite"]


class MediaShelfBaseModel(BaseModel):
    """Shared configuration for MediaShelf settings models.

    Settings are frozen: a reload builds a new ``MediaShelfConfig`` rather than
    mutating the instance components already hold.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)


class DiscoverySettings(MediaShelfBaseModel):
    """Settings for watching directories and validating candidates.

    Attributes:
        watch_roots: Directories monitored for new files.
        recursive: Whether subdirectories of each root are watched.
        quiet_window_seconds: Time a file must stay unchanged before it is queued.
        extensions: Allowed file extensions (leading dot, case-insensitive).
        exclude_patterns: Regular expressions; matching paths are dropped.
        min_file_size_mb: Files smaller than this are rejected.
        scan_interval_minutes: Interval of the reconciliation scan; 0 disables it.
        use_watcher: Whether filesystem events are observed at all.
    """

    watch_roots: List[Path] = Field(default_factory=list)
    recursive: bool = True
    quiet_window_seconds: float = Field(default=3.0, ge=0, le=300)
    extensions: List[str] = Field(default_factory=lambda: [".mkv", ".mp4", ".avi", ".m4v", ".wmv"])
    exclude_patterns: List[str] = Field(
        default_factory=lambda: [r".*\.tmp$", r".*\.part$", r".*\.incomplete$"]
    )
    min_file_size_mb: float = Field(default=1.0, ge=0)
    scan_interval_minutes: float = Field(default=5.0, ge=0, le=1440)
    use_watcher: bool = True

    @model_validator(mode="after")
    def _check_extensions(self) -> "DiscoverySettings":
        for extension in self.extensions:
            if not extension or not extension.startswith("."):
                raise ValueError(f"File extension '{extension}' must start with a dot")
        return self


class QueueSettings(MediaShelfBaseModel):
    """Bounded queue and worker pool sizing.

    Attributes:
        registration_capacity: Capacity of the registration queue.
        classification_capacity: Capacity of the classification queue.
        registration_workers: Worker threads consuming registration work.
        classification_workers: Worker threads consuming classification work.
        fairness_window: High-priority dequeues allowed before a normal item is served.
        shutdown_grace_seconds: Time in-flight items get to finish on shutdown.
    """

    registration_capacity: int = Field(default=100, ge=1)
    classification_capacity: int = Field(default=50, ge=1)
    registration_workers: int = Field(default=1, ge=1, le=16)
    classification_workers: int = Field(default=2, ge=1, le=16)
    fairness_window: int = Field(default=4, ge=1)
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)


class ClassificationSettings(MediaShelfBaseModel):
    """Decision policy for classifier output.

    Attributes:
        auto_threshold: Confidence at or above which items are auto-classified.
        suggest_threshold: Confidence at or above which a suggestion is offered.
        batch_size: Number of items submitted to the classifier together.
        timeout_seconds: Deadline for a single classifier call.
    """

    auto_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    suggest_threshold: float = Field(default=0.50, ge=0.0, le=1.0)
    batch_size: int = Field(default=10, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ClassificationSettings":
        if self.suggest_threshold > self.auto_threshold:
            raise ValueError("suggest_threshold must not exceed auto_threshold")
        return self


class OrganizationOptions(MediaShelfBaseModel):
    """Settings that govern target paths and moves.

    Attributes:
        library_root: Root of the category-organized library.
        path_template: Template used to build target paths.
        conflict_resolution: Policy applied when the target already exists.
            Deliberately unset by default; the pipeline refuses to start until
            an explicit choice is made.
        move_timeout_seconds: Deadline for a single move operation.
        copy_buffer_kb: Buffer size for cross-volume copies.
    """

    library_root: Path = Path("~/MediaShelf/library")
    path_template: str = "{LibraryRoot}/{Category}/{Filename}"
    conflict_resolution: Optional[ConflictPolicy] = None
    move_timeout_seconds: float = Field(default=300.0, gt=0)
    copy_buffer_kb: int = Field(default=1024, ge=4)


class RetrySettings(MediaShelfBaseModel):
    """Retry policy for transient failures.

    Attributes:
        max_retries: Transient failures tolerated before an item stays in ``Error``.
        backoff_seconds: Base delay of the exponential backoff.
        max_backoff_seconds: Upper bound for any backoff delay.
    """

    max_retries: int = Field(default=3, ge=0)
    backoff_seconds: float = Field(default=2.0, ge=0)
    max_backoff_seconds: float = Field(default=60.0, ge=0)


class StateSettings(MediaShelfBaseModel):
    """Location of persisted pipeline state.

    Attributes:
        directory: Directory holding tracked items and the transaction log.
    """

    directory: Path = Path("~/.mediashelf/state")


class LoggingSettings(MediaShelfBaseModel):
    """Runtime logging configuration.

    Attributes:
        level: Logging verbosity level.
        max_size_mb: Maximum log size before rotation.
        backup_count: Number of historical log files to retain.
    """

    level: str = "INFO"
    max_size_mb: int = 100
    backup_count: int = 5


class CLIOptions(MediaShelfBaseModel):
    """CLI presentation defaults.

    Attributes:
        quiet_default: Whether commands suppress non-error output by default.
        status_limit: Default number of items listed by ``status``.
    """

    quiet_default: bool = False
    status_limit: int = 50


class MediaShelfConfig(MediaShelfBaseModel):
    """Top-level configuration struct for MediaShelf."""

    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    queues: QueueSettings = Field(default_factory=QueueSettings)
    classification: ClassificationSettings = Field(default_factory=ClassificationSettings)
    organization: OrganizationOptions = Field(default_factory=OrganizationOptions)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    state: StateSettings = Field(default_factory=StateSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cli: CLIOptions = Field(default_factory=CLIOptions)


__all__ = [
    "ConflictPolicy",
    "MediaShelfBaseModel",
    "DiscoverySettings",
    "QueueSettings",
    "ClassificationSettings",
    "OrganizationOptions",
    "RetrySettings",
    "StateSettings",
    "LoggingSettings",
    "CLIOptions",
    "MediaShelfConfig",
]
