"""Discovery service: filesystem events, debounce, validation and reconciliation."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mediashelf.config.models import DiscoverySettings
from mediashelf.ingestion.discovery import CandidateValidator, DirectoryScanner
from mediashelf.ingestion.models import PendingFile
from mediashelf.state import StateRepository
from mediashelf.state.models import FileStatus

LOGGER = logging.getLogger(__name__)

Submit = Callable[[Path], None]


@dataclass(slots=True)
class _Observation:
    size: int
    mtime: float
    changed_at: float


class QuietWindowTracker:
    """Hold paths until their size and mtime stop changing.

    A path becomes ready once it has looked the same for ``quiet_window``
    seconds. Paths that vanish are forgotten.
    """

    def __init__(self, quiet_window: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.quiet_window = quiet_window
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: dict[Path, _Observation] = {}

    def observe(self, path: Path) -> None:
        """Start or restart the quiet window for ``path``."""
        snapshot = _stat(path)
        if snapshot is None:
            return
        with self._lock:
            self._pending[path] = _Observation(snapshot[0], snapshot[1], self._clock())

    def ready(self) -> list[Path]:
        """Return and forget paths whose quiet window has elapsed."""
        now = self._clock()
        ready: list[Path] = []
        with self._lock:
            for path, seen in list(self._pending.items()):
                snapshot = _stat(path)
                if snapshot is None:
                    del self._pending[path]
                    continue
                if snapshot != (seen.size, seen.mtime):
                    self._pending[path] = _Observation(snapshot[0], snapshot[1], now)
                    continue
                if now - seen.changed_at >= self.quiet_window:
                    ready.append(path)
                    del self._pending[path]
        return ready

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class DiscoveryService:
    """Turn filesystem activity under the watch roots into registration work.

    Events from watchdog and the periodic reconciliation scan feed the same
    debounce, validation and duplicate-suppression rules before a path is
    handed to ``submit``. ``submit`` may block; that is how coordinator
    backpressure reaches discovery.
    """

    def __init__(
        self,
        settings: DiscoverySettings,
        submit: Submit,
        repository: StateRepository,
        *,
        roots: Optional[Iterable[Path]] = None,
        skip_dirs: Sequence[Path] = (),
        idle_check: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Initialize the discovery service.

        Args:
            settings: Discovery configuration.
            submit: Callable receiving accepted paths.
            repository: Store used for duplicate suppression.
            roots: Override for ``settings.watch_roots``.
            skip_dirs: Directories never reported (library, state directory).
            idle_check: Returns ``True`` when the pipeline has spare capacity;
                the reconciliation scan waits for it.
        """
        self._settings = settings
        self._submit = submit
        self._repository = repository
        self._roots = [Path(root).expanduser().absolute() for root in (roots or settings.watch_roots)]
        self._scanner = DirectoryScanner(recursive=settings.recursive, skip_dirs=skip_dirs)
        self._validator = CandidateValidator.from_settings(settings)
        self._tracker = QuietWindowTracker(settings.quiet_window_seconds)
        self._idle_check = idle_check or (lambda: True)
        self._events: queue.Queue[Path | None] = queue.Queue()
        self._stop_event = threading.Event()
        self._observer: Optional[Observer] = None
        self._threads: list[threading.Thread] = []
        self._submitted: dict[Path, tuple[int, float]] = {}
        self._submitted_lock = threading.Lock()
        self.rejected = 0
        self.suppressed = 0

    @property
    def roots(self) -> list[Path]:
        """Return the absolute watch roots."""
        return list(self._roots)

    # ------------------------------------------------------------------ #
    # Public API                                                         #
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start the observer, the debounce loop and the reconciliation scan."""
        if self._threads:
            raise RuntimeError("DiscoveryService is already running.")
        self._stop_event.clear()
        if self._settings.use_watcher:
            observer = Observer()
            for root in self._roots:
                if not root.is_dir():
                    LOGGER.warning("Not watching %s: not a directory", root)
                    continue
                observer.schedule(_WatchEventHandler(self._events), str(root), recursive=self._settings.recursive)
            observer.start()
            self._observer = observer
        self._spawn(self._debounce_loop, "mediashelf-discovery")
        if self._settings.scan_interval_minutes > 0:
            self._spawn(self._reconcile_loop, "mediashelf-reconcile")
        LOGGER.info("Watching %s", ", ".join(str(root) for root in self._roots) or "no roots")

    def stop(self) -> None:
        """Stop observing and join the background threads."""
        self._stop_event.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self._events.put(None)
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []

    def notify(self, path: Path) -> None:
        """Report activity on ``path`` as if an event had been observed."""
        self._events.put(Path(path))

    def scan_once(self, *, respect_quiet_window: bool = True) -> int:
        """Walk every root once and offer eligible files.

        Args:
            respect_quiet_window: When true, files modified within the quiet
                window are deferred to the debounce loop instead of submitted.

        Returns:
            int: Number of paths submitted.
        """
        submitted = 0
        now = time.time()
        for root in self._roots:
            for pending in self._scanner.scan(root):
                if self._stop_event.is_set():
                    return submitted
                age = now - pending.modified_at.timestamp() if pending.modified_at else now
                if respect_quiet_window and age < self._settings.quiet_window_seconds:
                    self._tracker.observe(pending.path)
                    continue
                if self.offer(pending):
                    submitted += 1
        if submitted:
            LOGGER.info("Reconciliation scan queued %d file(s)", submitted)
        return submitted

    def offer(self, pending: PendingFile) -> bool:
        """Validate and deduplicate ``pending``, then submit it.

        Returns:
            bool: Whether the path was submitted.
        """
        outcome = self._validator.validate(pending)
        if not outcome.accepted:
            self.rejected += 1
            LOGGER.info("Ignoring %s: %s", pending.path, outcome.reason)
            return False

        existing = self._repository.find_by_source_path(pending.path)
        if existing is not None and existing.status is not FileStatus.MOVED:
            self.suppressed += 1
            with self._submitted_lock:
                self._submitted.pop(pending.path, None)
            LOGGER.debug("Already tracking %s as %s", pending.path, existing.fingerprint[:12])
            return False

        signature = (pending.size_bytes, pending.modified_at.timestamp() if pending.modified_at else 0.0)
        with self._submitted_lock:
            if existing is None and self._submitted.get(pending.path) == signature:
                self.suppressed += 1
                return False
            self._submitted[pending.path] = signature

        self._submit(pending.path)
        return True

    # ------------------------------------------------------------------ #
    # Background loops                                                   #
    # ------------------------------------------------------------------ #

    def _debounce_loop(self) -> None:
        poll = max(0.05, min(1.0, self._settings.quiet_window_seconds / 4 or 0.05))
        while not self._stop_event.is_set():
            try:
                path = self._events.get(timeout=poll)
            except queue.Empty:
                path = None
            if path is not None:
                self._tracker.observe(path)
                # Pull any burst of events before checking readiness.
                while True:
                    try:
                        extra = self._events.get_nowait()
                    except queue.Empty:
                        break
                    if extra is not None:
                        self._tracker.observe(extra)
            for ready in self._tracker.ready():
                pending = self._scanner.describe(ready, self._root_for(ready))
                if pending is None:
                    continue
                try:
                    self.offer(pending)
                except Exception:  # noqa: BLE001 - discovery keeps running
                    LOGGER.exception("Failed to submit %s", ready)

    def _reconcile_loop(self) -> None:
        interval = self._settings.scan_interval_minutes * 60
        while not self._stop_event.wait(interval):
            while not self._idle_check():
                if self._stop_event.wait(1.0):
                    return
            try:
                self.scan_once()
            except Exception:  # noqa: BLE001 - discovery keeps running
                LOGGER.exception("Reconciliation scan failed")

    def _root_for(self, path: Path) -> Optional[Path]:
        for root in self._roots:
            if root == path or root in path.parents:
                return root
        return None

    def _spawn(self, target: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)


class _WatchEventHandler(FileSystemEventHandler):
    """Forward file events into the discovery queue."""

    def __init__(self, queue_handle: queue.Queue[Path | None]) -> None:
        self._queue = queue_handle

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle a filesystem create event."""
        self._enqueue(event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle a filesystem modify event."""
        self._enqueue(event.src_path, event.is_directory)

    def on_closed(self, event: FileSystemEvent) -> None:  # pragma: no cover - inotify only
        """Handle a file-closed-after-write event."""
        self._enqueue(event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:  # pragma: no cover - watchdog-specific
        """Handle a filesystem move event; the destination is the candidate."""
        self._enqueue(getattr(event, "dest_path", "") or event.src_path, event.is_directory)

    def _enqueue(self, raw_path: str | bytes, is_directory: bool) -> None:
        if is_directory:
            return
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode()
        self._queue.put(Path(raw_path).expanduser())


def _stat(path: Path) -> Optional[tuple[int, float]]:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_size, stat.st_mtime


__all__ = ["DiscoveryService", "QuietWindowTracker"]
