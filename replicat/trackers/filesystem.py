"""Filesystem storage tracker backed by watchdog."""

import logging
import os
import queue
import shutil
import stat as stat_module
import threading
from datetime import datetime
from typing import BinaryIO, Iterator

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..tree import Entry, from_timestamp_ns, hash_stream, normalize_path, to_timestamp_ns
from .base import StorageTracker, TrackerError

logger = logging.getLogger(__name__)

# Kinds placed on the notification queue
CREATE = "create"
WRITE = "write"
REMOVE = "remove"
RENAME = "rename"


def validate_path(directory: str) -> str:
    """Canonicalize a directory, creating it when missing."""
    if not directory:
        raise TrackerError("No directory configured")
    full_path = os.path.realpath(os.path.expanduser(directory))
    try:
        os.makedirs(full_path, exist_ok=True)
    except OSError as e:
        raise TrackerError(f"Cannot create {full_path}: {e}") from e
    if not os.path.isdir(full_path):
        raise TrackerError(f"{full_path} is not a directory")
    return full_path


class _QueueingHandler(FileSystemEventHandler):
    """Turns watchdog events into (kind, absolute path) notifications."""

    def __init__(self, tracker: "FilesystemTracker"):
        super().__init__()
        self.tracker = tracker

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type == "created":
            self.tracker.enqueue(CREATE, event.src_path)
        elif event.event_type == "modified":
            self.tracker.enqueue(WRITE, event.src_path)
        elif event.event_type == "deleted":
            self.tracker.enqueue(REMOVE, event.src_path)
        elif event.event_type == "moved":
            if getattr(event, "is_synthetic", False):
                # Children of a moved folder; the folder's own event covers them
                return
            self.tracker.enqueue(RENAME, event.src_path)
            self.tracker.enqueue(RENAME, event.dest_path)


class FilesystemTracker(StorageTracker):
    """Tracks a local directory.

    Watchdog delivers notifications on its own thread; they go onto a
    bounded queue that a single monitor thread drains, so events for one
    tracker are applied strictly in order.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._events: queue.Queue[tuple[str, str]] = queue.Queue(
            maxsize=self.config.queue_size
        )
        self._observer: Observer | None = None
        self._monitor: threading.Thread | None = None
        self._stop = threading.Event()

    # ==================== Paths ====================

    def full_path(self, path: str) -> str:
        return os.path.join(self.root, *path.split("/")) if path else self.root

    def relative_path(self, full_path: str) -> str:
        """Strip the root prefix. Returns "" for the root or paths outside it."""
        full_path = os.fsdecode(full_path)
        if full_path != self.root and not full_path.startswith(self.root + os.sep):
            return ""
        return normalize_path(full_path[len(self.root):])

    def _validate_root(self, root: str) -> str:
        return validate_path(root)

    # ==================== Primitives ====================

    def _entry_from_stat(self, path: str, st: os.stat_result) -> Entry:
        is_directory = stat_module.S_ISDIR(st.st_mode)
        entry = Entry(
            relative_path=path,
            is_directory=is_directory,
            size=0 if is_directory else st.st_size,
            mod_time=from_timestamp_ns(st.st_mtime_ns),
            object_id=st.st_ino,
        )
        if not is_directory:
            try:
                with open(self.full_path(path), "rb") as f:
                    entry.content_hash = hash_stream(f)
            except OSError as e:
                logger.debug(f"Could not hash {path}: {e}")
        return entry

    def _stat(self, path: str) -> Entry | None:
        try:
            st = os.stat(self.full_path(path))
        except (FileNotFoundError, NotADirectoryError):
            return None
        return self._entry_from_stat(path, st)

    def _scan(self, prefix: str = "") -> Iterator[Entry]:
        base = self.full_path(prefix)
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames.sort()
            for name in dirnames + sorted(filenames):
                path = self.relative_path(os.path.join(dirpath, name))
                if not path:
                    continue
                entry = self._stat(path)
                if entry is not None:
                    yield entry

    def _make_path(self, path: str, is_directory: bool) -> None:
        full_path = self.full_path(path)
        if is_directory:
            os.makedirs(full_path, exist_ok=True)
        else:
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            # Never touch an existing file; its mod time decides which copy wins
            if not os.path.lexists(full_path):
                open(full_path, "ab").close()

    def _move(self, source: str, destination: str) -> None:
        target = self.full_path(destination)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        os.rename(self.full_path(source), target)

    def _remove(self, path: str) -> None:
        full_path = self.full_path(path)
        if os.path.isdir(full_path) and not os.path.islink(full_path):
            shutil.rmtree(full_path)
        else:
            try:
                os.remove(full_path)
            except FileNotFoundError:
                pass

    def _write(self, path: str, stream: BinaryIO, mod_time: datetime | None) -> None:
        full_path = self.full_path(path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as f:
            shutil.copyfileobj(stream, f)
        if mod_time is not None:
            self._set_mod_time(path, mod_time)

    def _set_mod_time(self, path: str, mod_time: datetime) -> None:
        ns = to_timestamp_ns(mod_time)
        os.utime(self.full_path(path), ns=(ns, ns))

    def _open(self, path: str) -> BinaryIO:
        return open(self.full_path(path), "rb")

    # ==================== Watching ====================

    def enqueue(self, kind: str, full_path: str) -> None:
        try:
            self._events.put_nowait((kind, os.fsdecode(full_path)))
        except queue.Full:
            logger.warning(f"Notification queue full, dropping {kind} {full_path}")

    def _start_watching(self) -> None:
        self._stop.clear()
        self._observer = Observer()
        self._observer.schedule(_QueueingHandler(self), self.root, recursive=True)
        self._observer.start()
        self._monitor = threading.Thread(
            target=self._monitor_loop, name=f"monitor-{self.node_name}", daemon=True
        )
        self._monitor.start()
        logger.info(f"Watching {self.root}")

    def _stop_watching(self) -> None:
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        if self._monitor is not None:
            self._monitor.join(timeout=5)
            self._monitor = None

    def _monitor_loop(self) -> None:
        while not self._stop.is_set():
            try:
                kind, full_path = self._events.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.process_notification(kind, full_path)
            except Exception as e:
                logger.error(f"Failed to process {kind} for {full_path}: {e}")

    def process_notification(self, kind: str, full_path: str) -> None:
        """Apply one raw backend notification to the tree."""
        path = self.relative_path(full_path)
        if not path or self._ignored(path):
            return

        logger.debug(f"{kind}: {path}")
        if kind == CREATE:
            self._on_created(path)
        elif kind == WRITE:
            self._on_written(path)
        elif kind == REMOVE:
            self._on_removed(path)
        elif kind == RENAME:
            self._on_rename_half(path)
