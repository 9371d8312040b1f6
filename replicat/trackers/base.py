"""Storage tracker contract shared by every backend.

A tracker owns one Tree Model and mediates every change to it. Backends
supply a handful of primitive operations (scan, stat, make, move, remove,
write, open) and feed their native notifications into the local event
handlers defined here; everything else (catalogs, renames, statistics,
broadcasting) is backend neutral.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING, Any, BinaryIO, Callable, Iterator

from ..catalog import (
    CatalogReconciler,
    decode_catalog,
    encode_catalog,
    encode_file_request,
)
from ..config import TrackerConfig
from ..events import BODY_EVENTS, Event, EventName
from ..membership import NodeDescriptor, NodeStatus
from ..ownership import OwnershipLedger
from ..rename import RenameResolver
from ..transport import Upload
from ..tree import (
    Entry,
    InvalidPathError,
    TreeModel,
    md5_stream,
    normalize_path,
    parent_path,
)

if TYPE_CHECKING:
    from ..transport import PeerTransport

logger = logging.getLogger(__name__)

STAT_TOTAL_FILES = "TotalFiles"
STAT_TOTAL_FOLDERS = "TotalFolders"
STAT_FILES_SENT = "FilesSent"
STAT_FILES_RECEIVED = "FilesReceived"
STAT_FILES_DELETED = "FilesDeleted"
STAT_CATALOGS_SENT = "CatalogsSent"
STAT_CATALOGS_RECEIVED = "CatalogsReceived"

STAT_NAMES = (
    STAT_TOTAL_FILES,
    STAT_TOTAL_FOLDERS,
    STAT_FILES_SENT,
    STAT_FILES_RECEIVED,
    STAT_FILES_DELETED,
    STAT_CATALOGS_SENT,
    STAT_CATALOGS_RECEIVED,
)


class TrackerError(Exception):
    """A backend operation failed."""


class PathNotFoundError(TrackerError, KeyError):
    """The path is not in the tracked tree."""


class ChangeListener:
    """Receives notifications about local changes. Methods default to no-ops."""

    def folder_created(self, name: str) -> None:
        pass

    def folder_deleted(self, name: str) -> None:
        pass

    def folder_updated(self, name: str) -> None:
        pass

    def file_created(self, name: str) -> None:
        pass

    def file_deleted(self, name: str) -> None:
        pass

    def file_updated(self, name: str) -> None:
        pass


class LogOnlyChangeListener(ChangeListener):
    """Logs every change at debug level."""

    def folder_created(self, name: str) -> None:
        logger.debug(f"Folder created: {name}")

    def folder_deleted(self, name: str) -> None:
        logger.debug(f"Folder deleted: {name}")

    def folder_updated(self, name: str) -> None:
        logger.debug(f"Folder updated: {name}")

    def file_created(self, name: str) -> None:
        logger.debug(f"File created: {name}")

    def file_deleted(self, name: str) -> None:
        logger.debug(f"File deleted: {name}")

    def file_updated(self, name: str) -> None:
        logger.debug(f"File updated: {name}")


class CountingChangeListener(ChangeListener):
    """Counts notifications by kind. Handy in tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.folders_created = 0
        self.folders_deleted = 0
        self.folders_updated = 0
        self.files_created = 0
        self.files_deleted = 0
        self.files_updated = 0

    def _bump(self, counter: str) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def folder_created(self, name: str) -> None:
        self._bump("folders_created")

    def folder_deleted(self, name: str) -> None:
        self._bump("folders_deleted")

    def folder_updated(self, name: str) -> None:
        self._bump("folders_updated")

    def file_created(self, name: str) -> None:
        self._bump("files_created")

    def file_deleted(self, name: str) -> None:
        self._bump("files_deleted")

    def file_updated(self, name: str) -> None:
        self._bump("files_updated")

    @property
    def created(self) -> int:
        return self.folders_created + self.files_created

    @property
    def deleted(self) -> int:
        return self.folders_deleted + self.files_deleted


class TrackerStatistics:
    """Named counters, safe to bump from any thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters = {name: 0 for name in STAT_NAMES}

    def increment(self, name: str, delta: int = 1) -> None:
        if name not in self._counters:
            raise ValueError(f"Unknown statistic: {name}")
        with self._lock:
            self._counters[name] += delta

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)


StatusCallback = Callable[[NodeStatus], None]


class StorageTracker(ABC):
    """Owns a Tree Model and keeps it in step with a storage backend."""

    # Object stores have no real directories
    tracks_directories = True
    transient_errors: tuple[type[BaseException], ...] = (OSError,)

    def __init__(
        self,
        node_name: str,
        config: TrackerConfig | None = None,
        listener: ChangeListener | None = None,
        ownership: OwnershipLedger | None = None,
        transport: "PeerTransport | None" = None,
        request_attempts: int = 3,
    ):
        self.node_name = node_name
        self.config = config or TrackerConfig()
        self.listener = listener or LogOnlyChangeListener()
        self.ownership = ownership
        self.transport = transport
        self.root = ""
        self.tree = TreeModel()
        self.lock = threading.RLock()
        self.statistics = TrackerStatistics()
        self.reconciler = CatalogReconciler(request_attempts)
        self.renames = RenameResolver(
            self.lock,
            on_rename=self._complete_rename,
            on_move_out=self._move_out,
            on_move_in=self._move_in,
            timeout=self.config.rename_timeout,
        )
        self.descriptor: NodeDescriptor | None = None
        self._status = NodeStatus.INITIAL_SCAN
        self._status_callbacks: list[StatusCallback] = []
        self._setup = False

    # ==================== Backend primitives ====================

    @abstractmethod
    def _validate_root(self, root: str) -> str:
        """Check the root exists (creating it if needed) and return its canonical form."""

    @abstractmethod
    def _scan(self, prefix: str = "") -> Iterator[Entry]:
        """Yield entries below prefix, parents before children."""

    @abstractmethod
    def _stat(self, path: str) -> Entry | None:
        """Current backend metadata for path, including the content hash."""

    @abstractmethod
    def _make_path(self, path: str, is_directory: bool) -> None:
        """Make path exist, creating missing parents."""

    @abstractmethod
    def _move(self, source: str, destination: str) -> None:
        pass

    @abstractmethod
    def _remove(self, path: str) -> None:
        """Remove path recursively. A missing path is not an error."""

    @abstractmethod
    def _write(self, path: str, stream: BinaryIO, mod_time: datetime | None) -> None:
        pass

    @abstractmethod
    def _set_mod_time(self, path: str, mod_time: datetime) -> None:
        pass

    @abstractmethod
    def _open(self, path: str) -> BinaryIO:
        pass

    def _start_watching(self) -> None:
        pass

    def _stop_watching(self) -> None:
        pass

    # ==================== Lifecycle ====================

    @property
    def status(self) -> NodeStatus:
        return self._status

    def add_status_callback(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    def set_status(self, status: NodeStatus) -> None:
        if status == self._status:
            return
        logger.info(f"{self.node_name} status: {self._status.value} -> {status.value}")
        self._status = status
        if self.descriptor is not None:
            self.descriptor.status = status
        for callback in self._status_callbacks:
            callback(status)

    def initialize(self, root: str, descriptor: NodeDescriptor | None = None) -> None:
        """Validate the root, scan it and start watching. Idempotent."""
        with self.lock:
            if self._setup:
                return
            if descriptor is not None:
                self.descriptor = descriptor
                descriptor.status = self._status
            self.root = self._validate_root(root)
            self.set_status(NodeStatus.INITIAL_SCAN)

            for entry in self._scan():
                if self._ignored(entry.relative_path):
                    continue
                entry.origin_server = entry.origin_server or self.node_name
                self.tree.insert(entry)
                self._notify("created", entry)

            files, folders = self.tree.counts()
            logger.info(f"Initial scan of {self.root}: {files} files, {folders} folders")
            self._setup = True
            self._start_watching()
            self.set_status(NodeStatus.JOINING_CLUSTER)

    def cleanup(self) -> None:
        """Stop watching and drop pending renames."""
        self._stop_watching()
        self.renames.cancel()
        with self.lock:
            self._setup = False

    # ==================== Directives ====================

    def _require_path(self, path: str) -> str:
        key = normalize_path(path)
        if not key:
            raise InvalidPathError("Operation needs a path below the root")
        return key

    def _retry(self, operation: Callable[..., Any], *args: Any) -> Any:
        attempts = self.config.retry_attempts
        last_error: BaseException | None = None
        for attempt in range(attempts):
            try:
                return operation(*args)
            except self.transient_errors as e:
                last_error = e
                logger.debug(
                    f"{operation.__name__}{args} failed, attempt {attempt + 1}/{attempts}: {e}"
                )
                time.sleep(self.config.retry_backoff)
        logger.error(f"{operation.__name__}{args} failed after {attempts} attempts")
        raise TrackerError(f"{operation.__name__} failed: {last_error}") from last_error

    def _ensure_parents(self, path: str, announce: bool = False) -> None:
        """Insert missing ancestor folders of path into the tree.

        With announce set, each inserted folder is treated as a local
        creation: listeners hear about it and peers are told.
        """
        if not self.tracks_directories:
            return
        missing = []
        parent = parent_path(path)
        while parent and parent not in self.tree:
            missing.append(parent)
            parent = parent_path(parent)
        for folder in reversed(missing):
            entry = self._stat(folder)
            if entry is None:
                continue
            entry.origin_server = self.node_name
            self.tree.insert(entry)
            if announce:
                self._notify("created", entry)
                self._broadcast(self._change_event(EventName.CREATE, entry))

    def create_path(self, path: str, is_directory: bool) -> Entry | None:
        """Make a path exist on the backend and in the tree.

        Returns:
            The new entry, or None for folders on backends without folders.

        Raises:
            TrackerError: The backend kept failing.
        """
        key = self._require_path(path)
        with self.lock:
            self._retry(self._make_path, key, is_directory)
            if is_directory and not self.tracks_directories:
                return None
            entry = self._stat(key)
            if entry is None:
                raise TrackerError(f"Created {key} but it does not exist")
            self._ensure_parents(key)
            existing = self.tree.get(key)
            if existing is not None:
                self.tree.update_metadata(key, entry.size, entry.mod_time, entry.content_hash)
                return existing.copy()
            entry.origin_server = self.node_name
            self.tree.insert(entry)
            return entry.copy()

    def rename(self, source: str, destination: str, is_directory: bool) -> None:
        """Apply a rename directive.

        An empty source creates the destination; an empty destination
        removes the source.
        """
        src = normalize_path(source)
        dst = normalize_path(destination)
        if src and dst:
            with self.lock:
                self._retry(self._move, src, dst)
                current = self._stat(dst)
                self._ensure_parents(dst)
                moved = self.tree.rename(src, dst)
                if moved is None and current is not None:
                    current.origin_server = self.node_name
                    self.tree.insert(current)
                elif moved is not None and current is not None:
                    moved.object_id = current.object_id
                    self.tree.update_metadata(
                        dst, current.size, current.mod_time, current.content_hash
                    )
        elif dst:
            self.create_path(dst, is_directory)
        elif src:
            self.delete(src)
        else:
            raise InvalidPathError("Rename needs a source or a destination")

    def delete(self, path: str) -> None:
        """Remove a path from the tree and the backend."""
        key = self._require_path(path)
        with self.lock:
            self._retry(self._remove, key)
            removed = self.tree.remove(key)
            if removed:
                self.statistics.increment(STAT_FILES_DELETED, len(removed))

    def get_entry(self, path: str) -> Entry:
        """Full entry for path.

        Raises:
            PathNotFoundError: Not tracked.
        """
        with self.lock:
            entry = self.tree.get(path)
            if entry is None:
                raise PathNotFoundError(path)
            return entry.copy()

    def list_folders(self) -> list[str]:
        with self.lock:
            return sorted(e.relative_path for e in self.tree.snapshot() if e.is_directory)

    def folder_tree(self) -> dict[str, list[str]]:
        """Folder -> file names, the legacy DirTreeMap."""
        with self.lock:
            return self.tree.folder_map()

    def rescan(self) -> dict[str, list[str]]:
        """Walk the backend again and bring the tree in line with it.

        Paths missed by the watcher are added and paths that vanished are
        dropped, without broadcasting. Returns the resulting folder tree.
        """
        with self.lock:
            found = {}
            for entry in self._scan():
                if not self._ignored(entry.relative_path):
                    found[entry.relative_path] = entry
            added = removed = 0
            for path, entry in found.items():
                if path not in self.tree:
                    entry.origin_server = self.node_name
                    self.tree.insert(entry)
                    self._notify("created", entry)
                    added += 1
            for entry in self.tree.snapshot():
                path = entry.relative_path
                if path not in found and path in self.tree:
                    self.tree.remove(path)
                    self._notify("deleted", entry)
                    removed += 1
            if added or removed:
                logger.info(f"Rescan of {self.root}: {added} added, {removed} dropped")
            return self.tree.folder_map()

    def open_file(self, path: str) -> BinaryIO:
        return self._open(self._require_path(path))

    # ==================== Catalogs ====================

    def catalog_event(self) -> Event:
        with self.lock:
            return Event(
                name=EventName.CATALOG,
                source=self.node_name,
                network_source=self.node_name,
                raw_data=encode_catalog(self.tree.snapshot()),
            )

    def send_catalog(self) -> None:
        """Broadcast our snapshot for peers to compare against."""
        event = self.catalog_event()
        self.statistics.increment(STAT_CATALOGS_SENT)
        if self.transport is not None:
            self.transport.broadcast(event)

    def process_catalog(self, event: Event) -> dict[str, dict[str, Entry]]:
        """Reconcile a peer's catalog and request what we are missing.

        Returns:
            The file requests sent, keyed by peer name.
        """
        remote_entries = decode_catalog(event.raw_data)
        self.statistics.increment(STAT_CATALOGS_RECEIVED)
        logger.info(f"Catalog from {event.source}: {len(remote_entries)} entries")

        with self.lock:
            missing_dirs = self.reconciler.reconcile(
                remote_entries, event.source, self.tree.get
            )
            for folder in missing_dirs:
                if self.ownership is not None:
                    self.ownership.record(folder.relative_path, event.source)
                try:
                    self.create_path(folder.relative_path, True)
                except TrackerError as e:
                    logger.error(f"Could not create folder {folder.relative_path}: {e}")

            requests = self.reconciler.requests(self.tree.get)
            if len(self.reconciler) > 0:
                self.set_status(NodeStatus.JOINING_CLUSTER)
            else:
                self.set_status(NodeStatus.ONLINE)

        if self.transport is not None:
            for peer, files in requests.items():
                logger.info(f"Requesting {len(files)} files from {peer}")
                self.transport.send_to(
                    peer,
                    Event(
                        name=EventName.FILE_REQUEST,
                        source=self.node_name,
                        network_source=self.node_name,
                        raw_data=encode_file_request(files),
                    ),
                )
        return requests

    def send_requested_paths(self, paths: dict[str, Entry], target: str) -> int:
        """Upload each requested file to the requesting peer.

        Returns:
            Number of uploads queued.
        """
        sent = 0
        for path in paths:
            try:
                entry = self.get_entry(path)
            except (PathNotFoundError, InvalidPathError):
                logger.warning(f"{target} requested {path} which we do not have")
                continue
            if entry.is_directory:
                continue
            if self.transport is not None:
                self.transport.upload_to(
                    target, Upload(entry, partial(self.open_file, entry.relative_path))
                )
            self.statistics.increment(STAT_FILES_SENT)
            sent += 1
        return sent

    def receive_file(self, entry: Entry, md5_hex: str, stream: BinaryIO) -> bool:
        """Store a file body sent by a peer.

        Returns:
            True if the body was written, False if the local copy was kept.
        """
        key = self._require_path(entry.relative_path)
        with self.lock:
            local = self.tree.get(key)
            local = local.copy() if local else None

        if local is not None and local.is_directory:
            logger.warning(f"Upload for {key} collides with a local folder, ignoring")
            return False

        if local is not None:
            if md5_hex and self._local_md5(key) == md5_hex:
                self._align_mod_time(key, local, entry)
                return False
            # An empty local file is the placeholder made by the Create event
            if (
                local.size
                and local.mod_time
                and entry.mod_time
                and local.mod_time > entry.mod_time
            ):
                logger.warning(f"Upload for {key} is older than the local copy, ignoring")
                return False

        with self.lock:
            if self.tracks_directories:
                folder = parent_path(key)
                if folder and folder not in self.tree:
                    self.create_path(folder, True)
        try:
            self._write(key, stream, entry.mod_time)
        except OSError as e:
            raise TrackerError(f"Writing {key} failed: {e}") from e

        with self.lock:
            current = self._stat(key)
            if current is None:
                raise TrackerError(f"Wrote {key} but it does not exist")
            if entry.content_hash and current.content_hash != entry.content_hash:
                logger.warning(f"Content hash mismatch after receiving {key}")
            current.origin_server = entry.origin_server or self.node_name
            existed = key in self.tree
            self.tree.insert(current)
            self._notify("updated" if existed else "created", current)
            self.statistics.increment(STAT_FILES_RECEIVED)
            self._mark_received(key, current.mod_time)
        return True

    def _local_md5(self, path: str) -> str | None:
        try:
            with self._open(path) as f:
                return md5_stream(f)
        except OSError:
            return None

    def _align_mod_time(self, key: str, local: Entry, entry: Entry) -> None:
        """Same content already here; adopt the newer modification time."""
        with self.lock:
            if entry.mod_time and (local.mod_time is None or local.mod_time < entry.mod_time):
                self._retry(self._set_mod_time, key, entry.mod_time)
                current = self._stat(key)
                if current is not None:
                    self.tree.update_metadata(
                        key, current.size, current.mod_time, current.content_hash
                    )
                    local = current
            self._mark_received(key, local.mod_time)

    def _mark_received(self, key: str, mod_time: datetime | None) -> None:
        if self.reconciler.satisfied(key, mod_time) and len(self.reconciler) == 0:
            self.set_status(NodeStatus.ONLINE)

    # ==================== Statistics ====================

    def get_statistics(self) -> dict[str, int]:
        stats = self.statistics.snapshot()
        with self.lock:
            stats[STAT_TOTAL_FILES], stats[STAT_TOTAL_FOLDERS] = self.tree.counts()
        return stats

    def increment_statistic(self, name: str, delta: int = 1) -> None:
        self.statistics.increment(name, delta)

    # ==================== Local change handling ====================

    def _ignored(self, path: str) -> bool:
        return path.rpartition("/")[2] in self.config.ignore

    def _notify(self, change: str, entry: Entry) -> None:
        kind = "folder" if entry.is_directory else "file"
        callback = getattr(self.listener, f"{kind}_{change}")
        try:
            callback(entry.relative_path)
        except Exception as e:
            logger.error(f"Change listener failed on {entry.relative_path}: {e}")

    def _broadcast(self, event: Event, entry: Entry | None = None) -> None:
        if self.transport is None:
            return
        upload = None
        if (
            entry is not None
            and not entry.is_directory
            and event.name in BODY_EVENTS
            and not event.source_path
        ):
            upload = Upload(entry.copy(), partial(self.open_file, entry.relative_path))
        self.transport.broadcast(event, upload)

    def _change_event(self, name: EventName, entry: Entry, **fields: Any) -> Event:
        return Event(
            name=name,
            path=fields.pop("path", entry.relative_path),
            source=self.node_name,
            network_source=self.node_name,
            mod_time=entry.mod_time,
            is_directory=entry.is_directory,
            **fields,
        )

    def _track_new(self, entry: Entry, name: EventName = EventName.CREATE) -> None:
        """Insert a newly seen entry, then everything below it if it is a folder."""
        entry.origin_server = self.node_name
        self._ensure_parents(entry.relative_path, announce=True)
        self.tree.insert(entry)
        self._notify("created", entry)
        self._broadcast(self._change_event(name, entry), entry)

        if entry.is_directory:
            for child in self._scan(entry.relative_path):
                if child.relative_path in self.tree or self._ignored(child.relative_path):
                    continue
                child.origin_server = self.node_name
                self.tree.insert(child)
                self._notify("created", child)
                self._broadcast(self._change_event(EventName.CREATE, child), child)

    def _on_created(self, path: str) -> None:
        with self.lock:
            if path in self.tree or self._ignored(path):
                return
            entry = self._stat(path)
            if entry is None:
                return
            self._track_new(entry)

    def _on_written(self, path: str) -> None:
        if self._ignored(path):
            return
        with self.lock:
            entry = self.tree.get(path)
            current = self._stat(path)
            if current is None:
                return
            if entry is None:
                self._track_new(current)
                return
            if entry.is_directory:
                self._notify("updated", entry)
                return
            if (
                entry.content_hash == current.content_hash
                and entry.mod_time == current.mod_time
                and entry.size == current.size
            ):
                return
            self.tree.update_metadata(path, current.size, current.mod_time, current.content_hash)
            entry.origin_server = self.node_name
            self._notify("updated", entry)
            self._broadcast(self._change_event(EventName.WRITE, entry), entry)

    def _on_removed(self, path: str) -> None:
        with self.lock:
            entry = self.tree.get(path)
            if entry is None or self._stat(path) is not None:
                return
            self.tree.remove(path)
            self._notify("deleted", entry)
            self._broadcast(self._change_event(EventName.REMOVE, entry))

    def _on_rename_half(self, path: str) -> None:
        """Classify one half of a rename and hand it to the resolver."""
        with self.lock:
            entry = self.tree.get(path)
            current = self._stat(path)
            if entry is not None and current is None:
                self.renames.add_source(entry.object_id, path, entry.copy())
            elif current is not None and entry is None:
                self.renames.add_destination(current.object_id, path, current)
            elif current is not None and entry is not None:
                if current.object_id != entry.object_id:
                    # Renamed over an existing path
                    self.renames.add_destination(current.object_id, path, current)

    def _complete_rename(self, source: str, destination: str, entry: Entry | None) -> None:
        moved = self.tree.rename(source, destination)
        if moved is None:
            self._move_in(destination, entry)
            return
        if entry is not None:
            moved.object_id = entry.object_id
            self.tree.update_metadata(
                destination, entry.size, entry.mod_time, entry.content_hash
            )
        moved.origin_server = self.node_name
        self._notify("deleted", Entry(source, is_directory=moved.is_directory))
        self._notify("created", moved)
        self._broadcast(
            self._change_event(EventName.REPLICAT_RENAME, moved, source_path=source)
        )

    def _move_out(self, source: str, entry: Entry | None) -> None:
        removed = self.tree.remove(source)
        if not removed:
            return
        gone = removed[0] if removed[0].relative_path == source else entry
        if gone is None:
            return
        self._notify("deleted", gone)
        self._broadcast(
            self._change_event(EventName.REPLICAT_RENAME, gone, path="", source_path=source)
        )

    def _move_in(self, destination: str, entry: Entry | None) -> None:
        if destination in self.tree:
            return
        entry = entry or self._stat(destination)
        if entry is None:
            return
        entry.relative_path = destination
        self._track_new(entry, EventName.REPLICAT_RENAME)
