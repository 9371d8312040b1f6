"""In-memory storage tracker.

Keeps file bodies in a dict. Local changes are made through the
``simulate_*`` methods, which mutate the store and then feed the same
notifications a real backend would, so the whole pipeline (renames,
ownership, broadcasting) is exercised without touching disk.
"""

import io
import itertools
import logging
from datetime import datetime
from typing import BinaryIO, Iterator

from ..tree import Entry, hash_bytes, is_descendant, normalize_path, parent_path, utc_now
from .base import StorageTracker

logger = logging.getLogger(__name__)


class MemoryTracker(StorageTracker):
    """Tracks a virtual tree held in memory."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # None marks a folder
        self._store: dict[str, bytes | None] = {}
        self._mod_times: dict[str, datetime] = {}
        self._ids: dict[str, int] = {}
        self._id_counter = itertools.count(1)

    def _validate_root(self, root: str) -> str:
        return root or "memory://"

    # ==================== Primitives ====================

    def _put(self, path: str, data: bytes | None, mod_time: datetime | None = None) -> None:
        for folder in self._ancestors(path):
            if folder not in self._store:
                self._put(folder, None)
        self._store[path] = data
        self._mod_times[path] = mod_time or utc_now()
        if path not in self._ids:
            self._ids[path] = next(self._id_counter)

    @staticmethod
    def _ancestors(path: str) -> list[str]:
        folders = []
        parent = parent_path(path)
        while parent:
            folders.append(parent)
            parent = parent_path(parent)
        return list(reversed(folders))

    def _stat(self, path: str) -> Entry | None:
        if path not in self._store:
            return None
        data = self._store[path]
        return Entry(
            relative_path=path,
            is_directory=data is None,
            size=len(data) if data is not None else 0,
            mod_time=self._mod_times[path],
            content_hash=hash_bytes(data) if data is not None else None,
            object_id=self._ids[path],
        )

    def _scan(self, prefix: str = "") -> Iterator[Entry]:
        for path in sorted(self._store):
            if not prefix or is_descendant(path, prefix):
                entry = self._stat(path)
                if entry is not None:
                    yield entry

    def _make_path(self, path: str, is_directory: bool) -> None:
        if path in self._store:
            return
        self._put(path, None if is_directory else b"")

    def _move(self, source: str, destination: str) -> None:
        moving = [source] if source in self._store else []
        moving += [p for p in self._store if is_descendant(p, source)]
        if not moving:
            raise FileNotFoundError(source)
        for folder in self._ancestors(destination):
            if folder not in self._store:
                self._put(folder, None)
        for path in sorted(moving):
            target = destination + path[len(source):]
            self._store[target] = self._store.pop(path)
            self._mod_times[target] = self._mod_times.pop(path)
            self._ids[target] = self._ids.pop(path)

    def _remove(self, path: str) -> None:
        for key in [path] + [p for p in self._store if is_descendant(p, path)]:
            self._store.pop(key, None)
            self._mod_times.pop(key, None)
            self._ids.pop(key, None)

    def _write(self, path: str, stream: BinaryIO, mod_time: datetime | None) -> None:
        self._put(path, stream.read(), mod_time)

    def _set_mod_time(self, path: str, mod_time: datetime) -> None:
        if path not in self._store:
            raise FileNotFoundError(path)
        self._mod_times[path] = mod_time

    def _open(self, path: str) -> BinaryIO:
        if path not in self._store:
            raise FileNotFoundError(path)
        data = self._store[path]
        if data is None:
            raise IsADirectoryError(path)
        return io.BytesIO(data)

    def content(self, path: str) -> bytes | None:
        return self._store.get(normalize_path(path))

    # ==================== Local changes ====================

    def simulate_write(
        self, path: str, data: bytes, mod_time: datetime | None = None
    ) -> None:
        """Create or overwrite a file as a local user would."""
        key = normalize_path(path)
        with self.lock:
            existed = key in self._store
            self._put(key, data, mod_time)
            if existed:
                self._on_written(key)
            else:
                self._on_created(key)

    def simulate_mkdir(self, path: str) -> None:
        """Create a folder and any missing parents."""
        key = normalize_path(path)
        with self.lock:
            for folder in self._ancestors(key) + [key]:
                if folder not in self._store:
                    self._put(folder, None)
                    self._on_created(folder)

    def simulate_remove(self, path: str) -> None:
        key = normalize_path(path)
        with self.lock:
            self._remove(key)
            self._on_removed(key)

    def simulate_rename(self, source: str, destination: str) -> None:
        """Rename inside the tree; produces both halves."""
        src = normalize_path(source)
        dst = normalize_path(destination)
        with self.lock:
            self._move(src, dst)
            self._on_rename_half(src)
            self._on_rename_half(dst)

    def simulate_move_out(self, path: str) -> None:
        """Move a path out of the tree; only the source half is seen."""
        key = normalize_path(path)
        with self.lock:
            self._remove(key)
            self._on_rename_half(key)

    def simulate_move_in(self, path: str, data: bytes | None = None) -> None:
        """Move a path into the tree; only the destination half is seen.

        A None body moves in an empty folder.
        """
        key = normalize_path(path)
        with self.lock:
            self._put(key, data)
            self._on_rename_half(key)
