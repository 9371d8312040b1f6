"""Pairs rename half-events into whole renames.

Backends report a rename as two unrelated notifications, one for the path
that vanished and one for the path that appeared. The only thing linking
them is the object identity (an inode, or an etag for object stores). A
half that never meets its partner within the timeout is an item crossing
the tracked boundary: a move out of the tree or a move into it.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .tree import Entry

logger = logging.getLogger(__name__)

RENAME_TIMEOUT = 0.25

RenameCallback = Callable[[str, str, Entry | None], None]
MoveOutCallback = Callable[[str, Entry | None], None]
MoveInCallback = Callable[[str, Entry | None], None]


@dataclass
class PendingRename:
    """A rename with at least one half observed."""

    object_id: Any
    source_path: str | None = None
    source_entry: Entry | None = None
    destination_path: str | None = None
    destination_entry: Entry | None = None
    created_at: float = field(default_factory=time.monotonic)

    @property
    def complete(self) -> bool:
        return self.source_path is not None and self.destination_path is not None


class RenameResolver:
    """Tracks renames in progress, keyed by object identity.

    Callbacks run while holding the lock passed in, which is the owning
    tracker's lock.
    """

    def __init__(
        self,
        lock: threading.RLock,
        on_rename: RenameCallback,
        on_move_out: MoveOutCallback,
        on_move_in: MoveInCallback,
        timeout: float = RENAME_TIMEOUT,
    ):
        self._lock = lock
        self._on_rename = on_rename
        self._on_move_out = on_move_out
        self._on_move_in = on_move_in
        self.timeout = timeout
        self._pending: dict[Any, PendingRename] = {}
        self._timers: dict[Any, threading.Timer] = {}

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending(self) -> list[PendingRename]:
        with self._lock:
            return list(self._pending.values())

    @staticmethod
    def _key(object_id: Any, path: str) -> Any:
        # Without an identity a half can never pair; keep it apart by path
        return object_id if object_id else ("path", path)

    def add_source(self, object_id: Any, path: str, entry: Entry | None = None) -> None:
        """Record the half for a path that vanished."""
        with self._lock:
            key = self._key(object_id, path)
            record = self._pending.get(key)
            if record and record.source_path is not None:
                self._finish_one_sided(key)
                record = None
            if record is None:
                record = self._pending[key] = PendingRename(object_id)
            record.source_path = path
            record.source_entry = entry
            self._advance(key, record)

    def add_destination(self, object_id: Any, path: str, entry: Entry | None) -> None:
        """Record the half for a path that appeared."""
        with self._lock:
            key = self._key(object_id, path)
            record = self._pending.get(key)
            if record and record.destination_path is not None:
                self._finish_one_sided(key)
                record = None
            if record is None:
                record = self._pending[key] = PendingRename(object_id)
            record.destination_path = path
            record.destination_entry = entry
            self._advance(key, record)

    def _advance(self, key: Any, record: PendingRename) -> None:
        if record.complete:
            self._cancel_timer(key)
            del self._pending[key]
            logger.debug(
                f"Rename paired: {record.source_path} -> {record.destination_path}"
            )
            self._on_rename(
                record.source_path, record.destination_path, record.destination_entry
            )
            return

        if key not in self._timers:
            timer = threading.Timer(self.timeout, self._reap, args=(key, record))
            timer.daemon = True
            self._timers[key] = timer
            timer.start()

    def _reap(self, key: Any, record: PendingRename) -> None:
        with self._lock:
            # A cancelled timer may still fire after its record was replaced
            if self._pending.get(key) is record:
                self._finish_one_sided(key)

    def _finish_one_sided(self, key: Any) -> None:
        self._cancel_timer(key)
        record = self._pending.pop(key)
        if record.source_path is not None:
            logger.debug(f"Rename reaped as move out: {record.source_path}")
            self._on_move_out(record.source_path, record.source_entry)
        else:
            logger.debug(f"Rename reaped as move in: {record.destination_path}")
            self._on_move_in(record.destination_path, record.destination_entry)

    def _cancel_timer(self, key: Any) -> None:
        timer = self._timers.pop(key, None)
        if timer:
            timer.cancel()

    def flush(self) -> None:
        """Finalize every pending record as one-sided right away."""
        with self._lock:
            for key in list(self._pending):
                self._finish_one_sided(key)

    def cancel(self) -> None:
        """Drop all pending records without acting on them."""
        with self._lock:
            for key in list(self._timers):
                self._cancel_timer(key)
            self._pending.clear()
