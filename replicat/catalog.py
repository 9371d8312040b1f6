"""Catalog reconciliation.

A catalog is a full snapshot of a peer's tree. Comparing it against the
local tree tells us which files the peer holds a newer copy of; those go
into the needed-files table and are requested from the peer that offered
them.
"""

import json
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from .tree import Entry

logger = logging.getLogger(__name__)

Lookup = Callable[[str], Entry | None]


def encode_catalog(entries: Iterable[Entry]) -> bytes:
    return json.dumps([entry.to_dict() for entry in entries]).encode("utf-8")


def decode_catalog(raw: bytes | None) -> list[Entry]:
    if not raw:
        return []
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("Catalog payload must be a JSON list")
    try:
        return [Entry.from_dict(item) for item in data]
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Malformed catalog entry: {e}") from e


def encode_file_request(entries: dict[str, Entry]) -> bytes:
    return json.dumps({path: entry.to_dict() for path, entry in entries.items()}).encode(
        "utf-8"
    )


def decode_file_request(raw: bytes | None) -> dict[str, Entry]:
    if not raw:
        return {}
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("File request payload must be a JSON object")
    try:
        return {path: Entry.from_dict(item) for path, item in data.items()}
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Malformed file request: {e}") from e


def _before(a: datetime | None, b: datetime | None) -> bool:
    """True when a is strictly earlier than b. A missing time is earliest."""
    if b is None:
        return False
    if a is None:
        return True
    return a < b


def needs_transfer(local: Entry | None, remote: Entry) -> bool:
    """Decide whether a remote file should replace the local copy."""
    if local is None:
        return True
    return not local.content_hash or _before(local.mod_time, remote.mod_time)


@dataclass
class NeededFile:
    """A file we decided to fetch, and the peer we fetch it from."""

    entry: Entry
    source: str
    attempts: int = 0


class CatalogReconciler:
    """Builds and drains the needed-files table.

    Not thread safe; the owning tracker calls it under its lock.
    """

    def __init__(
        self,
        request_attempts: int = 3,
        coin: Callable[[], bool] | None = None,
    ):
        self.request_attempts = request_attempts
        self._coin = coin or (lambda: random.random() < 0.5)
        self._needed: dict[str, NeededFile] = {}

    def __len__(self) -> int:
        return len(self._needed)

    def __contains__(self, path: str) -> bool:
        return path in self._needed

    @property
    def needed(self) -> dict[str, NeededFile]:
        return dict(self._needed)

    def reconcile(
        self, remote_entries: Iterable[Entry], source: str, lookup: Lookup
    ) -> list[Entry]:
        """Compare a peer's catalog with the local tree.

        Args:
            remote_entries: The peer's snapshot.
            source: Name of the peer that sent it.
            lookup: Returns the local entry for a path, or None.

        Returns:
            Directories the peer has that we lack. The caller creates them
            before any file in them arrives.
        """
        missing_dirs = []
        for remote in remote_entries:
            path = remote.relative_path
            local = lookup(path)

            if remote.is_directory:
                if local is None:
                    missing_dirs.append(remote)
                continue

            if local is not None and local.is_directory:
                logger.warning(f"Catalog from {source}: {path} is a folder here, skipping")
                continue

            if not needs_transfer(local, remote):
                current = self._needed.get(path)
                if current and not _before(local.mod_time, current.entry.mod_time):
                    del self._needed[path]
                continue

            self._offer(path, remote, source)

        return missing_dirs

    def _offer(self, path: str, remote: Entry, source: str) -> None:
        current = self._needed.get(path)
        if current is None:
            use_new = True
        else:
            use_new = _before(current.entry.mod_time, remote.mod_time)
            if (
                not use_new
                and current.entry.mod_time == remote.mod_time
                and current.entry.content_hash == remote.content_hash
            ):
                # Same version offered twice; either peer will do
                use_new = self._coin()

        if use_new:
            logger.debug(f"Need {path} from {source}")
            self._needed[path] = NeededFile(remote.copy(), source)

    def requests(self, lookup: Lookup) -> dict[str, dict[str, Entry]]:
        """Group outstanding files by the peer to request them from.

        Files already satisfied locally are dropped, as are files requested
        request_attempts times without arriving.
        """
        grouped: dict[str, dict[str, Entry]] = {}
        for path, needed in list(self._needed.items()):
            local = lookup(path)
            if (
                local is not None
                and local.content_hash
                and not _before(local.mod_time, needed.entry.mod_time)
            ):
                del self._needed[path]
                continue

            if needed.attempts >= self.request_attempts:
                logger.warning(
                    f"Giving up on {path} from {needed.source} "
                    f"after {needed.attempts} requests"
                )
                del self._needed[path]
                continue

            needed.attempts += 1
            grouped.setdefault(needed.source, {})[path] = needed.entry
        return grouped

    def satisfied(self, path: str, mod_time: datetime | None) -> bool:
        """Mark a needed file as received if the arriving copy is new enough."""
        needed = self._needed.get(path)
        if needed is None or _before(mod_time, needed.entry.mod_time):
            return False
        del self._needed[path]
        return True

    def clear(self) -> None:
        self._needed.clear()
