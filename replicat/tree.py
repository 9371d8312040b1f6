"""In-memory model of a tracked tree.

Maps relative paths to Entry records. Paths are '/'-separated, relative to
the tracker root, with no leading separator. The root itself is never a key.
"""

import base64
import hashlib
import os
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
CHUNK_SIZE = 64 * 1024

# Zero time sent by peers that never set one
_ZERO_TIME = "0001-01-01T00:00:00Z"
_FRACTION = re.compile(r"\.(\d+)")


class InvalidPathError(ValueError):
    """Raised for paths that name the root or escape it."""


def normalize_path(path: str) -> str:
    """Normalize a path to its relative tree key.

    Returns "" for the root. Raises InvalidPathError for paths that climb
    out of the root.
    """
    if os.sep != "/":
        path = path.replace(os.sep, "/")
    parts = [part for part in path.split("/") if part not in ("", ".")]
    if ".." in parts:
        raise InvalidPathError(f"Path escapes the tracked root: {path}")
    return "/".join(parts)


def parent_path(path: str) -> str:
    return path.rpartition("/")[0]


def is_descendant(path: str, ancestor: str) -> bool:
    return path.startswith(ancestor + "/")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_timestamp_ns(ns: int) -> datetime:
    """Convert a nanosecond timestamp to a microsecond-precision datetime."""
    return EPOCH + timedelta(microseconds=ns // 1000)


def to_timestamp_ns(moment: datetime) -> int:
    """Convert a datetime to integer nanoseconds without float rounding."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) // timedelta(microseconds=1) * 1000


def format_time(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment else None


def parse_time(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp. Empty values and the zero time map to None."""
    if not value or value == _ZERO_TIME:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # Peers may send nine fractional digits; datetime keeps six
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value)
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def encode_bytes(data: bytes | None) -> str | None:
    return base64.b64encode(data).decode("ascii") if data else None


def decode_bytes(data: str | None) -> bytes | None:
    return base64.b64decode(data) if data else None


def hash_stream(stream: BinaryIO) -> bytes:
    """BLAKE2b-256 digest of a binary stream; the authoritative content hash."""
    digest = hashlib.blake2b(digest_size=32)
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.digest()


def hash_bytes(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def md5_stream(stream: BinaryIO) -> str:
    """MD5 hex digest, used only for the upload short-circuit check."""
    digest = hashlib.md5()
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


@dataclass
class Entry:
    """Metadata for one tracked file or directory."""

    relative_path: str
    is_directory: bool = False
    size: int = 0
    mod_time: datetime | None = None
    content_hash: bytes | None = None
    origin_server: str = ""
    # Backend identity (inode or etag). Local only, never serialized.
    object_id: Any = None

    def copy(self) -> "Entry":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the EntryJSON wire form."""
        return {
            "RelativePath": self.relative_path,
            "IsDirectory": self.is_directory,
            "Hash": encode_bytes(self.content_hash),
            "ModTime": format_time(self.mod_time),
            "Size": self.size,
            "ServerName": self.origin_server,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Entry":
        """Create from the EntryJSON wire form."""
        return cls(
            relative_path=normalize_path(data["RelativePath"]),
            is_directory=bool(data.get("IsDirectory", False)),
            size=int(data.get("Size") or 0),
            mod_time=parse_time(data.get("ModTime")),
            content_hash=decode_bytes(data.get("Hash")),
            origin_server=data.get("ServerName") or "",
        )


class TreeModel:
    """Mapping of relative path to Entry.

    Not thread safe on its own; the owning tracker holds its lock around
    every call.
    """

    def __init__(self):
        self._entries: dict[str, Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._entries

    def _key(self, path: str) -> str:
        key = normalize_path(path)
        if not key:
            raise InvalidPathError("The tracker root is not an entry")
        return key

    def insert(self, entry: Entry) -> None:
        key = self._key(entry.relative_path)
        entry.relative_path = key
        self._entries[key] = entry

    def get(self, path: str) -> Entry | None:
        return self._entries.get(normalize_path(path))

    def descendants(self, path: str) -> list[str]:
        key = normalize_path(path)
        return [p for p in self._entries if is_descendant(p, key)]

    def remove(self, path: str) -> list[Entry]:
        """Remove an entry and everything below it. Returns what was removed."""
        key = self._key(path)
        removed = []
        if key in self._entries:
            removed.append(self._entries.pop(key))
        for child in self.descendants(key):
            removed.append(self._entries.pop(child))
        return removed

    def rename(self, source: str, destination: str) -> Entry | None:
        """Move an entry, and any descendants, to a new path.

        Descendants move even when source itself is not a key, which is how
        implicit folders on object stores behave. Returns the moved entry.
        """
        src = self._key(source)
        dst = self._key(destination)
        entry = self._entries.pop(src, None)
        if entry is not None:
            entry.relative_path = dst
            self._entries[dst] = entry
        for child in self.descendants(src):
            moved = self._entries.pop(child)
            moved.relative_path = dst + child[len(src):]
            self._entries[moved.relative_path] = moved
        return entry

    def update_metadata(
        self,
        path: str,
        size: int,
        mod_time: datetime | None,
        content_hash: bytes | None,
    ) -> Entry:
        entry = self._entries[self._key(path)]
        entry.size = size
        entry.mod_time = mod_time
        entry.content_hash = None if entry.is_directory else content_hash
        return entry

    def snapshot(self) -> list[Entry]:
        """Copies of every entry, ordered by path."""
        return [self._entries[key].copy() for key in sorted(self._entries)]

    def counts(self) -> tuple[int, int]:
        """Return (files, folders)."""
        folders = sum(1 for e in self._entries.values() if e.is_directory)
        return len(self._entries) - folders, folders

    def folder_map(self) -> dict[str, list[str]]:
        """Folder -> sorted file names. The root folder is ""."""
        folders: dict[str, list[str]] = {"": []}
        for key, entry in self._entries.items():
            if entry.is_directory:
                folders.setdefault(key, [])
        for key, entry in self._entries.items():
            if not entry.is_directory:
                parent, _, leaf = key.rpartition("/")
                folders.setdefault(parent, []).append(leaf)
        return {folder: sorted(files) for folder, files in folders.items()}

    def clear(self) -> None:
        self._entries.clear()
