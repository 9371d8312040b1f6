"""Semantic change events exchanged between nodes."""

import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .tree import decode_bytes, encode_bytes, format_time, normalize_path, parse_time, utc_now


class EventName(str, Enum):
    """Wire tokens for event kinds."""

    CREATE = "notify.Create"
    WRITE = "notify.Write"
    REMOVE = "notify.Remove"
    RENAME = "notify.Rename"
    REPLICAT_RENAME = "replicat.Rename"
    CATALOG = "replicat.Catalog"
    FILE_REQUEST = "replicat.FileRequest"
    START_TEST = "startTest"
    END_TEST = "endTest"


RENAME_EVENTS = frozenset({EventName.RENAME, EventName.REPLICAT_RENAME})

# Events that describe a change to a path and are subject to ownership
CHANGE_EVENTS = frozenset(
    {EventName.CREATE, EventName.WRITE, EventName.REMOVE} | RENAME_EVENTS
)

# Events followed by a file body when the destination is known
BODY_EVENTS = frozenset({EventName.CREATE, EventName.WRITE} | RENAME_EVENTS)


@dataclass(frozen=True)
class Event:
    """An immutable semantic change."""

    name: EventName
    path: str = ""
    source_path: str = ""
    source: str = ""
    time: datetime = field(default_factory=utc_now)
    mod_time: datetime | None = None
    is_directory: bool = False
    network_source: str = ""
    raw_data: bytes | None = None

    @property
    def is_rename(self) -> bool:
        return self.name in RENAME_EVENTS

    @property
    def owned_path(self) -> str:
        """Path whose ownership this event claims."""
        return self.path or self.source_path

    def stamped(self, source: str) -> "Event":
        """Copy with the originating node filled in."""
        return replace(
            self,
            source=self.source or source,
            network_source=self.network_source or source,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON wire form."""
        return {
            "Source": self.source,
            "Name": self.name.value,
            "Path": self.path,
            "SourcePath": self.source_path,
            "Time": format_time(self.time),
            "ModTime": format_time(self.mod_time),
            "IsDirectory": self.is_directory,
            "NetworkSource": self.network_source,
            "RawData": encode_bytes(self.raw_data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """Create from the JSON wire form.

        Raises:
            ValueError: Unknown event name or malformed field.
        """
        if not isinstance(data, dict):
            raise ValueError("Event payload must be a JSON object")
        try:
            return cls(
                name=EventName(data["Name"]),
                path=normalize_path(data.get("Path") or ""),
                source_path=normalize_path(data.get("SourcePath") or ""),
                source=data.get("Source") or "",
                time=parse_time(data.get("Time")) or utc_now(),
                mod_time=parse_time(data.get("ModTime")),
                is_directory=bool(data.get("IsDirectory", False)),
                network_source=data.get("NetworkSource") or "",
                raw_data=decode_bytes(data.get("RawData")),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed event: {e}") from e


class EventLog:
    """Bounded history of recent events, newest first."""

    def __init__(self, size: int = 100):
        self._events: deque[Event] = deque(maxlen=size)
        self._lock = threading.Lock()

    def add(self, event: Event) -> None:
        with self._lock:
            self._events.appendleft(event)

    def recent(self, limit: int | None = None) -> list[Event]:
        with self._lock:
            events = list(self._events)
        return events[:limit] if limit else events

    def __len__(self) -> int:
        return len(self._events)
