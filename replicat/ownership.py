"""Ownership ledger used to break replication loops.

Every path carries the node that authored its most recent change. A node
about to broadcast a change for a path that a peer touched within the TTL
is echoing that peer's change and stays quiet.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .tree import normalize_path, utc_now

logger = logging.getLogger(__name__)

OWNERSHIP_TTL = 20.0


@dataclass(frozen=True)
class Ownership:
    owner: str
    observed: datetime


class OwnershipLedger:
    """Path -> (owner, observed time) table shared by inbound and outbound paths."""

    def __init__(
        self,
        node_name: str,
        ttl: float = OWNERSHIP_TTL,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.node_name = node_name
        self.ttl = timedelta(seconds=ttl)
        self._clock = clock
        self._entries: dict[str, Ownership] = {}
        self._lock = threading.Lock()

    def claim(self, path: str) -> bool:
        """Claim a path before broadcasting a local change.

        Returns:
            False when another node owns the path within the TTL and the
            broadcast must be suppressed, True otherwise.
        """
        key = normalize_path(path)
        now = self._clock()
        with self._lock:
            existing = self._entries.get(key)
            if (
                existing
                and existing.owner != self.node_name
                and now - existing.observed <= self.ttl
            ):
                logger.debug(f"Suppressing echo for {key}, owned by {existing.owner}")
                return False
            self._entries[key] = Ownership(self.node_name, now)
            return True

    def record(self, path: str, owner: str, observed: datetime | None = None) -> None:
        """Record that a peer authored the latest change to a path."""
        key = normalize_path(path)
        with self._lock:
            self._entries[key] = Ownership(owner, observed or self._clock())

    def owner(self, path: str) -> Ownership | None:
        with self._lock:
            return self._entries.get(normalize_path(path))

    def __len__(self) -> int:
        return len(self._entries)
