"""Storage trackers.

Every backend implements the StorageTracker contract; ``create_tracker``
picks one from configuration.
"""

from ..config import Config
from .base import (
    STAT_NAMES,
    ChangeListener,
    CountingChangeListener,
    LogOnlyChangeListener,
    PathNotFoundError,
    StorageTracker,
    TrackerError,
)
from .filesystem import FilesystemTracker
from .memory import MemoryTracker
from .object_store import ObjectStoreTracker


def create_tracker(config: Config, **kwargs) -> StorageTracker:
    """Build the tracker configured by ``config.tracker.backend``."""
    backend = config.tracker.backend
    common = dict(
        node_name=config.node.name,
        config=config.tracker,
        request_attempts=config.cluster.request_attempts,
        **kwargs,
    )
    if backend == "filesystem":
        return FilesystemTracker(**common)
    if backend == "object_store":
        return ObjectStoreTracker(store_config=config.object_store, **common)
    if backend == "memory":
        return MemoryTracker(**common)
    raise ValueError(f"Unknown tracker backend: {backend}")


__all__ = [
    "STAT_NAMES",
    "ChangeListener",
    "CountingChangeListener",
    "FilesystemTracker",
    "LogOnlyChangeListener",
    "MemoryTracker",
    "ObjectStoreTracker",
    "PathNotFoundError",
    "StorageTracker",
    "TrackerError",
    "create_tracker",
]
