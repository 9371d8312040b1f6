"""Replicat: peer-to-peer folder replication.

Each node watches one folder (or bucket), turns local changes into
semantic events and pushes them, with file bodies, to every peer the
manager has told it about.
"""

from .config import Config, load_config
from .node import ReplicatNode

__version__ = "0.1.0"

__all__ = ["Config", "ReplicatNode", "load_config"]
