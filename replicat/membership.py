"""Cluster membership.

The manager owns the authoritative node map and pushes it to every node.
Each node queues incoming maps and a single consumer thread diffs them
against the local view, which keeps mutation of the map serialized.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class NodeStatus(str, Enum):
    """Lifecycle of a node."""

    INITIAL_SCAN = "Initial Scan"
    JOINING_CLUSTER = "Joining Cluster"
    ONLINE = "Online"


@dataclass
class NodeDescriptor:
    """One node as the cluster sees it."""

    name: str
    address: str = ""
    cluster_key: str = ""
    status: NodeStatus = NodeStatus.INITIAL_SCAN
    current_state: dict[str, list[str]] | None = None
    previous_state: dict[str, list[str]] | None = None

    def differs_from(self, other: "NodeDescriptor") -> bool:
        return (
            self.address != other.address
            or self.name != other.name
            or self.cluster_key != other.cluster_key
            or self.status != other.status
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ClusterKey": self.cluster_key,
            "Name": self.name,
            "Address": self.address,
            "Status": self.status.value,
            "CurrentState": self.current_state,
            "PreviousState": self.previous_state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeDescriptor":
        """Create from the wire form.

        Raises:
            ValueError: Missing name or unknown status.
        """
        if not isinstance(data, dict) or not data.get("Name"):
            raise ValueError("Node descriptor needs a Name")
        return cls(
            name=data["Name"],
            address=data.get("Address") or "",
            cluster_key=data.get("ClusterKey") or "",
            status=NodeStatus(data.get("Status") or NodeStatus.INITIAL_SCAN.value),
            current_state=data.get("CurrentState"),
            previous_state=data.get("PreviousState"),
        )


def decode_node_map(data: dict[str, Any]) -> dict[str, NodeDescriptor]:
    if not isinstance(data, dict):
        raise ValueError("Node map must be a JSON object")
    return {name: NodeDescriptor.from_dict(value) for name, value in data.items()}


@dataclass
class MembershipChange:
    """Outcome of applying one node map."""

    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    send_data: list[str] = field(default_factory=list)
    self_added: bool = False


class MembershipService:
    """Local view of the cluster, updated from manager broadcasts."""

    def __init__(
        self,
        node_name: str,
        on_send_data: Callable[[], None] | None = None,
        on_self_added: Callable[[NodeDescriptor], None] | None = None,
        queue_size: int = 100,
    ):
        self.node_name = node_name
        self._on_send_data = on_send_data
        self._on_self_added = on_self_added
        self._nodes: dict[str, NodeDescriptor] = {}
        self._lock = threading.RLock()
        self._updates: queue.Queue[dict[str, NodeDescriptor]] = queue.Queue(
            maxsize=queue_size
        )
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ==================== Accessors ====================

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def get(self, name: str) -> NodeDescriptor | None:
        with self._lock:
            return self._nodes.get(name)

    def nodes(self) -> dict[str, NodeDescriptor]:
        with self._lock:
            return dict(self._nodes)

    def peers(self) -> list[NodeDescriptor]:
        """Every known node except this one."""
        with self._lock:
            return [d for name, d in self._nodes.items() if name != self.node_name]

    def address_of(self, name: str) -> str | None:
        descriptor = self.get(name)
        return descriptor.address if descriptor else None

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {name: d.to_dict() for name, d in self._nodes.items()}

    # ==================== Updates ====================

    def submit(self, new_map: dict[str, NodeDescriptor]) -> None:
        """Queue a node map for the consumer thread."""
        self._updates.put(new_map)

    def apply(self, new_map: dict[str, NodeDescriptor]) -> MembershipChange:
        """Diff a node map against the local view and adopt it."""
        change = MembershipChange()
        added_self: NodeDescriptor | None = None

        with self._lock:
            for name in list(self._nodes):
                if name not in new_map:
                    logger.info(f"Node {name} left the cluster")
                    del self._nodes[name]
                    change.removed.append(name)

            for name, new in new_map.items():
                old = self._nodes.get(name)
                if old is None:
                    logger.info(f"Node {name} joined at {new.address} ({new.status.value})")
                    self._nodes[name] = new
                    change.added.append(name)
                    if name == self.node_name:
                        change.self_added = True
                        added_self = new
                    else:
                        change.send_data.append(name)
                elif old.differs_from(new):
                    logger.info(f"Node {name} changed: {old.status.value} -> {new.status.value}")
                    self._nodes[name] = new
                    change.changed.append(name)
                    if (
                        name != self.node_name
                        and old.status != NodeStatus.JOINING_CLUSTER
                        and new.status == NodeStatus.JOINING_CLUSTER
                    ):
                        change.send_data.append(name)

        if added_self is not None and self._on_self_added:
            self._on_self_added(added_self)
        if change.send_data and self._on_send_data:
            logger.info(f"Sending catalog for {', '.join(change.send_data)}")
            self._on_send_data()
        return change

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                new_map = self._updates.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.apply(new_map)
            except Exception as e:
                logger.error(f"Failed to apply node map: {e}")
            finally:
                self._updates.task_done()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"membership-{self.node_name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def wait_idle(self) -> None:
        """Block until every queued map has been applied."""
        self._updates.join()
