"""Node orchestration.

Wires the tracker, ownership ledger, membership service and transport
together, applies inbound events, and runs the background heartbeat and
statistics threads.
"""

import logging
import threading
from typing import Any, BinaryIO

from .catalog import decode_file_request
from .config import Config
from .events import Event, EventLog, EventName
from .membership import MembershipService, NodeDescriptor, NodeStatus
from .ownership import OwnershipLedger
from .trackers import ChangeListener, StorageTracker, create_tracker
from .transport import PeerTransport
from .tree import Entry, normalize_path

logger = logging.getLogger(__name__)

# Owner recorded for changes whose author we cannot name
UNKNOWN_PEER = "replicat.peer"


class ReplicatNode:
    """One member of a replicat cluster."""

    def __init__(
        self,
        config: Config,
        tracker: StorageTracker | None = None,
        transport: PeerTransport | None = None,
        listener: ChangeListener | None = None,
    ):
        """Initialize the node.

        Args:
            config: Application configuration.
            tracker: Optional tracker; built from config when omitted.
            transport: Optional transport; built from config when omitted.
            listener: Optional change listener for the tracker.
        """
        self.config = config
        self.name = config.node.name
        self.ownership = OwnershipLedger(self.name, ttl=config.cluster.ownership_ttl)
        self.events = EventLog(config.cluster.event_history)
        self.descriptor = NodeDescriptor(
            name=self.name,
            address=config.node.advertised_address,
            cluster_key=config.node.cluster_key,
        )
        self.membership = MembershipService(
            self.name,
            on_send_data=self._send_catalog,
            on_self_added=self._on_self_added,
            queue_size=config.cluster.membership_queue_size,
        )
        self.transport = transport or PeerTransport(
            self.name,
            config.manager,
            self.ownership,
            self.membership,
            timeout=config.cluster.http_timeout,
            workers=config.cluster.send_workers,
        )
        self.tracker = tracker or create_tracker(config, listener=listener)
        self.tracker.ownership = self.ownership
        self.tracker.transport = self.transport
        self.tracker.add_status_callback(self._on_status_change)

        self.last_statistics: dict[str, int] = {}
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def status(self) -> NodeStatus:
        return self.tracker.status

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Scan the tracked root and start background work.

        Registration with the manager happens in announce(), once the HTTP
        listener is up to receive the node map.
        """
        root = self.config.node.directory
        if self.config.tracker.backend == "object_store":
            root = root or self.config.object_store.bucket
        self.tracker.initialize(root, self.descriptor)
        self.membership.start()

        if not self.config.manager.enabled:
            # Nobody will tell us about peers
            self.tracker.set_status(NodeStatus.ONLINE)

        self._stop.clear()
        self._spawn(self._heartbeat_loop, "heartbeat")
        self._spawn(self._statistics_loop, "statistics")
        logger.info(f"Node {self.name} started ({self.status.value})")

    def _spawn(self, target: Any, name: str) -> None:
        thread = threading.Thread(target=target, name=f"{name}-{self.name}", daemon=True)
        thread.start()
        self._threads.append(thread)

    def announce(self) -> bool:
        """Register with the manager now."""
        return self.transport.register(self.descriptor)

    def stop(self) -> None:
        logger.info(f"Stopping node {self.name}")
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=2)
        self._threads.clear()
        self.membership.stop()
        self.tracker.cleanup()
        self.transport.close()

    def _heartbeat_loop(self) -> None:
        threshold = self.config.manager.heartbeat_seconds
        interval = min(5.0, threshold)
        while not self._stop.wait(interval):
            if not self.config.manager.enabled:
                continue
            since = self.transport.seconds_since_contact
            if since is None or since > threshold:
                logger.debug("Manager contact overdue, re-registering")
                self.transport.register(self.descriptor)

    def _statistics_loop(self) -> None:
        while not self._stop.wait(self.config.cluster.stats_interval):
            self.publish_statistics()

    def publish_statistics(self) -> dict[str, int]:
        stats = self.tracker.get_statistics()
        self.last_statistics = stats
        summary = ", ".join(f"{name}={value}" for name, value in stats.items())
        logger.info(f"Statistics for {self.name}: {summary}")
        return stats

    # ==================== Membership hooks ====================

    def _on_status_change(self, status: NodeStatus) -> None:
        if self.config.manager.enabled:
            self.transport.register_async(self.descriptor)

    def _send_catalog(self) -> None:
        self.tracker.send_catalog()

    def _on_self_added(self, descriptor: NodeDescriptor) -> None:
        tree = self.tracker.rescan()
        self.descriptor.previous_state = self.descriptor.current_state
        self.descriptor.current_state = tree
        descriptor.current_state = tree
        sent = self.transport.send_folder_tree(tree)
        logger.info(f"Joined cluster; folder tree sent to {sent} peers")
        if not self.membership.peers() and len(self.tracker.reconciler) == 0:
            self.tracker.set_status(NodeStatus.ONLINE)

    def update_membership(self, node_map: dict[str, NodeDescriptor]) -> None:
        self.membership.submit(node_map)

    # ==================== Inbound ====================

    def handle_event(self, event: Event) -> None:
        """Apply an event received from a peer.

        Raises:
            InvalidPathError: The event names an unusable path.
            TrackerError: The backend could not apply it.
        """
        self.events.add(event)
        name = event.name

        if name in (EventName.START_TEST, EventName.END_TEST):
            logger.info(f"==== {name.value} {event.path} ({event.source}) ====")
            return
        if name == EventName.CATALOG:
            self.tracker.process_catalog(event)
            return
        if name == EventName.FILE_REQUEST:
            requested = decode_file_request(event.raw_data)
            self.tracker.send_requested_paths(requested, event.source)
            return

        owner = event.source or event.network_source or UNKNOWN_PEER
        for path in (event.path, event.source_path):
            if path:
                self.ownership.record(path, owner)

        logger.debug(f"Applying {name.value} {event.source_path or ''} {event.path} from {owner}")
        if name == EventName.CREATE:
            self.tracker.create_path(event.path, event.is_directory)
        elif name == EventName.WRITE:
            # The body follows as an upload
            if event.path not in self.tracker.tree:
                self.tracker.create_path(event.path, event.is_directory)
        elif name == EventName.REMOVE:
            self.tracker.delete(event.path)
        elif event.is_rename:
            self.tracker.rename(event.source_path, event.path, event.is_directory)

    def receive_upload(self, entry: Entry, md5_hex: str, stream: BinaryIO) -> bool:
        """Store a file body pushed by a peer."""
        owner = entry.origin_server
        if not owner or owner == self.name:
            owner = UNKNOWN_PEER
        self.ownership.record(entry.relative_path, owner)
        return self.tracker.receive_file(entry, md5_hex, stream)

    def reconcile_folders(self, remote_tree: dict[str, list[str]]) -> dict[str, list[str]]:
        """Legacy folder-only reconciliation against a peer's DirTreeMap.

        Creates folders the peer has that we lack. When pruning is enabled,
        also removes empty folders the peer lacks, deepest first.
        """
        remote = {normalize_path(folder) for folder in remote_tree} - {""}
        local = set(self.tracker.list_folders())

        created = sorted(remote - local)
        for folder in created:
            self.ownership.record(folder, UNKNOWN_PEER)
            self.tracker.create_path(folder, True)

        removed = []
        if self.config.cluster.prune_folders:
            for folder in sorted(local - remote, reverse=True):
                tree = self.tracker.folder_tree()
                has_children = tree.get(folder) or any(
                    other.startswith(folder + "/") for other in tree
                )
                if has_children:
                    logger.warning(f"Not pruning {folder}: it is not empty")
                    continue
                self.ownership.record(folder, UNKNOWN_PEER)
                self.tracker.delete(folder)
                removed.append(folder)

        if created or removed:
            logger.info(f"Folder reconcile: {len(created)} created, {len(removed)} removed")
        return {"created": created, "removed": removed}

    # ==================== Queries ====================

    def folder_tree(self) -> dict[str, list[str]]:
        return self.tracker.folder_tree()

    def recent_events(self) -> list[dict[str, Any]]:
        return [event.to_dict() for event in self.events.recent()]

    def start_test(self, name: str) -> None:
        """Mark the start of a named test in every peer's log."""
        self.transport.broadcast(Event(name=EventName.START_TEST, path=name, source=self.name))

    def end_test(self, name: str) -> None:
        self.transport.broadcast(Event(name=EventName.END_TEST, path=name, source=self.name))
