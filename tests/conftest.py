"""Shared fixtures and helpers for the Replicat tests."""

import time
from concurrent.futures import Future
from typing import Any, Callable

import pytest

from replicat.config import ClusterConfig, Config, ManagerConfig, NodeConfig, TrackerConfig
from replicat.node import ReplicatNode
from replicat.trackers import CountingChangeListener, MemoryTracker
from replicat.transport import PeerTransport, Upload
from replicat.tree import Entry, md5_stream


def wait_for(
    predicate: Callable[[], Any],
    expected: Any = True,
    attempts: int = 50,
    delay: float = 0.05,
) -> bool:
    """Poll until predicate() == expected, giving up after attempts * delay seconds."""
    for _ in range(attempts):
        if predicate() == expected:
            return True
        time.sleep(delay)
    return predicate() == expected


def make_config(name: str, backend: str = "memory", **cluster: Any) -> Config:
    return Config(
        node=NodeConfig(name=name, address=f"{name}:8001"),
        manager=ManagerConfig(address="manager:8080"),
        tracker=TrackerConfig(backend=backend, rename_timeout=0.05),
        cluster=ClusterConfig(**cluster),
    )


class LoopbackTransport(PeerTransport):
    """PeerTransport that delivers straight into other in-process nodes.

    Sends run synchronously on the caller's thread, and uploads go through
    the EntryJSON wire form so only serialized fields survive.
    """

    def __init__(self, cluster: dict[str, ReplicatNode], *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.cluster = cluster
        self.delivered: list[tuple[str, Any]] = []
        self.registrations = 0

    def _submit(self, fn, *args) -> Future:
        future: Future = Future()
        future.set_result(fn(*args))
        return future

    def _deliver(self, event, address, upload) -> None:
        target = self.cluster.get(address)
        if target is None:
            return
        self.delivered.append((address, event))
        target.handle_event(event)
        if upload is not None:
            self._upload(address, upload)

    def _upload(self, address: str, upload: Upload) -> None:
        target = self.cluster[address]
        with upload.opener() as f:
            md5_hex = md5_stream(f)
        with upload.opener() as f:
            entry = Entry.from_dict(upload.entry.to_dict())
            target.receive_upload(entry, md5_hex, f)

    def _post_tree(self, address, tree) -> None:
        target = self.cluster.get(address)
        if target is not None:
            target.reconcile_folders(tree)

    def register(self, descriptor) -> bool:
        self.registrations += 1
        return True


def make_memory_node(
    name: str, cluster: dict[str, ReplicatNode], **cluster_config: Any
) -> ReplicatNode:
    """A node on the in-memory backend, wired to its peers through the cluster dict."""
    config = make_config(name, **cluster_config)
    node = ReplicatNode(
        config,
        tracker=MemoryTracker(name, config.tracker, listener=CountingChangeListener()),
    )
    node.transport.close()
    node.transport = node.tracker.transport = LoopbackTransport(
        cluster, name, config.manager, node.ownership, node.membership
    )
    cluster[config.node.advertised_address] = node
    return node


@pytest.fixture
def cluster():
    """Address -> node map; every node is stopped at teardown."""
    nodes: dict[str, ReplicatNode] = {}
    yield nodes
    for node in nodes.values():
        node.stop()
