"""Outbound peer transport.

Ships events and file bodies to the manager and to peers over HTTP with
Basic auth. Every send is fire-and-forget on a worker pool so a slow peer
never stalls the tracker; failures are logged and left for the next
catalog round to repair.
"""

import json
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable

import httpx

from .config import ManagerConfig
from .events import CHANGE_EVENTS, Event
from .membership import MembershipService, NodeDescriptor
from .ownership import OwnershipLedger
from .tree import Entry, md5_stream

logger = logging.getLogger(__name__)


@dataclass
class Upload:
    """A file body to send along with an event."""

    entry: Entry
    opener: Callable[[], BinaryIO]


def build_url(address: str, path: str) -> str:
    if address.startswith(("http://", "https://")):
        return f"{address.rstrip('/')}{path}"
    return f"http://{address}{path}"


class PeerTransport:
    """Sends events, uploads and registrations for one node."""

    def __init__(
        self,
        node_name: str,
        manager: ManagerConfig,
        ownership: OwnershipLedger,
        membership: MembershipService,
        timeout: float = 10.0,
        workers: int = 8,
        client: httpx.Client | None = None,
    ):
        """Initialize the transport.

        Args:
            node_name: Name stamped on outgoing events.
            manager: Manager address and the credentials used for every call.
            ownership: Ledger consulted before broadcasting a change.
            membership: Source of peer addresses.
            timeout: Request timeout in seconds.
            workers: Size of the send pool.
            client: Optional preconfigured httpx client.
        """
        self.node_name = node_name
        self.manager = manager
        self.ownership = ownership
        self.membership = membership
        self._client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"send-{node_name}"
        )
        self._futures: set[Future] = set()
        self._futures_lock = threading.Lock()
        self._last_contact: float | None = None

    # ==================== HTTP ====================

    def _post(self, url: str, **kwargs: Any) -> httpx.Response | None:
        try:
            response = self._client.post(url, auth=self.manager.auth, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"POST {url} failed: {e}")
            return None

        if response.status_code >= 400:
            logger.warning(f"POST {url} returned HTTP {response.status_code}: {response.text[:200]}")
            return None
        return response

    def _submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        future = self._executor.submit(fn, *args)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._futures_lock:
            self._futures.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Send task failed: {future.exception()}")

    def flush(self, timeout: float | None = None) -> None:
        """Wait for queued sends to finish."""
        with self._futures_lock:
            pending = list(self._futures)
        wait(pending, timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._client.close()

    # ==================== Events ====================

    def broadcast(self, event: Event, upload: Upload | None = None) -> bool:
        """Send an event to the manager and every peer.

        Change events first claim ownership of their path; if a peer owns
        it within the TTL this node is echoing that peer and nothing is sent.

        Returns:
            False if the broadcast was suppressed.
        """
        event = event.stamped(self.node_name)
        if event.name in CHANGE_EVENTS and not self.ownership.claim(event.owned_path):
            return False

        if self.manager.enabled and self.manager.address:
            self._submit(self._deliver, event, self.manager.address, None)
        for peer in self.membership.peers():
            if peer.address:
                self._submit(self._deliver, event, peer.address, upload)
        return True

    def send_to(self, node_name: str, event: Event) -> bool:
        """Send an event to a single peer."""
        address = self.membership.address_of(node_name)
        if not address:
            logger.warning(f"No address known for {node_name}, dropping {event.name.value}")
            return False
        self._submit(self._deliver, event.stamped(self.node_name), address, None)
        return True

    def _deliver(self, event: Event, address: str, upload: Upload | None) -> None:
        response = self._post(build_url(address, "/event/"), json=event.to_dict())
        if response is not None and upload is not None:
            self._upload(address, upload)

    # ==================== Uploads ====================

    def upload_to(self, node_name: str, upload: Upload) -> bool:
        address = self.membership.address_of(node_name)
        if not address:
            logger.warning(f"No address known for {node_name}, not sending {upload.entry.relative_path}")
            return False
        self._submit(self._upload, address, upload)
        return True

    def _upload(self, address: str, upload: Upload) -> None:
        entry = upload.entry
        try:
            with upload.opener() as f:
                md5_hex = md5_stream(f)
            with upload.opener() as f:
                self._post(
                    build_url(address, "/upload/"),
                    files={
                        "uploadfile": (entry.relative_path, f, "application/octet-stream")
                    },
                    data={"HASH": md5_hex, "EntryJSON": json.dumps(entry.to_dict())},
                )
        except OSError as e:
            logger.warning(f"Could not read {entry.relative_path} for upload: {e}")

    # ==================== Manager and tree ====================

    @property
    def seconds_since_contact(self) -> float | None:
        if self._last_contact is None:
            return None
        return time.monotonic() - self._last_contact

    def register(self, descriptor: NodeDescriptor) -> bool:
        """POST our descriptor to the manager."""
        if not self.manager.enabled or not self.manager.address:
            return False
        response = self._post(
            build_url(self.manager.address, "/config/"), json=descriptor.to_dict()
        )
        if response is None:
            return False
        self._last_contact = time.monotonic()
        logger.debug(f"Registered with manager as {descriptor.status.value}")
        return True

    def register_async(self, descriptor: NodeDescriptor) -> Future:
        return self._submit(self.register, descriptor)

    def send_folder_tree(self, tree: dict[str, list[str]]) -> int:
        """Post a DirTreeMap to every peer. Returns the number of peers targeted."""
        count = 0
        for peer in self.membership.peers():
            if peer.address:
                self._submit(self._post_tree, peer.address, tree)
                count += 1
        return count

    def _post_tree(self, address: str, tree: dict[str, list[str]]) -> None:
        self._post(build_url(address, "/tree/"), json=tree)
