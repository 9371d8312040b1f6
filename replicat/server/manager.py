"""Minimal cluster manager.

Nodes register their descriptor here; every registration replaces that
node's entry in the map and the whole map is pushed back out to every
node's /config/ endpoint. Nodes also copy their broadcasts here, so the
manager keeps a short event history for debugging.
"""

import asyncio
import logging
from typing import Any

import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request

from ..config import ManagerConfig
from ..events import Event, EventLog
from ..membership import NodeDescriptor
from ..transport import build_url
from .app import basic_auth, read_json

logger = logging.getLogger(__name__)


class ManagerState:
    """Authoritative node map plus the event history."""

    def __init__(
        self,
        manager: ManagerConfig,
        event_history: int = 100,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.manager = manager
        self.timeout = timeout
        self._transport = transport
        self.nodes: dict[str, NodeDescriptor] = {}
        self.events = EventLog(event_history)
        self._lock = asyncio.Lock()

    async def register(self, descriptor: NodeDescriptor) -> bool:
        """Store a descriptor. Returns True if the map changed."""
        async with self._lock:
            old = self.nodes.get(descriptor.name)
            self.nodes[descriptor.name] = descriptor
        if old is None:
            logger.info(f"Registered {descriptor.name} at {descriptor.address}")
            return True
        if old.differs_from(descriptor):
            logger.info(f"{descriptor.name} is now {descriptor.status.value}")
            return True
        return False

    def node_map(self) -> dict[str, Any]:
        return {name: d.to_dict() for name, d in self.nodes.items()}

    async def _push(
        self, client: httpx.AsyncClient, descriptor: NodeDescriptor, payload: dict[str, Any]
    ) -> tuple[bool, str | None]:
        url = build_url(descriptor.address, "/config/")
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            return False, str(e)
        if response.status_code >= 400:
            return False, f"HTTP {response.status_code}: {response.text[:200]}"
        return True, None

    async def broadcast(self) -> int:
        """Push the node map to every node. Returns how many accepted it."""
        payload = self.node_map()
        targets = [d for d in self.nodes.values() if d.address]
        async with httpx.AsyncClient(
            timeout=self.timeout, auth=self.manager.auth, transport=self._transport
        ) as client:
            results = await asyncio.gather(
                *(self._push(client, d, payload) for d in targets)
            )

        delivered = 0
        for descriptor, (ok, error) in zip(targets, results):
            if ok:
                delivered += 1
            else:
                logger.warning(f"Could not send node map to {descriptor.name}: {error}")
        return delivered


def create_manager_app(
    manager: ManagerConfig,
    event_history: int = 100,
    timeout: float = 10.0,
) -> FastAPI:
    """Create the manager's FastAPI application.

    Args:
        manager: Credentials required from nodes and used when calling them.
        event_history: Number of events kept for GET /event/.
        timeout: Timeout for node map pushes.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Replicat Manager",
        description="Membership coordinator for Replicat nodes",
        version="0.1.0",
        dependencies=[Depends(basic_auth(manager))],
    )
    state = ManagerState(manager, event_history=event_history, timeout=timeout)
    app.state.manager = state

    @app.post("/config/")
    async def post_config(request: Request, background: BackgroundTasks) -> dict[str, Any]:
        """Register a node and push the updated map to everyone."""
        data = await read_json(request)
        try:
            descriptor = NodeDescriptor.from_dict(data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        await state.register(descriptor)
        # Always push: a restarted node needs the map even if nothing changed
        background.add_task(state.broadcast)
        return {"status": "ok", "nodes": len(state.nodes)}

    @app.get("/config/")
    async def get_config() -> dict[str, Any]:
        return state.node_map()

    @app.post("/event/")
    async def post_event(request: Request) -> dict[str, Any]:
        data = await read_json(request)
        try:
            event = Event.from_dict(data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        state.events.add(event)
        logger.debug(f"{event.source}: {event.name.value} {event.source_path} {event.path}")
        return {"status": "ok"}

    @app.get("/event/")
    async def get_events() -> list[dict[str, Any]]:
        return [event.to_dict() for event in state.events.recent()]

    return app
