"""Tests for the membership manager."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from replicat.config import ManagerConfig
from replicat.membership import NodeDescriptor, NodeStatus

# Only run tests if fastapi is installed
pytest.importorskip("fastapi")


from fastapi.testclient import TestClient
from replicat.server import ManagerState, create_manager_app


@pytest.fixture
def client():
    """Manager client with pushes to nodes stubbed out."""
    with patch.object(ManagerState, "broadcast", new=AsyncMock(return_value=0)) as broadcast:
        with TestClient(create_manager_app(ManagerConfig())) as client:
            client.auth = ("replicat", "isthecat")
            client.broadcast = broadcast
            yield client


def descriptor(name: str, status: str = "Joining Cluster") -> dict:
    return {"Name": name, "Address": f"{name}:8001", "Status": status}


class TestManagerApp:
    """Tests for the manager routes."""

    def test_register_and_list(self, client):
        response = client.post("/config/", json=descriptor("alpha"))

        assert response.json() == {"status": "ok", "nodes": 1}
        node_map = client.get("/config/").json()
        assert node_map["alpha"]["Address"] == "alpha:8001"
        assert node_map["alpha"]["Status"] == "Joining Cluster"

    def test_every_registration_pushes(self, client):
        client.post("/config/", json=descriptor("alpha"))
        client.post("/config/", json=descriptor("alpha"))

        assert client.broadcast.call_count == 2

    def test_reregistration_replaces(self, client):
        client.post("/config/", json=descriptor("alpha"))
        client.post("/config/", json=descriptor("alpha", "Online"))

        assert client.get("/config/").json()["alpha"]["Status"] == "Online"

    def test_bad_descriptor(self, client):
        assert client.post("/config/", json={"Address": "x:1"}).status_code == 400

    def test_events_recorded(self, client):
        client.post("/event/", json={"Name": "notify.Create", "Source": "alpha", "Path": "docs"})

        (event,) = client.get("/event/").json()
        assert event["Source"] == "alpha"
        assert event["Path"] == "docs"

    def test_requires_auth(self, client):
        response = client.get("/config/", auth=("replicat", "wrong"))
        assert response.status_code == 401


class TestManagerState:
    """Tests for registration bookkeeping and node map pushes."""

    @pytest.mark.asyncio
    async def test_register_reports_changes(self):
        state = ManagerState(ManagerConfig())

        assert await state.register(NodeDescriptor("alpha", "alpha:8001"))
        assert not await state.register(NodeDescriptor("alpha", "alpha:8001"))
        assert await state.register(
            NodeDescriptor("alpha", "alpha:8001", status=NodeStatus.ONLINE)
        )

    @pytest.mark.asyncio
    async def test_broadcast_pushes_map(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            if request.url.host == "beta":
                return httpx.Response(503)
            return httpx.Response(200, json={"status": "ok"})

        state = ManagerState(ManagerConfig(), transport=httpx.MockTransport(handler))
        await state.register(NodeDescriptor("alpha", "alpha:8001"))
        await state.register(NodeDescriptor("beta", "beta:8001"))

        delivered = await state.broadcast()

        assert delivered == 1
        assert sorted(r.url.host for r in received) == ["alpha", "beta"]
        assert all(r.url.path == "/config/" for r in received)
        assert set(json.loads(received[0].content)) == {"alpha", "beta"}
        assert received[0].headers["Authorization"].startswith("Basic ")
