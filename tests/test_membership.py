"""Tests for cluster membership."""

from unittest.mock import MagicMock

import pytest

from conftest import wait_for
from replicat.membership import (
    MembershipService,
    NodeDescriptor,
    NodeStatus,
    decode_node_map,
)


def descriptor(name: str, status: NodeStatus = NodeStatus.ONLINE, address: str = "") -> NodeDescriptor:
    return NodeDescriptor(name=name, address=address or f"{name}:8001", status=status)


@pytest.fixture
def hooks():
    return MagicMock()


@pytest.fixture
def service(hooks):
    return MembershipService(
        "alpha", on_send_data=hooks.send_data, on_self_added=hooks.self_added
    )


class TestNodeDescriptor:
    """Tests for the descriptor wire form."""

    def test_round_trip(self):
        original = NodeDescriptor(
            name="alpha",
            address="10.0.0.1:8001",
            cluster_key="k",
            status=NodeStatus.JOINING_CLUSTER,
            current_state={"": ["a.txt"]},
        )
        data = original.to_dict()

        assert data["Status"] == "Joining Cluster"
        assert NodeDescriptor.from_dict(data) == original

    def test_name_required(self):
        with pytest.raises(ValueError):
            NodeDescriptor.from_dict({"Address": "x:1"})

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            decode_node_map({"alpha": {"Name": "alpha", "Status": "Sleeping"}})

    def test_differs_from_ignores_state(self):
        a = descriptor("alpha")
        b = descriptor("alpha")
        b.current_state = {"": []}

        assert not a.differs_from(b)
        b.status = NodeStatus.JOINING_CLUSTER
        assert a.differs_from(b)


class TestMembershipService:
    """Tests for diffing node maps."""

    def test_peer_added_triggers_send(self, service, hooks):
        change = service.apply({"beta": descriptor("beta")})

        assert change.added == ["beta"]
        assert change.send_data == ["beta"]
        hooks.send_data.assert_called_once()
        hooks.self_added.assert_not_called()

    def test_self_added(self, service, hooks):
        change = service.apply({"alpha": descriptor("alpha", NodeStatus.JOINING_CLUSTER)})

        assert change.self_added
        assert change.send_data == []
        hooks.self_added.assert_called_once()
        assert hooks.self_added.call_args.args[0].name == "alpha"

    def test_peer_removed(self, service):
        service.apply({"beta": descriptor("beta"), "gamma": descriptor("gamma")})
        change = service.apply({"beta": descriptor("beta")})

        assert change.removed == ["gamma"]
        assert service.get("gamma") is None

    def test_transition_to_joining_triggers_send(self, service, hooks):
        service.apply({"beta": descriptor("beta")})
        hooks.reset_mock()

        change = service.apply({"beta": descriptor("beta", NodeStatus.JOINING_CLUSTER)})

        assert change.changed == ["beta"]
        assert change.send_data == ["beta"]
        hooks.send_data.assert_called_once()

    def test_still_joining_does_not_resend(self, service, hooks):
        service.apply({"beta": descriptor("beta", NodeStatus.JOINING_CLUSTER)})
        hooks.reset_mock()

        change = service.apply(
            {"beta": descriptor("beta", NodeStatus.JOINING_CLUSTER, address="moved:9")}
        )

        assert change.changed == ["beta"]
        assert change.send_data == []
        hooks.send_data.assert_not_called()

    def test_peers_exclude_self(self, service):
        service.apply({"alpha": descriptor("alpha"), "beta": descriptor("beta")})

        assert [p.name for p in service.peers()] == ["beta"]
        assert service.address_of("beta") == "beta:8001"
        assert service.address_of("nobody") is None
        assert set(service.to_dict()) == {"alpha", "beta"}

    def test_queued_updates_applied(self, service):
        service.start()
        try:
            service.submit({"beta": descriptor("beta")})
            service.wait_idle()
            assert wait_for(lambda: len(service), 1)
        finally:
            service.stop()
