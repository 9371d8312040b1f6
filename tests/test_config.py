"""Tests for configuration loading."""

import pytest

from replicat.config import Config, ManagerConfig, NodeConfig, load_config

ENV_KEYS = (
    "NODE_NAME",
    "DIRECTORY",
    "ADDRESS",
    "MANAGER",
    "MANAGER_CREDENTIALS",
    "MANAGER_ENABLED",
    "BACKEND",
    "OWNERSHIP_TTL",
    "PRUNE_FOLDERS",
    "S3_BUCKET",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep REPLICAT_* variables from the host out of these tests."""
    for key in ENV_KEYS:
        monkeypatch.delenv(f"REPLICAT_{key}", raising=False)


class TestDefaults:
    """Tests for built-in defaults."""

    def test_defaults(self):
        """Test the configuration used when nothing is provided."""
        config = load_config()

        assert config.node.address == ":8001"
        assert config.manager.address == "localhost:8080"
        assert config.manager.auth == ("replicat", "isthecat")
        assert config.tracker.backend == "filesystem"
        assert config.cluster.prune_folders is False
        assert config.cluster.request_attempts == 3

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test that a missing config path is not an error."""
        assert load_config(tmp_path / "absent.yaml") == Config()

    def test_password_may_contain_colons(self):
        assert ManagerConfig(credentials="user:pa:ss").auth == ("user", "pa:ss")


class TestAdvertisedAddress:
    def test_empty_host(self):
        assert NodeConfig(address=":8001").advertised_address == "127.0.0.1:8001"

    def test_wildcard_host(self):
        assert NodeConfig(address="0.0.0.0:9000").advertised_address == "127.0.0.1:9000"

    def test_explicit_host(self):
        assert NodeConfig(address="10.1.2.3:8001").advertised_address == "10.1.2.3:8001"


class TestYaml:
    """Tests for YAML config files."""

    def test_sections_loaded(self, tmp_path):
        """Test that each section is read and unset keys keep defaults."""
        path = tmp_path / "replicat.yaml"
        path.write_text(
            "node:\n"
            "  name: alpha\n"
            "  directory: /srv/share\n"
            "manager:\n"
            "  address: manager:9090\n"
            "tracker:\n"
            "  backend: object_store\n"
            "object_store:\n"
            "  bucket: shared\n"
            "cluster:\n"
            "  ownership_ttl: 5\n"
        )

        config = load_config(path)

        assert config.node.name == "alpha"
        assert config.node.directory == "/srv/share"
        assert config.node.address == ":8001"
        assert config.manager.address == "manager:9090"
        assert config.manager.credentials == "replicat:isthecat"
        assert config.tracker.backend == "object_store"
        assert config.object_store.bucket == "shared"
        assert config.cluster.ownership_ttl == 5

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path) == Config()


class TestEnvOverrides:
    """Tests for REPLICAT_* environment variables."""

    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        """Test that the environment overrides the YAML file."""
        path = tmp_path / "replicat.yaml"
        path.write_text("node:\n  name: from-file\n")
        monkeypatch.setenv("REPLICAT_NODE_NAME", "from-env")

        assert load_config(path).node.name == "from-env"

    def test_typed_overrides(self, monkeypatch):
        monkeypatch.setenv("REPLICAT_MANAGER_ENABLED", "false")
        monkeypatch.setenv("REPLICAT_OWNERSHIP_TTL", "2.5")
        monkeypatch.setenv("REPLICAT_PRUNE_FOLDERS", "yes")
        monkeypatch.setenv("REPLICAT_S3_BUCKET", "shared")

        config = load_config()

        assert config.manager.enabled is False
        assert config.cluster.ownership_ttl == 2.5
        assert config.cluster.prune_folders is True
        assert config.object_store.bucket == "shared"
