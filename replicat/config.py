"""Configuration loading for Replicat."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class NodeConfig:
    name: str = ""
    directory: str = ""
    address: str = ":8001"
    cluster_key: str = ""

    @property
    def advertised_address(self) -> str:
        """Address peers should use to reach this node."""
        host, _, port = self.address.rpartition(":")
        if not host or host == "0.0.0.0":
            host = "127.0.0.1"
        return f"{host}:{port}"


@dataclass
class ManagerConfig:
    address: str = "localhost:8080"
    credentials: str = "replicat:isthecat"
    enabled: bool = True
    heartbeat_seconds: float = 30.0

    @property
    def auth(self) -> tuple[str, str]:
        """Credentials split into a (username, password) pair."""
        username, _, password = self.credentials.partition(":")
        return username, password


@dataclass
class TrackerConfig:
    backend: str = "filesystem"  # "filesystem", "object_store" or "memory"
    rename_timeout: float = 0.25
    queue_size: int = 10000
    ignore: list[str] = field(default_factory=lambda: [".DS_Store", "Thumbs.db"])
    retry_attempts: int = 5
    retry_backoff: float = 0.02


@dataclass
class ObjectStoreConfig:
    """Configuration for the S3-compatible bucket backend."""

    bucket: str = ""
    prefix: str = ""
    endpoint_url: str | None = None
    region: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    # Listen for bucket notifications when the endpoint is MinIO-compatible
    notifications: bool = True
    poll_interval: float = 1.0


@dataclass
class ClusterConfig:
    ownership_ttl: float = 20.0
    stats_interval: float = 30.0
    membership_queue_size: int = 100
    request_attempts: int = 3
    event_history: int = 100
    prune_folders: bool = False
    send_workers: int = 8
    http_timeout: float = 10.0


@dataclass
class Config:
    node: NodeConfig = field(default_factory=NodeConfig)
    manager: ManagerConfig = field(default_factory=ManagerConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    object_store: ObjectStoreConfig = field(default_factory=ObjectStoreConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with REPLICAT_ prefix."""
    return os.environ.get(f"REPLICAT_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Node overrides
    if name := _get_env("NODE_NAME"):
        config.node.name = name
    if directory := _get_env("DIRECTORY"):
        config.node.directory = directory
    if address := _get_env("ADDRESS"):
        config.node.address = address
    if cluster_key := _get_env("CLUSTER_KEY"):
        config.node.cluster_key = cluster_key

    # Manager overrides
    if manager := _get_env("MANAGER"):
        config.manager.address = manager
    if credentials := _get_env("MANAGER_CREDENTIALS"):
        config.manager.credentials = credentials
    if enabled := _get_env("MANAGER_ENABLED"):
        config.manager.enabled = _is_true(enabled)

    # Tracker overrides
    if backend := _get_env("BACKEND"):
        config.tracker.backend = backend
    if rename_timeout := _get_env("RENAME_TIMEOUT"):
        config.tracker.rename_timeout = float(rename_timeout)

    # Object store overrides
    if bucket := _get_env("S3_BUCKET"):
        config.object_store.bucket = bucket
    if prefix := _get_env("S3_PREFIX"):
        config.object_store.prefix = prefix
    if endpoint := _get_env("S3_ENDPOINT_URL"):
        config.object_store.endpoint_url = endpoint
    if access_key := _get_env("S3_ACCESS_KEY"):
        config.object_store.access_key = access_key
    if secret_key := _get_env("S3_SECRET_KEY"):
        config.object_store.secret_key = secret_key
    if notifications := _get_env("S3_NOTIFICATIONS"):
        config.object_store.notifications = _is_true(notifications)

    # Cluster overrides
    if ttl := _get_env("OWNERSHIP_TTL"):
        config.cluster.ownership_ttl = float(ttl)
    if prune := _get_env("PRUNE_FOLDERS"):
        config.cluster.prune_folders = _is_true(prune)

    return config


def _parse_section(cls: type, data: dict | None, current: Any) -> Any:
    """Build a section dataclass from YAML data, keeping current values as defaults."""
    if not data:
        return current
    values = {
        name: data.get(name, getattr(current, name))
        for name in current.__dataclass_fields__
    }
    return cls(**values)


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            config.node = _parse_section(NodeConfig, data.get("node"), config.node)
            config.manager = _parse_section(
                ManagerConfig, data.get("manager"), config.manager
            )
            config.tracker = _parse_section(
                TrackerConfig, data.get("tracker"), config.tracker
            )
            config.object_store = _parse_section(
                ObjectStoreConfig, data.get("object_store"), config.object_store
            )
            config.cluster = _parse_section(
                ClusterConfig, data.get("cluster"), config.cluster
            )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
