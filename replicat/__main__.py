"""CLI entry point for Replicat."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import uvicorn

from .config import Config, load_config
from .node import ReplicatNode
from .server import create_app, create_manager_app
from .trackers import TrackerError


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, tagged with the node that wrote it."""

    def __init__(self, node_name: str = ""):
        super().__init__()
        self.node_name = node_name

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "node": self.node_name,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            line["error"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def setup_logging(
    verbose: bool = False,
    log_level: str | None = None,
    json_output: bool = False,
    node_name: str = "",
) -> None:
    """Route replicat's loggers to stderr as text, or as JSON lines for collectors.

    An explicit log_level wins over verbose.
    """
    level = LOG_LEVELS.get(log_level or "", logging.DEBUG if verbose else logging.INFO)

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter(node_name))
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    logging.basicConfig(level=level, handlers=[handler])


def split_address(address: str, default_host: str = "0.0.0.0") -> tuple[str, int]:
    """Split "host:port" for binding. An empty host binds every interface."""
    host, _, port = address.rpartition(":")
    if not port.isdigit():
        raise ValueError(f"Address needs a port: {address!r}")
    return host or default_host, int(port)


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Flags win over the config file and the environment."""
    if args.directory:
        config.node.directory = args.directory
    if args.name:
        config.node.name = args.name
    if args.address:
        config.node.address = args.address
    if args.cluster_key:
        config.node.cluster_key = args.cluster_key
    if args.manager:
        config.manager.address = args.manager
    if args.manager_credentials:
        config.manager.credentials = args.manager_credentials
    if args.backend:
        config.tracker.backend = args.backend
    return config


def _missing_settings(config: Config) -> list[str]:
    missing = []
    if not config.node.name:
        missing.append("--name")
    if config.tracker.backend == "object_store":
        if not (config.node.directory or config.object_store.bucket):
            missing.append("--directory (bucket)")
    elif config.tracker.backend == "filesystem" and not config.node.directory:
        missing.append("--directory")
    return missing


async def cmd_node(args: argparse.Namespace) -> int:
    """Run a replication node."""
    config = apply_cli_overrides(load_config(args.config), args)

    missing = _missing_settings(config)
    if missing:
        print(f"Missing required settings: {', '.join(missing)}", file=sys.stderr)
        return 1

    try:
        host, port = split_address(config.node.address)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Starting Replicat node: {config.node.name}")
    print(f"Tracking: {config.node.directory or config.object_store.bucket} ({config.tracker.backend})")
    print(f"Manager: {config.manager.address}")

    node = ReplicatNode(config)
    try:
        node.start()
    except TrackerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    verbose = getattr(args, "verbose", False)
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(node),
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
    )

    try:
        serving = asyncio.create_task(server.serve())
        while not server.started and not serving.done():
            await asyncio.sleep(0.05)
        if server.started and config.manager.enabled:
            # Register only once we can receive the node map
            await asyncio.to_thread(node.announce)
        await serving
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        node.stop()

    return 0


async def cmd_manager(args: argparse.Namespace) -> int:
    """Run the membership manager."""
    config = load_config(args.config)
    if args.address:
        config.manager.address = args.address
    if args.manager_credentials:
        config.manager.credentials = args.manager_credentials

    try:
        host, port = split_address(config.manager.address, default_host="0.0.0.0")
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Starting Replicat manager on {host}:{port}")

    app = create_manager_app(
        config.manager,
        event_history=config.cluster.event_history,
        timeout=config.cluster.http_timeout,
    )
    verbose = getattr(args, "verbose", False)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
    )
    try:
        await server.serve()
    except KeyboardInterrupt:
        print("\nShutting down...")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="replicat",
        description="Peer-to-peer folder replication",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Node command
    node_parser = subparsers.add_parser("node", help="Run a replication node")
    node_parser.add_argument("--directory", help="Folder (or bucket) to replicate")
    node_parser.add_argument("--manager", help="Manager address, host:port")
    node_parser.add_argument(
        "--manager_credentials",
        help="Basic auth credentials as user:password (default: replicat:isthecat)",
    )
    node_parser.add_argument("--cluster_key", help="Cluster identifier")
    node_parser.add_argument("--address", help="Listen address, host:port (default: :8001)")
    node_parser.add_argument("--name", help="Node name, unique in the cluster")
    node_parser.add_argument(
        "--backend",
        choices=["filesystem", "object_store", "memory"],
        help="Storage backend (default: filesystem)",
    )
    node_parser.set_defaults(func=cmd_node)

    # Manager command
    manager_parser = subparsers.add_parser("manager", help="Run the membership manager")
    manager_parser.add_argument("--address", help="Listen address, host:port (default: localhost:8080)")
    manager_parser.add_argument("--manager_credentials", help="Basic auth credentials as user:password")
    manager_parser.set_defaults(func=cmd_manager)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(
        args.verbose,
        args.log_level,
        getattr(args, "json", False),
        node_name=getattr(args, "name", None) or "",
    )

    if not args.command:
        parser.print_help()
        return 1

    return asyncio.run(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
