"""FastAPI application exposing a node's inbound HTTP surface."""

import json
import logging
import secrets
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from ..config import ManagerConfig
from ..events import Event
from ..membership import decode_node_map
from ..node import ReplicatNode
from ..trackers import TrackerError
from ..tree import Entry, InvalidPathError

logger = logging.getLogger(__name__)

security = HTTPBasic()


def basic_auth(manager: ManagerConfig):
    """Dependency rejecting requests whose Basic credentials do not match."""
    expected_user, expected_password = manager.auth

    def check(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        user_ok = secrets.compare_digest(
            credentials.username.encode(), expected_user.encode()
        )
        password_ok = secrets.compare_digest(
            credentials.password.encode(), expected_password.encode()
        )
        if not (user_ok and password_ok):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    return check


async def read_json(request: Request) -> Any:
    """Request body as JSON, or a 400."""
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {e}") from e


def create_app(node: ReplicatNode) -> FastAPI:
    """Create the node's FastAPI application.

    Args:
        node: The node whose tracker and membership the routes drive.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Replicat Node",
        description=f"Replication endpoint for {node.name}",
        version="0.1.0",
        dependencies=[Depends(basic_auth(node.config.manager))],
    )
    app.state.node = node

    # ==================== Events ====================

    @app.post("/event/")
    async def post_event(request: Request) -> dict[str, Any]:
        """Apply an inbound semantic event."""
        data = await read_json(request)
        try:
            event = Event.from_dict(data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        try:
            await run_in_threadpool(node.handle_event, event)
        except TrackerError as e:
            logger.error(f"Could not apply {event.name.value} {event.path}: {e}")
            raise HTTPException(status_code=500, detail=str(e)) from e
        except ValueError as e:
            # Bad paths and undecodable catalog or file request payloads
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {"status": "ok"}

    @app.get("/event/")
    async def get_events() -> list[dict[str, Any]]:
        """Recent inbound events, newest first."""
        return node.recent_events()

    # ==================== Folder tree ====================

    @app.get("/tree/")
    async def get_tree() -> dict[str, list[str]]:
        return node.folder_tree()

    @app.post("/tree/")
    async def post_tree(request: Request) -> dict[str, list[str]]:
        """Legacy folder-only reconciliation."""
        data = await read_json(request)
        if not isinstance(data, dict):
            raise HTTPException(status_code=400, detail="Folder tree must be a JSON object")
        try:
            return await run_in_threadpool(node.reconcile_folders, data)
        except InvalidPathError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except TrackerError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

    # ==================== Membership ====================

    @app.post("/config/")
    async def post_config(request: Request) -> dict[str, Any]:
        """Replace the membership map."""
        data = await read_json(request)
        try:
            node_map = decode_node_map(data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        await run_in_threadpool(node.update_membership, node_map)
        return {"status": "ok", "nodes": len(node_map)}

    # ==================== Uploads ====================

    @app.post("/upload/")
    def upload(
        uploadfile: UploadFile = File(...),
        HASH: str = Form(...),
        EntryJSON: str = Form(...),
    ) -> dict[str, Any]:
        """Receive a file body from a peer."""
        try:
            entry = Entry.from_dict(json.loads(EntryJSON))
        except (ValueError, KeyError, TypeError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid EntryJSON: {e}") from e

        try:
            written = node.receive_upload(entry, HASH, uploadfile.file)
        except InvalidPathError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        except TrackerError as e:
            logger.error(f"Could not store upload {entry.relative_path}: {e}")
            raise HTTPException(status_code=500, detail=str(e)) from e
        finally:
            uploadfile.file.close()
        return {"status": "ok", "written": written}

    # ==================== Statistics ====================

    @app.get("/stats/")
    async def get_stats() -> dict[str, Any]:
        return {
            "node_name": node.name,
            "status": node.status.value,
            "statistics": node.tracker.get_statistics(),
        }

    return app
