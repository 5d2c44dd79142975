"""REST API routes for PeerDrop."""

import logging
import os
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel, Field

from errors import IdentityInitFailure, InvalidStateError, SessionBusy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_coordinator = None


def init_routes(coordinator) -> None:
    """Inject the session coordinator into the routes module."""
    global _coordinator
    _coordinator = coordinator


def _snapshot() -> dict:
    return _coordinator.snapshot().model_dump(mode="json")


# --- Session ---

@router.get("/session")
async def get_session():
    """Identity, connection state, current transfer and last error."""
    return _snapshot()


@router.post("/identity")
async def allocate_identity():
    """Retry identity allocation after a signaling failure."""
    try:
        await _coordinator.start()
    except IdentityInitFailure as e:
        raise HTTPException(status_code=503, detail=str(e))
    return _snapshot()


@router.get("/peers")
async def list_peers():
    """Peers the signaling service currently knows about."""
    peers = await _coordinator.signaling.get_peers()
    return {
        "peers": [p.model_dump() if isinstance(p, BaseModel) else {"peer_id": p} for p in peers]
    }


class ConnectBody(BaseModel):
    remote_id: str = Field(min_length=1)


@router.post("/connect")
async def connect(body: ConnectBody):
    try:
        await _coordinator.connect(body.remote_id.strip())
    except (SessionBusy, InvalidStateError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _snapshot()


@router.post("/disconnect")
async def disconnect():
    await _coordinator.disconnect()
    return _snapshot()


# --- Transfers ---

class SendBody(BaseModel):
    file_path: str


@router.post("/transfers")
async def create_transfer(body: SendBody):
    """Send a file from the local disk to the connected peer."""
    if not os.path.isfile(body.file_path):
        raise HTTPException(status_code=400, detail=f"Not a file: {body.file_path}")

    try:
        session = await _coordinator.send_file(body.file_path)
    except (SessionBusy, InvalidStateError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except OSError as e:
        raise HTTPException(status_code=400, detail=f"Cannot read file: {e}")

    return {"transfer": session.model_dump(mode="json")}


# --- Received file ---

def _require_artifact():
    artifact = _coordinator.artifact
    if artifact is None or artifact.released:
        raise HTTPException(status_code=404, detail="No received file")
    return artifact


@router.get("/artifact")
async def get_artifact():
    return _require_artifact().info().model_dump()


def _content_disposition(name: str) -> str:
    """Attachment header that survives any peer-supplied file name."""
    fallback = "".join(
        c if c.isascii() and c.isprintable() and c not in '"\\' else "_" for c in name
    ) or "download"
    encoded = quote(name)
    if encoded == name:
        return f'attachment; filename="{name}"'
    return f"attachment; filename=\"{fallback}\"; filename*=utf-8''{encoded}"


@router.get("/artifact/content")
async def download_artifact():
    artifact = _require_artifact()
    return Response(
        content=artifact.content,
        media_type=artifact.mime_type or "application/octet-stream",
        headers={"Content-Disposition": _content_disposition(artifact.name)},
    )


@router.delete("/artifact")
async def discard_artifact():
    """Release the received file. Repeating the call is harmless."""
    released = await _coordinator.discard_artifact()
    return {"status": "discarded" if released else "empty"}


@router.post("/artifact/save")
async def save_artifact():
    _require_artifact()
    try:
        path = await _coordinator.save_artifact()
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Could not save file: {e}")
    return {"status": "saved", "path": str(path)}


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": _coordinator.save_dir}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        try:
            _coordinator.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(status_code=400, detail=f"Invalid directory: {e}")
    return {"status": "updated"}
