"""Pydantic models describing the session to the presentation layer."""

from pydantic import BaseModel

from session.connection import ConnectionState
from transfer.models import ArtifactInfo, TransferSession


class SessionSnapshot(BaseModel):
    """Everything the frontend needs to render the current session."""
    peer_id: str | None = None
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    remote_id: str | None = None
    transfer: TransferSession | None = None
    last_error: str | None = None
    artifact: ArtifactInfo | None = None
    save_dir: str = ""
