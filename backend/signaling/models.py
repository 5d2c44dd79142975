"""Pydantic models for LAN signaling."""

from pydantic import BaseModel


class LanPeer(BaseModel):
    """A peer whose beacon was seen on the LAN."""
    peer_id: str
    ip_address: str
    transfer_port: int  # TCP port of the peer's transport listener
    platform: str  # "windows" | "darwin" | "linux"
    last_seen: float  # Unix timestamp


class Beacon(BaseModel):
    """The JSON payload broadcast over UDP."""
    app_id: str
    peer_id: str
    transfer_port: int
    platform: str
