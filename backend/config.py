"""Application-wide configuration constants.

Every value can be overridden with a ``PEERDROP_<NAME>`` environment variable.
"""

import os
import platform
from pathlib import Path


def _env(name: str, default, cast=str):
    raw = os.environ.get(f"PEERDROP_{name}")
    if raw is None:
        return default
    return cast(raw)


# --- Identity ---
APP_ID = _env("APP_ID", "peerdrop-v1")
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# --- Networking ---
API_HOST = _env("API_HOST", "127.0.0.1")
API_PORT = _env("API_PORT", 8765, int)
DISCOVERY_PORT = _env("DISCOVERY_PORT", 41235, int)  # UDP
DISCOVERY_INTERVAL = _env("DISCOVERY_INTERVAL", 3.0, float)  # seconds
PEER_TIMEOUT = _env("PEER_TIMEOUT", 10.0, float)  # seconds before a peer is considered offline

TRANSFER_PORT_MIN = _env("TRANSFER_PORT_MIN", 50000, int)
TRANSFER_PORT_MAX = _env("TRANSFER_PORT_MAX", 65000, int)

# --- Connection ---
CONNECT_TIMEOUT = _env("CONNECT_TIMEOUT", 15.0, float)  # seconds in "connecting"
CHANNEL_CAPACITY = _env("CHANNEL_CAPACITY", 256, int)  # pending transport events per connection
MAX_FRAME_SIZE = _env("MAX_FRAME_SIZE", 1024 * 1024, int)

# --- Transfer ---
CHUNK_SIZE = _env("CHUNK_SIZE", 16 * 1024, int)  # 16 KB
PACE_EVERY_BYTES = CHUNK_SIZE * 10
PACE_DELAY = _env("PACE_DELAY", 0.01, float)  # seconds

# --- Storage ---
DEFAULT_SAVE_DIR = _env(
    "SAVE_DIR", str(Path.home() / "Downloads" / "PeerDrop")
)

# --- Logging ---
LOG_LEVEL = _env("LOG_LEVEL", "INFO")
