"""Application-wide configuration constants."""

import os
import platform
import sys
from pathlib import Path

# --- Identity ---
APP_NAME = "landrop"
# Application-private storage (persisted device id lives here)
CONFIG_DIR = Path(os.environ.get("LANDROP_HOME", Path.home() / f".{APP_NAME}"))
DEVICE_ID_FILE = "device-id"

DEVICE_NAME = os.environ.get("LANDROP_DEVICE_NAME") or platform.node() or "LanDrop Device"
PLATFORM = sys.platform  # "win32" | "darwin" | "linux" | ...

# --- Local API ---
API_HOST = "127.0.0.1"
API_PORT = int(os.environ.get("LANDROP_API_PORT", 8765))

# --- Discovery ---
DISCOVERY_PORT = int(os.environ.get("LANDROP_DISCOVERY_PORT", 5200))  # UDP
BROADCAST_ADDRESS = "255.255.255.255"
ANNOUNCE_INTERVAL = 3.0  # seconds
DEVICE_TIMEOUT = 10.0  # seconds of silence before a device is considered offline
SWEEP_INTERVAL = 1.0  # seconds, must stay <= DEVICE_TIMEOUT / 2

# --- Transfer ---
TRANSFER_PORT = int(os.environ.get("LANDROP_TRANSFER_PORT", 5201))  # TCP
CHUNK_SIZE = 64 * 1024
MAX_FRAME_SIZE = 16 * 1024 * 1024
MAX_CONTROL_LINE = 16 * 1024 * 1024
PROGRESS_INTERVAL = 0.5  # seconds between throughput samples

CONNECT_TIMEOUT = 10.0
ACCEPT_TIMEOUT = 60.0  # how long the user has to accept an inbound request
RESPONSE_TIMEOUT = 90.0  # how long a sender waits for the accept/reject
ACK_TIMEOUT = 30.0  # how long a sender waits after the end-of-transfer sentinel
IDLE_TIMEOUT = 60.0  # how long a receiver waits for the next request line or data frame

AUTO_ACCEPT = os.environ.get("LANDROP_AUTO_ACCEPT", "").lower() in ("1", "true", "yes")

# --- Storage ---
DEFAULT_SAVE_DIR = str(
    Path(os.environ.get("LANDROP_SAVE_DIR", Path.home() / "Downloads" / "LanDrop"))
)
