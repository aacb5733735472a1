"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

# --- Identity ---
APP_NAME = "LanLink"
DEVICE_NAME = os.environ.get("LANLINK_DEVICE_NAME", platform.node())
DEVICE_TYPE = "desktop"
PROTOCOL_VERSION = 7
IDENTITY_PACKET_TYPE = "kdeconnect.identity"

# --- Storage ---
CONFIG_DIR = Path(
    os.environ.get("LANLINK_CONFIG_DIR", Path.home() / ".config" / "lanlink")
)
CONFIG_DIR.mkdir(parents=True, exist_ok=True)

# --- Networking ---
API_HOST = "127.0.0.1"
API_PORT = int(os.environ.get("LANLINK_API_PORT", 8766))

DEFAULT_PORT = 1716  # TCP listener and UDP discovery
BROADCAST_ADDRESS = "255.255.255.255"
DISCOVERABLE = os.environ.get("LANLINK_DISCOVERABLE", "1") != "0"
NETWORK_POLL_INTERVAL = 5  # seconds
BROADCAST_INTERVAL = int(os.environ.get("LANLINK_BROADCAST_INTERVAL", 0)) or None  # 0 disables

# Transfers listen on the first free port of this range
TRANSFER_PORT_MIN = 1739
TRANSFER_PORT_MAX = 1764

# TCP keepalive: idle seconds, probe interval, probe count
KEEPALIVE_IDLE = 10
KEEPALIVE_INTERVAL = 5
KEEPALIVE_COUNT = 3

# Longest control line accepted from a peer, matching the StreamReader default
LINE_LIMIT = 2 ** 16

# --- Transfer ---
CHUNK_SIZE = 65536

# Finished transfers kept for the API; live transfers are never dropped
TRANSFER_HISTORY_LIMIT = int(os.environ.get("LANLINK_TRANSFER_HISTORY_LIMIT", 100))
