"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

# --- Identity ---
APP_NAME = "AirShare"
APP_VERSION = "1.0.0"

DEVICE_NAME = os.environ.get("AIRSHARE_DEVICE_NAME") or platform.node() or "Unknown Device"
PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# The relay derives the device icon from this header, so it names the OS the
# same way browser user agents do.
_UA_PLATFORMS = {
    "windows": "Windows NT 10.0",
    "darwin": "Macintosh; Intel Mac OS X",
    "linux": "X11; Linux x86_64",
}
USER_AGENT = f"{APP_NAME}/{APP_VERSION} ({_UA_PLATFORMS.get(PLATFORM, PLATFORM)})"

# --- Relay ---
RELAY_HOST = os.environ.get("AIRSHARE_RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("PORT", "3000"))
RELAY_URL = os.environ.get("AIRSHARE_RELAY_URL", f"ws://127.0.0.1:{RELAY_PORT}/")
UNKNOWN_DEVICE_NAME = "Unknown Device"
RELAY_SEND_TIMEOUT = 10  # seconds a stalled device may hold up a forward

# --- Device agent ---
AGENT_HOST = os.environ.get("AIRSHARE_AGENT_HOST", "127.0.0.1")
AGENT_PORT = int(os.environ.get("AIRSHARE_AGENT_PORT", "8766"))
RECONNECT_DELAY = 3  # seconds between relay reconnect attempts
PING_INTERVAL = 25  # seconds between keepalive pings
CONSENT_TIMEOUT = 60  # seconds before an unanswered offer is rejected
UI_SEND_TIMEOUT = 5  # seconds before a UI client that stopped reading is dropped

ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]
DATA_CHANNEL_LABEL = "fileTransfer"
DATA_CHANNEL_MAX_RETRANSMITS = 10

# --- Transfer ---
CHUNK_SIZE = 8192  # 8 KB
MAX_BUFFER = CHUNK_SIZE * 32  # flow-control ceiling for the channel backlog
BUFFER_POLL_INTERVAL = 0.05  # seconds
PROGRESS_EVERY_CHUNKS = 10
GRACE_DELAY = 2  # seconds to let the last frames flush before teardown
DEFAULT_MIME_TYPE = "application/octet-stream"

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "AIRSHARE_SAVE_DIR", str(Path.home() / "Downloads" / "AirShare")
)
