"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
APP_ID = "peershare-v1"
# Rendezvous ids are this prefix followed by the short session code
PEER_ID_PREFIX = "peershare-"
SHORT_CODE_LENGTH = 6
SHORT_CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz"

# --- Networking ---
API_HOST = os.environ.get("PEERSHARE_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("PEERSHARE_API_PORT", "8765"))
LINK_HOST = os.environ.get("PEERSHARE_LINK_HOST", "0.0.0.0")
# Address other peers should dial; defaults to loopback for single-machine use
ADVERTISED_HOST = os.environ.get("PEERSHARE_ADVERTISED_HOST", "127.0.0.1")
RENDEZVOUS_URL = os.environ.get(
    "PEERSHARE_RENDEZVOUS_URL", f"ws://127.0.0.1:{API_PORT}/rendezvous"
)
CONNECT_TIMEOUT = 10.0  # seconds

# --- Transfer ---
CHUNK_SIZE = 16 * 1024  # 16 KB
HIGH_WATERMARK = 12 * 1024 * 1024  # pause sending above this backlog
LOW_WATERMARK = 1 * 1024 * 1024  # resume once the backlog drains below this
CAPACITY_POLL_INTERVAL = 0.005  # seconds
PROGRESS_INTERVAL = 0.1  # seconds between progress samples (~10 Hz)
TRANSFER_RETENTION = 3.0  # seconds a finished transfer stays visible
DEFAULT_MIME_TYPE = "application/octet-stream"

# --- Session ---
DEFAULT_EXPIRY_MINUTES = 60
EXPIRY_CHECK_INTERVAL = 0.5  # seconds
LIMIT_SHUTDOWN_DELAY = 1.0  # seconds between hitting the limit and teardown
PING_INTERVAL = 2.0  # seconds
PASSWORD_TIMEOUT = 10.0  # seconds to wait for the host to answer an unlock attempt

# --- Storage ---
DEFAULT_SAVE_DIR = os.environ.get(
    "PEERSHARE_SAVE_DIR", str(Path.home() / "Downloads" / "PeerShare")
)
