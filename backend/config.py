"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
APP_ID = "bridgelink-v1"
SECRET_SERVICE = "bridgelink"

# --- Storage ---
CONFIG_DIR = Path(
    os.environ.get("BRIDGELINK_CONFIG_DIR", str(Path.home() / ".bridgelink"))
)
os.makedirs(CONFIG_DIR, exist_ok=True)

# --- Local control API ---
API_HOST = os.environ.get("BRIDGELINK_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("BRIDGELINK_API_PORT", "8766"))

# --- Addressing ---
DEFAULT_PORT = 5000
LOCAL_SUFFIX = ".local"

# --- Discovery ---
SERVICE_TYPE = os.environ.get("BRIDGELINK_SERVICE_TYPE", "_dvi-bridge._tcp.local.")
TUNNEL_TXT_KEY = "tunnel_url"
RESOLVE_TIMEOUT = 5  # seconds per service resolution
DISCOVERY_WINDOW = 10  # seconds a discovery window stays open
DISCOVERY_RETRY_DELAY = 30  # seconds before a missed window is retried

# --- Bridge HTTP endpoints ---
TUNNEL_PATH = "/api/tunnel"
PAIR_PATH = "/pair"
TUNNEL_FETCH_TIMEOUT = 5  # seconds
PAIR_TIMEOUT = 10  # seconds
PROBE_TIMEOUT = 2.5  # seconds

# --- Health checks ---
HEALTH_BASE_INTERVAL = 10  # seconds
HEALTH_MAX_INTERVAL = 60  # seconds
HEALTH_MAX_RECOVERIES = 2  # consecutive failures that still trigger recovery

# --- Network monitoring ---
IP_CACHE_TTL = 5  # seconds
PATH_POLL_INTERVAL = 2  # seconds
PATH_SAMPLE_TIMEOUT = 1  # seconds
