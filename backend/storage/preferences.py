"""Durable key-value preferences backed by a JSON file."""

import json
import logging
from pathlib import Path

from config import CONFIG_DIR

logger = logging.getLogger(__name__)

SAVED_TUNNEL_URL = "savedTunnelURL"
SAVED_BRIDGE_NAME = "savedBridgeName"
HOME_NETWORK_SCOPE = "homeNetworkScope"
LAST_RAW_ADDRESS = "lastRawAddress"


class PreferenceStore:
    """Persists small string preferences across sessions."""

    def __init__(self, path: Path | None = None):
        self._store_path = path or CONFIG_DIR / "preferences.json"
        self._values: dict[str, str] = {}
        self._load()

    def _load(self) -> None:
        if not self._store_path.exists():
            return

        try:
            data = json.loads(self._store_path.read_text())
            self._values = {str(k): str(v) for k, v in data.items() if v is not None}
            logger.info(f"Loaded {len(self._values)} preferences.")
        except Exception as e:
            logger.error(f"Failed to load preferences: {e}")

    def _save(self) -> None:
        try:
            self._store_path.write_text(json.dumps(self._values, indent=2))
        except Exception as e:
            logger.error(f"Failed to save preferences: {e}")

    def get(self, key: str) -> str | None:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        if self._values.get(key) == value:
            return
        self._values[key] = value
        self._save()

    def delete(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._save()

    def snapshot(self) -> dict[str, str]:
        return dict(self._values)
