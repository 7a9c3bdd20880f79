"""Pydantic models for bridge discovery."""

import uuid
from enum import Enum

from pydantic import BaseModel, Field


class DiscoveredBridge(BaseModel):
    """A bridge instance found on the LAN, keyed by its service name."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    hostname: str | None = None
    local_address: str  # http://<ip-or-host>:<port>
    tunnel_url: str | None = None
    last_seen: float = 0.0  # Unix timestamp


class DiscoveryEventKind(str, Enum):
    FOUND = "found"
    UPDATED = "updated"
    REMOVED = "removed"


class DiscoveryEvent(BaseModel):
    """A browser notification queued for the discovery state owner."""
    kind: DiscoveryEventKind
    service_type: str
    name: str
