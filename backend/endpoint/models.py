"""Pydantic models for endpoint selection state."""

from enum import Enum

from pydantic import BaseModel, ConfigDict


class InterfaceType(str, Enum):
    """Kind of the device's active network path."""
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    OTHER = "other"
    NONE = "none"

    @property
    def is_lan(self) -> bool:
        return self in (InterfaceType.WIFI, InterfaceType.ETHERNET)


class EndpointState(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    ACTIVE = "active"


class ActiveEndpoint(BaseModel):
    """
    Immutable snapshot of where the client connects right now.

    The selector swaps whole snapshots, so a consumer never sees the new URL
    paired with a stale verification flag.
    """
    model_config = ConfigDict(frozen=True)

    state: EndpointState = EndpointState.IDLE
    raw_address: str | None = None
    normalized_url: str | None = None
    candidate: str | None = None  # URL being verified, if any
    is_verifying: bool = False
    verified: bool = False
    decision_id: int = 0


class NetworkState(BaseModel):
    """Derived view of the current network, never persisted."""
    interface_type: InterfaceType = InterfaceType.NONE
    is_home_network: bool = False
    connection_time: float = 0.0
