"""
Home network scope tracking.

"Home" is fingerprinted by the first three octets of the device's IPv4
address on the LAN where the user last chose a bridge. A matching scope
alone is not proof of being home (many routers hand out 192.168.1.x), so the
final verdict also requires the bridge itself to be visible locally.
"""

import logging
import time
from collections.abc import Callable, Iterable

from config import IP_CACHE_TTL
from endpoint.address import extract_ipv4, is_ipv4, is_local_address
from endpoint.models import InterfaceType
from network.monitor import wireless_ip
from storage.preferences import HOME_NETWORK_SCOPE, SAVED_BRIDGE_NAME, PreferenceStore

logger = logging.getLogger(__name__)


def scope_of(ip: str | None) -> str | None:
    """``192.168.1.42`` -> ``192.168.1``; None for anything but IPv4."""
    value = (ip or "").strip()
    if not is_ipv4(value):
        return None
    return value.rsplit(".", 1)[0]


class NetworkScopeTracker:
    """Answers "am I on the home network" from IP scope and bridge presence."""

    def __init__(
        self,
        preferences: PreferenceStore,
        ip_provider: Callable[[], str | None] = wireless_ip,
        ttl: float = IP_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._prefs = preferences
        self._ip_provider = ip_provider
        self._ttl = ttl
        self._clock = clock
        self._cached_ip: str | None = None
        self._cached_at: float | None = None

    @property
    def home_scope(self) -> str | None:
        return self._prefs.get(HOME_NETWORK_SCOPE)

    def current_device_ip(self) -> str | None:
        """Device IP on the active LAN interface, cached for a short TTL."""
        now = self._clock()
        if self._cached_at is not None and now - self._cached_at < self._ttl:
            return self._cached_ip
        self._cached_ip = self._ip_provider()
        self._cached_at = now
        return self._cached_ip

    def invalidate(self) -> None:
        """Drop the cached IP; called on every path transition."""
        self._cached_ip = None
        self._cached_at = None

    def is_home_scope(self) -> bool:
        """True if the current IP scope matches the saved one (or none is saved yet)."""
        home = self.home_scope
        if not home:
            return True
        return scope_of(self.current_device_ip()) == home

    def is_bridge_discovered_locally(
        self, discovered_names: Iterable[str], active_raw: str | None
    ) -> bool:
        saved_name = self._prefs.get(SAVED_BRIDGE_NAME)
        if saved_name and saved_name in set(discovered_names):
            return True
        return is_local_address(active_raw)

    def is_home_network(
        self,
        interface_type: InterfaceType,
        discovered_names: Iterable[str],
        active_raw: str | None,
    ) -> bool:
        if not interface_type.is_lan:
            return False
        return self.is_home_scope() and self.is_bridge_discovered_locally(
            discovered_names, active_raw
        )

    def save_home_scope(self, local_address: str) -> str | None:
        """Persist the scope of the IPv4 found in ``local_address``."""
        scope = scope_of(extract_ipv4(local_address))
        if scope is None:
            logger.debug(f"No IPv4 scope in {local_address!r}; home scope unchanged")
            return None
        self._prefs.set(HOME_NETWORK_SCOPE, scope)
        logger.info(f"Home network scope saved: {scope}")
        return scope
