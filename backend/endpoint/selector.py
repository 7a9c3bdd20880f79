"""
Endpoint selection and failover.

Decides the single address the client should use right now, verifies it
with a HEAD probe and falls back between the bridge's local address and its
public tunnel. All state lives on the owning event loop; every decision gets
a fresh id and a probe result is applied only if its decision is still the
latest one.
"""

import logging

from discovery.models import DiscoveredBridge
from discovery.service import DiscoveryService
from endpoint.address import is_local_address, normalize
from endpoint.models import ActiveEndpoint, EndpointState, InterfaceType, NetworkState
from endpoint.probe import EndpointProber
from errors import InvalidAddress, NoKnownEndpoint
from network.monitor import NetworkPathMonitor
from network.scope import NetworkScopeTracker
from storage.preferences import (
    LAST_RAW_ADDRESS,
    SAVED_BRIDGE_NAME,
    SAVED_TUNNEL_URL,
    PreferenceStore,
)

logger = logging.getLogger(__name__)


def _usable(raw: str | None) -> str | None:
    """``raw`` if it normalizes to a URL, else None."""
    if not raw:
        return None
    try:
        normalize(raw)
    except InvalidAddress:
        logger.warning(f"Ignoring unusable address {raw!r}")
        return None
    return raw


class EndpointSelector:
    """State owner for the active endpoint: Idle -> Verifying -> Active."""

    def __init__(
        self,
        preferences: PreferenceStore,
        discovery: DiscoveryService,
        path_monitor: NetworkPathMonitor,
        scope_tracker: NetworkScopeTracker,
        prober: EndpointProber,
    ) -> None:
        self._prefs = preferences
        self._discovery = discovery
        self._path = path_monitor
        self._scope = scope_tracker
        self._prober = prober
        self._decision = 0
        self._on_change: list = []  # callbacks: async def fn(event, data)
        self._endpoint = self._restore()

    def _restore(self) -> ActiveEndpoint:
        raw = self._prefs.get(LAST_RAW_ADDRESS)
        if not raw:
            return ActiveEndpoint()
        try:
            url = normalize(raw)
        except InvalidAddress:
            logger.warning(f"Ignoring unusable saved address {raw!r}")
            return ActiveEndpoint()
        logger.info(f"Restored last endpoint {url} (unverified)")
        return ActiveEndpoint(state=EndpointState.ACTIVE, raw_address=raw, normalized_url=url)

    # --- Read side ---

    @property
    def endpoint(self) -> ActiveEndpoint:
        return self._endpoint

    @property
    def state(self) -> EndpointState:
        return self._endpoint.state

    def on_change(self, callback) -> None:
        """Register a callback for ``endpoint_changed`` events."""
        self._on_change.append(callback)

    def saved_bridge(self) -> DiscoveredBridge | None:
        name = self._prefs.get(SAVED_BRIDGE_NAME)
        return self._discovery.get_bridge(name) if name else None

    def is_home_network(self) -> bool:
        return self._scope.is_home_network(
            self._path.interface_type,
            self._discovery.names(),
            self._endpoint.raw_address,
        )

    def network_state(self) -> NetworkState:
        return NetworkState(
            interface_type=self._path.interface_type,
            is_home_network=self.is_home_network(),
            connection_time=self._path.connection_time,
        )

    def candidates(self, interface: InterfaceType) -> tuple[str | None, str | None]:
        """Return (primary, fallback) raw addresses for the given path."""
        bridge = self.saved_bridge()
        if bridge is not None:
            local, tunnel = _usable(bridge.local_address), _usable(bridge.tunnel_url)
            if interface.is_lan:
                primary, fallback = local, tunnel
            else:
                primary, fallback = (tunnel, local) if tunnel else (local, None)
        else:
            primary, fallback = _usable(self._prefs.get(SAVED_TUNNEL_URL)), None

        if primary is None:
            primary, fallback = fallback, None
        if primary and fallback and normalize(primary) == normalize(fallback):
            fallback = None
        return primary, fallback

    # --- Decisions ---

    def _next_decision(self) -> int:
        self._decision += 1
        return self._decision

    def _is_stale(self, decision: int) -> bool:
        return decision != self._decision

    async def evaluate(self, reason: str = "evaluate", force: bool = False) -> ActiveEndpoint:
        """
        Run the selection policy and switch endpoints if needed.

        ``force`` re-verifies even when the chosen candidate is already active,
        which is what a network transition asks for.
        """
        interface = self._path.interface_type
        primary, fallback = self.candidates(interface)
        if primary is None:
            logger.info(f"No known endpoint ({reason}); keeping {self._endpoint.normalized_url}")
            raise NoKnownEndpoint("No discovered bridge or saved tunnel URL")

        bridge = self.saved_bridge()
        if (
            not interface.is_lan
            and bridge is not None
            and bridge.tunnel_url
            and primary == bridge.tunnel_url
        ):
            logger.info(f"Off-LAN ({interface.value}); switching straight to tunnel ({reason})")
            return await self._activate(self._next_decision(), primary, verified=False)

        url = normalize(primary)
        current = self._endpoint
        if (
            not force
            and current.state == EndpointState.ACTIVE
            and current.normalized_url == url
        ):
            return current

        logger.info(f"Verifying {url} ({reason})")
        return await self._verify_and_switch(self._next_decision(), primary, fallback)

    async def _verify_and_switch(
        self, decision: int, primary: str, fallback: str | None
    ) -> ActiveEndpoint:
        await self._mark_verifying(normalize(primary))
        if await self._prober.is_reachable(normalize(primary)):
            return await self._activate(decision, primary, verified=True)
        if self._is_stale(decision):
            return self._endpoint

        if not fallback:
            logger.warning(f"{primary} unreachable and no fallback; using it anyway")
            return await self._activate(decision, primary, verified=False)

        logger.info(f"{primary} unreachable; trying fallback {fallback}")
        await self._mark_verifying(normalize(fallback))
        if await self._prober.is_reachable(normalize(fallback)):
            return await self._activate(decision, fallback, verified=True)

        # Never chain past one fallback. Show something rather than nothing.
        logger.warning(f"Fallback {fallback} unreachable too; using it unverified")
        return await self._activate(decision, fallback, verified=False)

    async def _mark_verifying(self, candidate_url: str) -> None:
        current = self._endpoint
        await self._publish(
            current.model_copy(
                update={
                    "state": EndpointState.VERIFYING,
                    "candidate": candidate_url,
                    "is_verifying": True,
                    "decision_id": self._decision,
                }
            )
        )

    async def _activate(self, decision: int, raw: str, verified: bool) -> ActiveEndpoint:
        if self._is_stale(decision):
            logger.debug(f"Discarding stale result for {raw} (decision {decision})")
            return self._endpoint

        snapshot = ActiveEndpoint(
            state=EndpointState.ACTIVE,
            raw_address=raw,
            normalized_url=normalize(raw),
            verified=verified,
            decision_id=decision,
        )
        self._prefs.set(LAST_RAW_ADDRESS, raw)
        if not is_local_address(raw):
            self._prefs.set(SAVED_TUNNEL_URL, raw)

        previous = self._endpoint.normalized_url
        await self._publish(snapshot)
        if previous != snapshot.normalized_url:
            logger.info(f"Active endpoint: {snapshot.normalized_url} (verified={verified})")
        return snapshot

    async def _publish(self, snapshot: ActiveEndpoint) -> None:
        self._endpoint = snapshot
        data = snapshot.model_dump(mode="json")
        for cb in self._on_change:
            try:
                await cb("endpoint_changed", data)
            except Exception as e:
                logger.error(f"Endpoint change callback error: {e}", exc_info=True)

    # --- Inputs ---

    async def select_bridge(self, name: str) -> ActiveEndpoint:
        """The user picked a discovered bridge: remember it and connect."""
        bridge = self._discovery.get_bridge(name)
        if bridge is None:
            raise NoKnownEndpoint(f"Bridge {name!r} is not currently discovered")

        self._prefs.set(SAVED_BRIDGE_NAME, bridge.name)
        self._scope.save_home_scope(bridge.local_address)
        if bridge.tunnel_url:
            self._prefs.set(SAVED_TUNNEL_URL, bridge.tunnel_url)
        logger.info(f"Bridge selected: {bridge.name}")
        return await self.evaluate(reason="bridge selected", force=True)

    async def enter_address(self, raw: str) -> ActiveEndpoint:
        """The user typed an address. Raises InvalidAddress for junk input."""
        normalize(raw)
        value = raw.strip()
        decision = self._next_decision()
        logger.info(f"Address entered: {value}")
        return await self._verify_and_switch(decision, value, None)

    async def on_network_change(self) -> ActiveEndpoint | None:
        try:
            return await self.evaluate(reason="network change", force=True)
        except NoKnownEndpoint:
            return None

    async def on_discovery_change(self, name: str) -> ActiveEndpoint | None:
        if name != self._prefs.get(SAVED_BRIDGE_NAME):
            return None
        try:
            return await self.evaluate(reason=f"discovery update for {name}")
        except NoKnownEndpoint:
            return None

    async def on_tunnel_update(self, name: str, tunnel_url: str) -> ActiveEndpoint | None:
        """A bridge reported a new tunnel URL."""
        if name != self._prefs.get(SAVED_BRIDGE_NAME):
            return None
        if self._prefs.get(SAVED_TUNNEL_URL) != tunnel_url:
            self._prefs.set(SAVED_TUNNEL_URL, tunnel_url)
            logger.info(f"Saved tunnel URL updated: {tunnel_url}")
        try:
            return await self.evaluate(reason="tunnel update")
        except NoKnownEndpoint:
            return None

    def alternate(self) -> str | None:
        """The other kind of address for the current bridge (tunnel vs local)."""
        current = self._endpoint.raw_address
        bridge = self.saved_bridge()
        if is_local_address(current):
            alt = _usable(bridge.tunnel_url if bridge else None) or _usable(
                self._prefs.get(SAVED_TUNNEL_URL)
            )
        else:
            alt = _usable(bridge.local_address if bridge else None)
        if not alt or (current and normalize(alt) == normalize(current)):
            return None
        return alt

    async def recover(self) -> ActiveEndpoint:
        """
        Health-check recovery: try the alternate address right away.

        On failure the current endpoint is kept as-is. While a verification
        is in flight that verification decides, so recovery does nothing.
        """
        if self._endpoint.state == EndpointState.VERIFYING:
            logger.info("Recovery: verification already in progress")
            return self._endpoint

        alt = self.alternate()
        if alt is None:
            logger.info("Recovery: no alternate endpoint to try")
            return self._endpoint

        decision = self._next_decision()
        logger.info(f"Recovery: trying {alt}")
        if await self._prober.is_reachable(normalize(alt)):
            return await self._activate(decision, alt, verified=True)
        logger.info(f"Recovery: {alt} unreachable; keeping {self._endpoint.normalized_url}")
        return self._endpoint
