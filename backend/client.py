"""
Bridge client: owns every endpoint-resolution component and wires their
events together.

Network transitions open a short discovery window (only on what looks like
the home LAN) and force a re-evaluation; discovery results feed the
selector; the health monitor keeps a local endpoint honest in between.
"""

import asyncio
import logging

from config import DISCOVERY_RETRY_DELAY, DISCOVERY_WINDOW, SECRET_SERVICE
from discovery.service import DiscoveryService
from discovery.tunnel import TunnelFetcher
from endpoint.address import host_of, is_local_address, normalize
from endpoint.health import HealthMonitor
from endpoint.models import ActiveEndpoint, InterfaceType
from endpoint.probe import EndpointProber
from endpoint.selector import EndpointSelector
from errors import NoKnownEndpoint
from network.monitor import NetworkPathMonitor
from network.scope import NetworkScopeTracker
from security.pairing import request_token
from security.secret_store import SecretStore
from storage.preferences import SAVED_BRIDGE_NAME, SAVED_TUNNEL_URL, PreferenceStore

logger = logging.getLogger(__name__)


class BridgeClient:
    """Top-level owner of endpoint state for one device."""

    def __init__(
        self,
        preferences: PreferenceStore | None = None,
        secrets: SecretStore | None = None,
        path_monitor: NetworkPathMonitor | None = None,
        scope_tracker: NetworkScopeTracker | None = None,
        prober: EndpointProber | None = None,
        tunnel_fetcher: TunnelFetcher | None = None,
        discovery: DiscoveryService | None = None,
        discovery_window: float = DISCOVERY_WINDOW,
        retry_delay: float = DISCOVERY_RETRY_DELAY,
    ) -> None:
        self.preferences = preferences or PreferenceStore()
        self.secrets = secrets or SecretStore()
        self.path_monitor = path_monitor or NetworkPathMonitor()
        self.scope = scope_tracker or NetworkScopeTracker(
            self.preferences, ip_provider=self._lan_ip
        )
        self.prober = prober or EndpointProber()
        self.tunnel_fetcher = tunnel_fetcher or TunnelFetcher()
        self.discovery = discovery or DiscoveryService(self.tunnel_fetcher)
        self.selector = EndpointSelector(
            self.preferences,
            self.discovery,
            self.path_monitor,
            self.scope,
            self.prober,
        )
        self.health = HealthMonitor(self.selector, self.path_monitor, self.prober)

        self._discovery_window = discovery_window
        self._retry_delay = retry_delay
        self._retry_timer: asyncio.TimerHandle | None = None
        self._retried = False
        self._auto_connected = False
        self._tasks: set[asyncio.Task] = set()
        self._event_callbacks: list = []  # async fn(event_type, data)

        self.path_monitor.on_change(self._on_network_event)
        self.discovery.on_bridge_change(self._on_bridge_event)
        self.selector.on_change(self._emit)
        self.health.on_change(self._emit)

    def _lan_ip(self) -> str | None:
        """Device IP from the last path sample, when that path is a LAN."""
        if self.path_monitor.interface_type.is_lan:
            return self.path_monitor.device_ip
        return None

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for every pending background evaluation to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Lifecycle ---

    async def start(self) -> None:
        logger.info("Starting bridge client...")
        await self.path_monitor.start()
        if self.path_monitor.interface_type == InterfaceType.NONE:
            self._spawn(self.selector.on_network_change())
        self.health.start()

    async def stop(self) -> None:
        await self.background()
        await self.path_monitor.stop()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        logger.info("Bridge client stopped")

    async def foreground(self) -> None:
        """The app became active: resample the network and re-resolve."""
        self.scope.invalidate()
        await self.path_monitor.sample_now()
        self._retried = False
        await self.maybe_open_discovery("foreground")
        self._spawn(self.selector.on_network_change())
        self.health.start()

    async def background(self) -> None:
        """The app went to the background: stop everything that costs power."""
        self._cancel_retry()
        await self.discovery.stop()
        self.health.stop()

    # --- Discovery scheduling ---

    async def maybe_open_discovery(self, reason: str) -> bool:
        """Open a discovery window if the current network could be home."""
        if not self.path_monitor.interface_type.is_lan:
            await self.discovery.stop()
            logger.debug(f"Not on a LAN path; no discovery ({reason})")
            return False
        if not self.scope.is_home_scope():
            logger.info(f"Not on the home network scope; skipping discovery ({reason})")
            return False
        await self.discovery.open_window(self._discovery_window, on_close=self._on_window_closed)
        return True

    async def _on_window_closed(self, names: set[str]) -> None:
        saved = self.preferences.get(SAVED_BRIDGE_NAME)
        if not saved or saved in names or self._retried:
            return
        if not self.path_monitor.interface_type.is_lan or not self.scope.is_home_scope():
            return
        self._retried = True
        loop = asyncio.get_running_loop()
        self._retry_timer = loop.call_later(self._retry_delay, self._on_retry_timer)
        logger.info(f"Saved bridge {saved} not found; retrying discovery in {self._retry_delay:.0f}s")

    def _on_retry_timer(self) -> None:
        self._retry_timer = None
        self._spawn(self.maybe_open_discovery("retry"))

    def _cancel_retry(self) -> None:
        if self._retry_timer:
            self._retry_timer.cancel()
            self._retry_timer = None

    # --- Event wiring ---

    async def _on_network_event(self, event: str, data: dict) -> None:
        self.scope.invalidate()
        self._cancel_retry()
        self._retried = False
        self._spawn(self.maybe_open_discovery("network change"))
        self._spawn(self.selector.on_network_change())
        await self._emit(event, data)

    def should_auto_connect(self) -> bool:
        saved = self.preferences.get(SAVED_BRIDGE_NAME)
        return bool(saved) and saved in self.discovery.names() and not self._auto_connected

    async def _on_bridge_event(self, event: str, data: dict) -> None:
        name = data.get("name", "")
        if event == "tunnel_updated" and data.get("tunnel_url"):
            self._spawn(self.selector.on_tunnel_update(name, data["tunnel_url"]))
        elif event == "bridge_discovered" and self.should_auto_connect():
            self._auto_connected = True
            logger.info(f"Saved bridge {name} found; auto-connecting")
            self._spawn(self._auto_connect())
        else:
            self._spawn(self.selector.on_discovery_change(name))
        await self._emit(event, data)

    async def _auto_connect(self) -> None:
        try:
            await self.selector.evaluate(reason="auto-connect", force=True)
        except NoKnownEndpoint:
            pass

    # --- User actions ---

    async def select_bridge(self, name: str) -> ActiveEndpoint:
        self._auto_connected = True
        return await self.selector.select_bridge(name)

    async def enter_address(self, raw: str) -> ActiveEndpoint:
        return await self.selector.enter_address(raw)

    async def handle_scanned_code(self, code: str) -> ActiveEndpoint:
        """A QR code was scanned: treat it as the bridge's tunnel URL."""
        normalize(code)
        self.preferences.set(SAVED_TUNNEL_URL, code.strip())
        return await self.selector.enter_address(code)

    async def refresh_tunnel(self) -> str | None:
        """User-initiated tunnel refresh against the bridge's local API."""
        bridge = self.selector.saved_bridge()
        endpoint = self.selector.endpoint
        if bridge is not None:
            tunnel_url = await self.discovery.refresh_tunnel(bridge.name)
            name = bridge.name
        elif is_local_address(endpoint.raw_address) and endpoint.normalized_url:
            tunnel_url = await self.tunnel_fetcher.fetch(endpoint.normalized_url)
            name = self.preferences.get(SAVED_BRIDGE_NAME) or ""
        else:
            raise NoKnownEndpoint("No local bridge address to ask for a tunnel")

        if tunnel_url is None:
            return None
        if name:
            await self.selector.on_tunnel_update(name, tunnel_url)
        else:
            self.preferences.set(SAVED_TUNNEL_URL, tunnel_url)
        return tunnel_url

    # --- Credentials ---

    def _account(self) -> str | None:
        saved = self.preferences.get(SAVED_BRIDGE_NAME)
        if saved:
            return saved
        return host_of(self.selector.endpoint.raw_address) or None

    async def pair(self) -> str:
        """Pair with the active endpoint and store the token. Returns the account."""
        url = self.selector.endpoint.normalized_url
        account = self._account()
        if not url or not account:
            raise NoKnownEndpoint("No active endpoint to pair with")
        token = await request_token(url)
        self.secrets.save(SECRET_SERVICE, account, token.encode("utf-8"))
        return account

    def auth_token(self) -> str | None:
        account = self._account()
        if not account:
            return None
        data = self.secrets.load(SECRET_SERVICE, account)
        return data.decode("utf-8") if data else None

    def renderer_request(self) -> dict:
        """URL and headers the web-content renderer should load."""
        headers = {}
        token = self.auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return {"url": self.selector.endpoint.normalized_url, "headers": headers}

    def status(self) -> dict:
        return {
            "endpoint": self.selector.endpoint.model_dump(mode="json"),
            "network": self.selector.network_state().model_dump(mode="json"),
            "health": self.health.status(),
            "discovery": {
                "running": self.discovery.running,
                "window_open": self.discovery.window_open,
            },
            "saved_bridge": self.preferences.get(SAVED_BRIDGE_NAME),
            "saved_tunnel_url": self.preferences.get(SAVED_TUNNEL_URL),
            "home_scope": self.scope.home_scope,
        }
