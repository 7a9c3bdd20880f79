"""
mDNS/DNS-SD bridge discovery.

Browses for bridge announcements, resolves each one to a local address and
keeps a deduplicated registry of bridges keyed by service name. Browser
callbacks never touch the registry directly: they are queued as events and
applied by a single consumer task on the owning event loop.

Discovery is meant to run in short windows after a network change rather
than continuously.
"""

import asyncio
import logging
import time

from pydantic import BaseModel
from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from config import (
    DEFAULT_PORT,
    DISCOVERY_WINDOW,
    LOCAL_SUFFIX,
    RESOLVE_TIMEOUT,
    SERVICE_TYPE,
    TUNNEL_TXT_KEY,
)
from discovery.models import DiscoveredBridge, DiscoveryEvent, DiscoveryEventKind
from discovery.tunnel import TunnelFetcher
from endpoint.address import normalize
from errors import DiscoveryTimeout, InvalidAddress

logger = logging.getLogger(__name__)

_STATE_TO_KIND = {
    ServiceStateChange.Added: DiscoveryEventKind.FOUND,
    ServiceStateChange.Updated: DiscoveryEventKind.UPDATED,
    ServiceStateChange.Removed: DiscoveryEventKind.REMOVED,
}


class ResolvedService(BaseModel):
    """The parts of a resolved DNS-SD record we care about."""
    name: str
    hostname: str | None = None
    addresses: list[str] = []
    port: int = 0
    properties: dict[str, str] = {}


def instance_name(full_name: str, service_type: str = SERVICE_TYPE) -> str:
    """``Bridge1._dvi-bridge._tcp.local.`` -> ``Bridge1``."""
    suffix = "." + service_type
    if full_name.endswith(suffix):
        return full_name[: -len(suffix)]
    return full_name.rstrip(".")


def _decode_properties(raw: dict | None) -> dict[str, str]:
    props: dict[str, str] = {}
    for k, v in (raw or {}).items():
        if v is None:
            continue
        try:
            key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else str(k)
            value = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else str(v)
        except (AttributeError, UnicodeDecodeError):
            continue
        props[key] = value
    return props


def _txt_tunnel_url(properties: dict[str, str]) -> str | None:
    """The advertised tunnel URL, or None if absent or not a usable address."""
    value = (properties.get(TUNNEL_TXT_KEY) or "").strip()
    if not value:
        return None
    try:
        normalize(value)
    except InvalidAddress:
        logger.debug(f"Ignoring unusable TXT tunnel_url {value!r}")
        return None
    return value


class DiscoveryService:
    """Manages LAN bridge discovery via zeroconf."""

    def __init__(
        self,
        tunnel_fetcher: TunnelFetcher,
        service_type: str = SERVICE_TYPE,
        resolve_timeout: float = RESOLVE_TIMEOUT,
        default_port: int = DEFAULT_PORT,
    ) -> None:
        self._bridges: dict[str, DiscoveredBridge] = {}
        self._tunnel_fetcher = tunnel_fetcher
        self._service_type = service_type
        self._resolve_timeout = resolve_timeout
        self._default_port = default_port
        self._on_bridge_change: list = []  # callbacks: async def fn(event, data)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._zeroconf: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._events: asyncio.Queue[DiscoveryEvent] | None = None
        self._consumer_task: asyncio.Task | None = None
        self._resolve_tasks: dict[str, asyncio.Task] = {}
        self._tunnel_tasks: set[asyncio.Task] = set()
        self._window_tasks: set[asyncio.Task] = set()
        self._window_timer: asyncio.TimerHandle | None = None
        self._generation = 0
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def window_open(self) -> bool:
        return self._window_timer is not None

    def on_bridge_change(self, callback) -> None:
        """Register a callback for bridge discovered/updated/lost events."""
        self._on_bridge_change.append(callback)

    def get_bridges(self) -> list[DiscoveredBridge]:
        """Return a list of currently known bridges."""
        return list(self._bridges.values())

    def get_bridge(self, name: str) -> DiscoveredBridge | None:
        return self._bridges.get(name)

    def names(self) -> set[str]:
        return set(self._bridges)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start browsing. Restarts cleanly if already running."""
        if self._running:
            await self.stop()

        self._loop = asyncio.get_running_loop()
        self._generation += 1
        self._events = asyncio.Queue()
        self._running = True
        self._consumer_task = asyncio.create_task(
            self._consume(self._events), name="discovery-consumer"
        )

        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
        self._browser = AsyncServiceBrowser(
            self._zeroconf.zeroconf,
            [self._service_type],
            handlers=[self._on_service_state_change],
        )
        logger.info(f"Discovery started for {self._service_type}")

    async def stop(self) -> None:
        """Stop browsing and cancel every in-flight resolution."""
        if self._window_timer:
            self._window_timer.cancel()
            self._window_timer = None
        current = asyncio.current_task()
        for task in list(self._window_tasks):
            if task is not current:
                task.cancel()
                self._window_tasks.discard(task)
        if not self._running:
            return

        self._running = False
        self._generation += 1

        for task in list(self._resolve_tasks.values()) + list(self._tunnel_tasks):
            task.cancel()
        self._resolve_tasks.clear()
        self._tunnel_tasks.clear()

        if self._consumer_task:
            self._consumer_task.cancel()
            self._consumer_task = None
        self._events = None

        if self._browser:
            try:
                await self._browser.async_cancel()
            except Exception as e:
                logger.debug(f"Error cancelling browser: {e}")
            self._browser = None
        if self._zeroconf:
            try:
                await self._zeroconf.async_close()
            except Exception as e:
                logger.debug(f"Error closing zeroconf: {e}")
            self._zeroconf = None
        logger.info("Discovery stopped")

    async def open_window(self, duration: float = DISCOVERY_WINDOW, on_close=None) -> None:
        """
        Browse for ``duration`` seconds, then stop.

        ``on_close`` is an optional ``async fn(names)`` invoked with the set of
        bridge names known when the window closes.
        """
        await self.start()
        loop = asyncio.get_running_loop()
        generation = self._generation
        self._window_timer = loop.call_later(
            duration, self._on_window_timer, generation, on_close
        )
        logger.info(f"Discovery window open for {duration:.0f}s")

    def _on_window_timer(self, generation: int, on_close) -> None:
        task = asyncio.create_task(self._close_window(generation, on_close))
        self._window_tasks.add(task)
        task.add_done_callback(self._window_tasks.discard)

    async def _close_window(self, generation: int, on_close) -> None:
        if generation != self._generation:
            return
        self._window_timer = None
        await self.stop()
        logger.info(f"Discovery window closed ({len(self._bridges)} bridge(s) known)")
        if on_close is not None:
            try:
                await on_close(self.names())
            except Exception as e:
                logger.error(f"Discovery window callback error: {e}", exc_info=True)

    # --- Browser callbacks (any thread) ---

    def _on_service_state_change(
        self,
        zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        kind = _STATE_TO_KIND.get(state_change)
        if kind is None or self._loop is None:
            return
        event = DiscoveryEvent(kind=kind, service_type=service_type, name=name)
        self._loop.call_soon_threadsafe(self._enqueue, self._generation, event)

    def _enqueue(self, generation: int, event: DiscoveryEvent) -> None:
        if generation != self._generation or self._events is None:
            return
        self._events.put_nowait(event)

    # --- State owner ---

    async def _consume(self, events: asyncio.Queue) -> None:
        while True:
            event = await events.get()
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Failed to handle discovery event {event.kind}: {e}", exc_info=True)

    async def handle_event(self, event: DiscoveryEvent) -> None:
        """Apply one browser event to the registry."""
        name = instance_name(event.name, self._service_type)

        if event.kind == DiscoveryEventKind.REMOVED:
            task = self._resolve_tasks.pop(name, None)
            if task:
                task.cancel()
            bridge = self._bridges.pop(name, None)
            if bridge:
                logger.info(f"Bridge lost: {bridge.name} ({bridge.local_address})")
                await self._emit("bridge_lost", bridge.model_dump())
            return

        previous = self._resolve_tasks.pop(name, None)
        if previous:
            previous.cancel()
        task = asyncio.create_task(self._resolve(event, name), name=f"resolve-{name}")
        self._resolve_tasks[name] = task

    async def _resolve(self, event: DiscoveryEvent, name: str) -> None:
        generation = self._generation
        try:
            resolved = await asyncio.wait_for(
                self._resolve_info(event.service_type, event.name),
                timeout=self._resolve_timeout,
            )
        except (asyncio.TimeoutError, DiscoveryTimeout):
            logger.debug(f"Resolution of {name} timed out; dropping it this cycle")
            return
        except Exception as e:
            logger.debug(f"Resolution of {name} failed: {e}; dropping it this cycle")
            return
        finally:
            if self._resolve_tasks.get(name) is asyncio.current_task():
                del self._resolve_tasks[name]

        if generation != self._generation or resolved is None:
            return
        await self.apply_resolved(name, resolved)

    async def _resolve_info(self, service_type: str, full_name: str) -> ResolvedService | None:
        if self._zeroconf is None:
            return None
        info = AsyncServiceInfo(service_type, full_name)
        found = await info.async_request(
            self._zeroconf.zeroconf, int(self._resolve_timeout * 1000)
        )
        if not found:
            raise DiscoveryTimeout(full_name)
        return ResolvedService(
            name=full_name,
            hostname=(info.server or "").rstrip(".") or None,
            addresses=info.parsed_addresses(IPVersion.V4Only),
            port=info.port or 0,
            properties=_decode_properties(info.properties),
        )

    def local_address_for(self, name: str, resolved: ResolvedService) -> str:
        host = resolved.addresses[0] if resolved.addresses else f"{name}{LOCAL_SUFFIX}"
        port = resolved.port or self._default_port
        return f"http://{host}:{port}"

    async def apply_resolved(self, name: str, resolved: ResolvedService) -> DiscoveredBridge:
        """Merge a resolved record into the registry and kick off a tunnel refresh."""
        local_address = self.local_address_for(name, resolved)
        tunnel_url = _txt_tunnel_url(resolved.properties)

        bridge = self._bridges.get(name)
        if bridge is None:
            bridge = DiscoveredBridge(
                name=name,
                hostname=resolved.hostname,
                local_address=local_address,
                tunnel_url=tunnel_url,
                last_seen=time.time(),
            )
            self._bridges[name] = bridge
            logger.info(f"Discovered bridge: {name} ({local_address})")
            await self._emit("bridge_discovered", bridge.model_dump())
        else:
            changed = (
                bridge.local_address != local_address
                or (tunnel_url is not None and bridge.tunnel_url != tunnel_url)
                or (resolved.hostname is not None and bridge.hostname != resolved.hostname)
            )
            bridge.local_address = local_address
            if resolved.hostname is not None:
                bridge.hostname = resolved.hostname
            if tunnel_url is not None:
                bridge.tunnel_url = tunnel_url
            bridge.last_seen = time.time()
            if changed:
                logger.info(f"Bridge updated: {name} ({local_address})")
                await self._emit("bridge_updated", bridge.model_dump())

        self._schedule_tunnel_refresh(name, local_address)
        return bridge

    # --- Tunnel refresh ---

    def _schedule_tunnel_refresh(self, name: str, local_address: str) -> None:
        task = asyncio.create_task(self.refresh_tunnel(name, local_address))
        self._tunnel_tasks.add(task)
        task.add_done_callback(self._tunnel_tasks.discard)

    async def refresh_tunnel(self, name: str, local_address: str | None = None) -> str | None:
        """Fetch a bridge's current tunnel URL and update its record if it moved."""
        bridge = self._bridges.get(name)
        address = local_address or (bridge.local_address if bridge else None)
        if not address:
            return None

        tunnel_url = await self._tunnel_fetcher.fetch(address)
        if tunnel_url is None:
            return None

        bridge = self._bridges.get(name)
        if bridge is not None and bridge.tunnel_url != tunnel_url:
            bridge.tunnel_url = tunnel_url
            logger.info(f"Bridge {name} tunnel refreshed: {tunnel_url}")
            await self._emit("tunnel_updated", bridge.model_dump())
        return tunnel_url

    async def _emit(self, event: str, data: dict) -> None:
        for cb in self._on_bridge_change:
            try:
                await cb(event, data)
            except Exception as e:
                logger.error(f"Bridge change callback error: {e}", exc_info=True)
