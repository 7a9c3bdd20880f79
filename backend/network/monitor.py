"""
Network path monitor.

Samples the device's interfaces with psutil and reports a change only when
the kind of the active path changes (wifi, ethernet, cellular, other, none).
Address churn and link flaps that keep the same path kind are not events.
"""

import asyncio
import ipaddress
import logging
import socket
import time
from collections.abc import Callable

import psutil

from config import PATH_POLL_INTERVAL, PATH_SAMPLE_TIMEOUT
from endpoint.models import InterfaceType

logger = logging.getLogger(__name__)

PathSample = tuple[InterfaceType, str | None]

_WIFI_PREFIXES = ("wl", "wlan", "wifi", "wi-fi", "ath", "ra", "airport")
_ETHERNET_PREFIXES = ("eth", "en", "em", "ethernet", "lan")
_CELLULAR_PREFIXES = ("wwan", "rmnet", "pdp_ip", "ccmni", "rmnet_data", "mobile")
_IGNORED_PREFIXES = ("lo", "utun", "tun", "tap", "wg", "tailscale", "docker", "veth", "br-", "awdl", "llw", "p2p", "bridge", "vmnet", "virbr")

# Preference order when several paths are up at once
_PATH_PRIORITY = (
    InterfaceType.WIFI,
    InterfaceType.ETHERNET,
    InterfaceType.CELLULAR,
    InterfaceType.OTHER,
)


def interface_kind(name: str) -> InterfaceType | None:
    """Classify an interface by name; None for interfaces we never route over."""
    name_l = (name or "").lower()
    if not name_l or name_l.startswith(_IGNORED_PREFIXES):
        return None
    if name_l.startswith(_CELLULAR_PREFIXES):
        return InterfaceType.CELLULAR
    if name_l.startswith(_WIFI_PREFIXES):
        return InterfaceType.WIFI
    if name_l.startswith(_ETHERNET_PREFIXES):
        return InterfaceType.ETHERNET
    return InterfaceType.OTHER


def select_path(stats: dict, addrs: dict) -> PathSample:
    """
    Pick the active path from psutil-shaped interface stats and addresses.

    Returns the path kind and the IPv4 address bound to it.
    """
    candidates: dict[InterfaceType, str] = {}
    for iface, iface_addrs in sorted(addrs.items()):
        iface_stats = stats.get(iface)
        if not iface_stats or not iface_stats.isup:
            continue
        kind = interface_kind(iface)
        if kind is None or kind in candidates:
            continue
        for a in iface_addrs:
            if a.family != socket.AF_INET or not a.address:
                continue
            try:
                ip = ipaddress.IPv4Address(a.address)
            except ValueError:
                continue
            if ip.is_loopback or ip.is_link_local:
                continue
            candidates[kind] = a.address
            break

    for kind in _PATH_PRIORITY:
        if kind in candidates:
            return kind, candidates[kind]
    return InterfaceType.NONE, None


def sample_path() -> PathSample:
    """Read the OS interface table. Blocking; run it off the event loop."""
    try:
        return select_path(psutil.net_if_stats(), psutil.net_if_addrs())
    except (OSError, RuntimeError) as e:
        logger.warning(f"Could not read network interfaces: {e}")
        return InterfaceType.NONE, None


def wireless_ip() -> str | None:
    """IPv4 of the active LAN path (wifi or ethernet), if any."""
    kind, ip = sample_path()
    return ip if kind.is_lan else None


class NetworkPathMonitor:
    """Polls the active network path and emits ``network_changed`` on transitions."""

    def __init__(
        self,
        sampler: Callable[[], PathSample] = sample_path,
        poll_interval: float = PATH_POLL_INTERVAL,
        sample_timeout: float = PATH_SAMPLE_TIMEOUT,
    ) -> None:
        self._sampler = sampler
        self._poll_interval = poll_interval
        self._sample_timeout = sample_timeout
        self._interface_type = InterfaceType.NONE
        self._device_ip: str | None = None
        self._connection_time = 0.0
        self._on_change: list = []  # callbacks: async def fn(event, data)
        self._timer: asyncio.TimerHandle | None = None
        self._poll_task: asyncio.Task | None = None
        self._running = False

    @property
    def interface_type(self) -> InterfaceType:
        return self._interface_type

    @property
    def device_ip(self) -> str | None:
        return self._device_ip

    @property
    def connection_time(self) -> float:
        return self._connection_time

    @property
    def running(self) -> bool:
        return self._running

    def on_change(self, callback) -> None:
        """Register a callback for path transitions."""
        self._on_change.append(callback)

    async def start(self) -> None:
        """Take an initial sample and begin polling."""
        if self._running:
            return
        self._running = True
        await self.sample_now()
        self._schedule()
        logger.info(f"Network path monitor started ({self._interface_type.value})")

    async def stop(self) -> None:
        self._running = False
        if self._timer:
            self._timer.cancel()
            self._timer = None
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None
        logger.info("Network path monitor stopped")

    def _schedule(self) -> None:
        if not self._running:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._poll_interval, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._poll_task = asyncio.ensure_future(self._poll_once())

    async def _poll_once(self) -> None:
        try:
            await self.sample_now()
        finally:
            self._schedule()

    async def sample_now(self) -> InterfaceType:
        """Take a fresh sample, bounded by the sample timeout."""
        try:
            sample = await asyncio.wait_for(
                asyncio.to_thread(self._sampler), timeout=self._sample_timeout
            )
        except asyncio.TimeoutError:
            logger.debug("Network path sample timed out; keeping last known path")
            return self._interface_type
        await self.apply_sample(sample)
        return self._interface_type

    async def apply_sample(self, sample: PathSample) -> bool:
        """Record a sample; returns True if it was an interface-type transition."""
        kind, ip = sample
        self._device_ip = ip
        if kind == self._interface_type:
            return False

        previous = self._interface_type
        self._interface_type = kind
        self._connection_time = time.time()
        logger.info(f"Network path changed: {previous.value} -> {kind.value}")
        await self._emit(
            "network_changed",
            {
                "previous": previous.value,
                "interface_type": kind.value,
                "connection_time": self._connection_time,
            },
        )
        return True

    async def _emit(self, event: str, data: dict) -> None:
        for cb in self._on_change:
            try:
                await cb(event, data)
            except Exception as e:
                logger.error(f"Network change callback error: {e}", exc_info=True)
