import asyncio
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Keep config.CONFIG_DIR out of the real home directory
os.environ.setdefault("BRIDGELINK_CONFIG_DIR", tempfile.mkdtemp(prefix="bridgelink-test-"))

# Ensure backend/ is importable even without the pytest pythonpath setting
BACKEND_DIR = Path(__file__).resolve().parent.parent / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from discovery.service import DiscoveryService, ResolvedService
from endpoint.models import InterfaceType
from endpoint.selector import EndpointSelector
from network.monitor import NetworkPathMonitor
from network.scope import NetworkScopeTracker
from storage.preferences import PreferenceStore


class FakeProber:
    """Stands in for EndpointProber; answers from a url -> bool table."""

    def __init__(self, default: bool = True):
        self.default = default
        self.results: dict[str, bool] = {}
        self.calls: list[str] = []
        self.gates: dict[str, asyncio.Event] = {}

    async def is_reachable(self, url: str) -> bool:
        self.calls.append(url)
        gate = self.gates.get(url)
        if gate is not None:
            await gate.wait()
        return self.results.get(url, self.default)


class FakeTunnelFetcher:
    def __init__(self, result: str | None = None):
        self.result = result
        self.calls: list[str] = []

    async def fetch(self, local_address: str) -> str | None:
        self.calls.append(local_address)
        return self.result


class DeviceNetwork:
    """Mutable stand-in for the OS interface table."""

    def __init__(self, kind: InterfaceType = InterfaceType.WIFI, ip: str | None = "192.168.1.42"):
        self.kind = kind
        self.ip = ip

    def sample(self):
        return self.kind, self.ip

    def lan_ip(self):
        return self.ip if self.kind.is_lan else None


@pytest.fixture
def prefs(tmp_path):
    return PreferenceStore(tmp_path / "preferences.json")


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def fetcher():
    return FakeTunnelFetcher()


@pytest.fixture
def device_network():
    return DeviceNetwork()


@pytest.fixture
def path_monitor(device_network):
    return NetworkPathMonitor(sampler=device_network.sample, poll_interval=0.01)


@pytest.fixture
def scope(prefs, device_network):
    return NetworkScopeTracker(prefs, ip_provider=device_network.lan_ip, ttl=0)


@pytest.fixture
def discovery(fetcher):
    return DiscoveryService(fetcher, resolve_timeout=0.5)


@pytest.fixture
def selector(prefs, discovery, path_monitor, scope, prober):
    return EndpointSelector(prefs, discovery, path_monitor, scope, prober)


@pytest.fixture
def resolved():
    """Factory for ResolvedService records."""

    def make(name="Bridge1", ip="192.168.1.10", port=5000, tunnel_url=None):
        props = {"tunnel_url": tunnel_url} if tunnel_url else {}
        return ResolvedService(
            name=f"{name}._dvi-bridge._tcp.local.",
            hostname=f"{name.lower()}.local",
            addresses=[ip] if ip else [],
            port=port,
            properties=props,
        )

    return make


@pytest.fixture
def mock_zeroconf(monkeypatch):
    """Replaces zeroconf's async classes so discovery can start without sockets."""
    zc_cls = MagicMock()
    zc_cls.return_value.async_close = AsyncMock()
    browser_cls = MagicMock()
    browser_cls.return_value.async_cancel = AsyncMock()
    monkeypatch.setattr("discovery.service.AsyncZeroconf", zc_cls)
    monkeypatch.setattr("discovery.service.AsyncServiceBrowser", browser_cls)
    return zc_cls, browser_cls
