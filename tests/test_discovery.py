import asyncio
from unittest.mock import AsyncMock

import pytest
from zeroconf import ServiceStateChange

from discovery.models import DiscoveryEvent, DiscoveryEventKind
from discovery.service import DiscoveryService, instance_name
from errors import DiscoveryTimeout

SERVICE = "_dvi-bridge._tcp.local."


def _event(kind, name="Bridge1"):
    return DiscoveryEvent(kind=kind, service_type=SERVICE, name=f"{name}.{SERVICE}")


@pytest.fixture
def events(discovery):
    recorded = []

    async def record(event, data):
        recorded.append((event, data))

    discovery.on_bridge_change(record)
    return recorded


def test_instance_name():
    assert instance_name(f"Bridge1.{SERVICE}", SERVICE) == "Bridge1"
    assert instance_name("Odd.", SERVICE) == "Odd"


@pytest.mark.asyncio
async def test_same_name_is_merged_not_duplicated(discovery, resolved, events):
    first = await discovery.apply_resolved("Bridge1", resolved(ip="192.168.1.10"))
    second = await discovery.apply_resolved("Bridge1", resolved(ip="192.168.1.11"))

    bridges = discovery.get_bridges()
    assert len(bridges) == 1
    assert bridges[0].local_address == "http://192.168.1.11:5000"
    assert first.id == second.id
    assert [e for e, _ in events] == ["bridge_discovered", "bridge_updated"]


@pytest.mark.asyncio
async def test_resolution_fallbacks(discovery, resolved):
    bridge = await discovery.apply_resolved("Bridge1", resolved(ip=None, port=0))
    assert bridge.local_address == "http://Bridge1.local:5000"
    assert bridge.hostname == "bridge1.local"


@pytest.mark.asyncio
async def test_tunnel_url_from_txt_metadata(discovery, resolved):
    bridge = await discovery.apply_resolved(
        "Bridge1", resolved(tunnel_url="https://old.trycloudflare.com")
    )
    assert bridge.tunnel_url == "https://old.trycloudflare.com"

    # A later record without metadata keeps the known tunnel
    bridge = await discovery.apply_resolved("Bridge1", resolved())
    assert bridge.tunnel_url == "https://old.trycloudflare.com"


@pytest.mark.asyncio
@pytest.mark.parametrize("junk", ["https://", "not a url", "   "])
async def test_unusable_txt_tunnel_url_is_ignored(discovery, resolved, junk):
    bridge = await discovery.apply_resolved("Bridge1", resolved(tunnel_url=junk))
    assert bridge.tunnel_url is None

    await discovery.apply_resolved("Bridge1", resolved(tunnel_url="https://old.trycloudflare.com"))
    bridge = await discovery.apply_resolved("Bridge1", resolved(tunnel_url=junk))
    assert bridge.tunnel_url == "https://old.trycloudflare.com"


@pytest.mark.asyncio
async def test_resolve_triggers_tunnel_refresh(discovery, fetcher, resolved, events):
    fetcher.result = "https://fresh.trycloudflare.com"
    await discovery.apply_resolved("Bridge1", resolved(tunnel_url="https://stale.trycloudflare.com"))
    await asyncio.sleep(0.01)

    assert fetcher.calls == ["http://192.168.1.10:5000"]
    assert discovery.get_bridge("Bridge1").tunnel_url == "https://fresh.trycloudflare.com"
    assert events[-1][0] == "tunnel_updated"
    assert len(discovery.get_bridges()) == 1


@pytest.mark.asyncio
async def test_failed_tunnel_refresh_keeps_record(discovery, fetcher, resolved, events):
    fetcher.result = None
    await discovery.apply_resolved("Bridge1", resolved(tunnel_url="https://old.trycloudflare.com"))
    await asyncio.sleep(0.01)

    assert discovery.get_bridge("Bridge1").tunnel_url == "https://old.trycloudflare.com"
    assert "tunnel_updated" not in [e for e, _ in events]


@pytest.mark.asyncio
async def test_found_event_resolves_and_removed_event_drops(discovery, resolved, events):
    discovery._resolve_info = AsyncMock(return_value=resolved())

    await discovery.handle_event(_event(DiscoveryEventKind.FOUND))
    await asyncio.sleep(0.01)
    assert discovery.names() == {"Bridge1"}

    await discovery.handle_event(_event(DiscoveryEventKind.REMOVED))
    assert discovery.names() == set()
    assert events[-1][0] == "bridge_lost"


@pytest.mark.asyncio
async def test_resolution_timeout_is_dropped_silently(discovery):
    discovery._resolve_info = AsyncMock(side_effect=DiscoveryTimeout("Bridge1"))

    await discovery.handle_event(_event(DiscoveryEventKind.FOUND))
    await asyncio.sleep(0.01)
    assert discovery.get_bridges() == []


@pytest.mark.asyncio
async def test_resolution_error_is_dropped(discovery):
    discovery._resolve_info = AsyncMock(side_effect=RuntimeError("zeroconf instance closed"))

    await discovery.handle_event(_event(DiscoveryEventKind.FOUND))
    task = discovery._resolve_tasks["Bridge1"]
    await asyncio.sleep(0.01)

    assert task.done()
    assert task.exception() is None
    assert discovery.get_bridges() == []
    assert discovery._resolve_tasks == {}


@pytest.mark.asyncio
async def test_slow_resolution_is_bounded(fetcher):
    service = DiscoveryService(fetcher, resolve_timeout=0.05)

    async def never(service_type, name):
        await asyncio.sleep(10)

    service._resolve_info = never
    await service.handle_event(_event(DiscoveryEventKind.FOUND))
    await asyncio.sleep(0.1)
    assert service.get_bridges() == []
    assert service._resolve_tasks == {}


@pytest.mark.asyncio
async def test_stop_cancels_in_flight_resolution(discovery, resolved, events, mock_zeroconf):
    started = asyncio.Event()

    async def slow(service_type, name):
        started.set()
        await asyncio.sleep(10)
        return resolved()

    await discovery.start()
    discovery._resolve_info = slow
    await discovery.handle_event(_event(DiscoveryEventKind.FOUND))
    await started.wait()
    task = discovery._resolve_tasks["Bridge1"]

    await discovery.stop()
    await asyncio.sleep(0.01)

    assert task.cancelled()
    assert discovery.get_bridges() == []
    assert events == []


@pytest.mark.asyncio
async def test_start_twice_restarts_cleanly(discovery, mock_zeroconf):
    zc_cls, browser_cls = mock_zeroconf

    await discovery.start()
    await discovery.start()

    assert zc_cls.call_count == 2
    assert browser_cls.call_count == 2
    assert zc_cls.return_value.async_close.await_count == 1
    assert browser_cls.return_value.async_cancel.await_count == 1
    assert discovery.running

    await discovery.stop()
    assert not discovery.running


@pytest.mark.asyncio
async def test_browser_callbacks_are_queued_to_the_owner(discovery, resolved, mock_zeroconf):
    await discovery.start()
    await discovery.apply_resolved("Bridge1", resolved())

    discovery._on_service_state_change(
        zeroconf=None,
        service_type=SERVICE,
        name=f"Bridge1.{SERVICE}",
        state_change=ServiceStateChange.Removed,
    )
    # Nothing happens synchronously; the consumer task applies it
    assert discovery.names() == {"Bridge1"}
    await asyncio.sleep(0.01)
    assert discovery.names() == set()

    await discovery.stop()


@pytest.mark.asyncio
async def test_callbacks_after_stop_are_ignored(discovery, resolved, mock_zeroconf):
    await discovery.start()
    await discovery.apply_resolved("Bridge1", resolved())
    await discovery.stop()

    discovery._on_service_state_change(
        zeroconf=None,
        service_type=SERVICE,
        name=f"Bridge1.{SERVICE}",
        state_change=ServiceStateChange.Removed,
    )
    await asyncio.sleep(0.01)
    assert discovery.names() == {"Bridge1"}


@pytest.mark.asyncio
async def test_window_closes_itself(discovery, resolved, mock_zeroconf):
    closed_with = []

    async def on_close(names):
        closed_with.append(names)

    await discovery.open_window(0.02, on_close=on_close)
    assert discovery.running and discovery.window_open
    await discovery.apply_resolved("Bridge1", resolved())

    await asyncio.sleep(0.1)
    assert not discovery.running
    assert not discovery.window_open
    assert closed_with == [{"Bridge1"}]


@pytest.mark.asyncio
async def test_stop_cancels_pending_window_close(discovery, mock_zeroconf):
    closing = asyncio.Event()

    async def on_close(names):
        closing.set()
        await asyncio.sleep(10)

    await discovery.open_window(0.01, on_close=on_close)
    await closing.wait()
    task = next(iter(discovery._window_tasks))

    await discovery.stop()
    await asyncio.sleep(0.01)

    assert task.cancelled()
    assert discovery._window_tasks == set()
