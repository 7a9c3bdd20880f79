import httpx
import pytest

from discovery.tunnel import TunnelFetcher
from endpoint.probe import EndpointProber
from errors import PairingFailed, ProbeFailed
from security.pairing import request_token


def _transport(handler):
    return httpx.MockTransport(handler)


# --- Tunnel fetch ---

@pytest.mark.asyncio
async def test_tunnel_fetch_success():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"tunnel_url": "https://new.trycloudflare.com"})

    fetcher = TunnelFetcher(transport=_transport(handler))
    result = await fetcher.fetch("http://192.168.1.10:5000")

    assert result == "https://new.trycloudflare.com"
    assert seen[0].method == "GET"
    assert str(seen[0].url) == "http://192.168.1.10:5000/api/tunnel"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, json={"error": "no tunnel"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"other": 1}),
        httpx.Response(200, json={"tunnel_url": ""}),
        httpx.Response(200, json={"tunnel_url": "https://"}),
        httpx.Response(200, json={"tunnel_url": "not a url"}),
        httpx.Response(200, json=["tunnel_url"]),
    ],
)
async def test_tunnel_fetch_unavailable_returns_none(response):
    fetcher = TunnelFetcher(transport=_transport(lambda request: response))
    assert await fetcher.fetch("http://192.168.1.10:5000") is None


@pytest.mark.asyncio
async def test_tunnel_fetch_network_error_returns_none():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    fetcher = TunnelFetcher(transport=_transport(handler))
    assert await fetcher.fetch("http://192.168.1.10:5000") is None


# --- Probe ---

@pytest.mark.asyncio
async def test_probe_uses_uncached_head():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    prober = EndpointProber(transport=_transport(handler))
    assert await prober.is_reachable("http://192.168.1.10:5000") is True
    assert seen[0].method == "HEAD"
    assert "no-cache" in seen[0].headers["Cache-Control"]
    assert prober.probe_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status, reachable", [(204, True), (302, True), (399, True), (400, False), (502, False)])
async def test_probe_status_threshold(status, reachable):
    prober = EndpointProber(transport=_transport(lambda request: httpx.Response(status)))
    assert await prober.is_reachable("https://x.trycloudflare.com") is reachable


@pytest.mark.asyncio
async def test_probe_timeout_raises_probe_failed():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    prober = EndpointProber(transport=_transport(handler))
    with pytest.raises(ProbeFailed, match="timeout"):
        await prober.check("http://192.168.1.10:5000")
    assert await prober.is_reachable("http://192.168.1.10:5000") is False


# --- Pairing ---

@pytest.mark.asyncio
async def test_pairing_returns_token():
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/pair"
        return httpx.Response(200, json={"token": "opaque"})

    token = await request_token("http://192.168.1.10:5000/", transport=_transport(handler))
    assert token == "opaque"


@pytest.mark.asyncio
async def test_pairing_refused():
    transport = _transport(lambda request: httpx.Response(403))
    with pytest.raises(PairingFailed):
        await request_token("http://192.168.1.10:5000", transport=transport)
