"""
Tunnel metadata fetcher.

Bridges recreate their public tunnel periodically, so the URL seen in mDNS
metadata or saved from a previous session may be stale. The bridge's local
``/api/tunnel`` endpoint always reports the current one.
"""

import logging

import httpx

from config import TUNNEL_FETCH_TIMEOUT, TUNNEL_PATH
from endpoint.address import normalize
from errors import InvalidAddress, TunnelFetchUnavailable

logger = logging.getLogger(__name__)


class TunnelFetcher:
    """Asks a bridge over the LAN for its current tunnel URL."""

    def __init__(
        self,
        timeout: float = TUNNEL_FETCH_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def _request(self, local_address: str) -> str:
        url = local_address.rstrip("/") + TUNNEL_PATH
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise TunnelFetchUnavailable(f"{url}: {type(e).__name__}") from e

        if response.status_code != 200:
            raise TunnelFetchUnavailable(f"{url}: HTTP {response.status_code}")

        try:
            tunnel_url = response.json().get("tunnel_url")
        except (ValueError, AttributeError) as e:
            raise TunnelFetchUnavailable(f"{url}: malformed body") from e

        if not isinstance(tunnel_url, str) or not tunnel_url.strip():
            raise TunnelFetchUnavailable(f"{url}: no tunnel_url field")
        tunnel_url = tunnel_url.strip()
        try:
            normalize(tunnel_url)
        except InvalidAddress as e:
            raise TunnelFetchUnavailable(f"{url}: unusable tunnel_url {tunnel_url!r}") from e
        return tunnel_url

    async def fetch(self, local_address: str) -> str | None:
        """
        Return the bridge's current tunnel URL, or None if it can't be had.

        None is an expected outcome (the tunnel may be mid-recreation) and
        means "keep using what we have".
        """
        try:
            tunnel_url = await self._request(local_address)
        except TunnelFetchUnavailable as e:
            logger.debug(f"Tunnel fetch unavailable: {e}")
            return None
        logger.debug(f"Bridge at {local_address} reports tunnel {tunnel_url}")
        return tunnel_url
