"""Lightweight HEAD reachability probe."""

import logging

import httpx

from config import PROBE_TIMEOUT
from errors import ProbeFailed

logger = logging.getLogger(__name__)

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}


class EndpointProber:
    """Issues cache-bypassing HEAD requests against candidate endpoints."""

    def __init__(
        self,
        timeout: float = PROBE_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport
        self.probe_count = 0

    async def check(self, url: str) -> int:
        """Return the status code, raising ProbeFailed on error or status >= 400."""
        self.probe_count += 1
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.head(url, headers=_NO_CACHE_HEADERS)
        except httpx.TimeoutException as e:
            raise ProbeFailed(url, "timeout") from e
        except httpx.HTTPError as e:
            raise ProbeFailed(url, str(e) or type(e).__name__) from e

        if response.status_code >= 400:
            raise ProbeFailed(url, f"HTTP {response.status_code}")
        return response.status_code

    async def is_reachable(self, url: str) -> bool:
        try:
            status = await self.check(url)
        except ProbeFailed as e:
            logger.debug(str(e))
            return False
        logger.debug(f"Probe of {url} ok (HTTP {status})")
        return True
