"""Fetches an access token from a bridge via ``POST /pair``."""

import logging

import httpx

from config import APP_ID, PAIR_PATH, PAIR_TIMEOUT
from errors import PairingFailed

logger = logging.getLogger(__name__)


async def request_token(
    base_url: str,
    timeout: float = PAIR_TIMEOUT,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Pair with the bridge at ``base_url`` and return its opaque token."""
    url = base_url.rstrip("/") + PAIR_PATH
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, json={"client": APP_ID})
    except httpx.HTTPError as e:
        raise PairingFailed(f"Could not reach {url}: {type(e).__name__}") from e

    if response.status_code != 200:
        raise PairingFailed(f"Bridge refused pairing (HTTP {response.status_code})")

    try:
        token = response.json().get("token")
    except (ValueError, AttributeError) as e:
        raise PairingFailed("Pairing response was not JSON") from e

    if not isinstance(token, str) or not token:
        raise PairingFailed("Pairing response had no token")
    logger.info(f"Paired with {base_url}")
    return token
