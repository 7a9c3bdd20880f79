"""
Address normalization.

Turns whatever the user typed, scanned or discovery produced into a fully
qualified URL. Pure functions only, no I/O.
"""

import re
from urllib.parse import urlparse

from config import DEFAULT_PORT, LOCAL_SUFFIX
from errors import InvalidAddress

_IPV4_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")
_IPV4_SEARCH_RE = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d{1,3}){3})(?![\d.])")


def normalize(raw: str | None, default_port: int = DEFAULT_PORT) -> str:
    """
    Produce a URL from a raw address string.

    Rules, first match wins:
      1. ``http://`` / ``https://`` prefixed input is used unchanged.
      2. ``<host>.local`` becomes ``http://<host>.local:<port>``.
      3. A dotted quad becomes ``http://<ip>:<port>``.
      4. Anything else is a public host and becomes ``https://<host>``.
    """
    value = (raw or "").strip()
    if not value:
        raise InvalidAddress("Address is empty")

    if value.startswith(("http://", "https://")):
        if not urlparse(value).netloc:
            raise InvalidAddress(f"Address has no host: {value!r}")
        return value

    if any(ch.isspace() for ch in value):
        raise InvalidAddress(f"Invalid address format: {value!r}")

    if value.endswith(LOCAL_SUFFIX):
        return f"http://{value}:{default_port}"

    if _IPV4_RE.match(value):
        return f"http://{value}:{default_port}"

    return f"https://{value}"


def host_of(raw: str | None) -> str:
    """Return the bare host of an address, with or without a scheme."""
    value = (raw or "").strip()
    if not value:
        return ""
    parsed = urlparse(value if "://" in value else f"//{value}")
    return parsed.hostname or ""


def is_ipv4(value: str) -> bool:
    if not _IPV4_RE.match(value or ""):
        return False
    return all(0 <= int(part) <= 255 for part in value.split("."))


def is_local_address(raw: str | None) -> bool:
    """True if the address points at a LAN host (IPv4 or ``.local`` name)."""
    host = host_of(raw)
    if not host:
        return False
    return is_ipv4(host) or host.endswith(LOCAL_SUFFIX)


def extract_ipv4(text: str | None) -> str | None:
    """Find the first IPv4 address embedded in ``text``."""
    match = _IPV4_SEARCH_RE.search(text or "")
    if match and is_ipv4(match.group(1)):
        return match.group(1)
    return None
