"""Error taxonomy for endpoint resolution.

Only ``InvalidAddress``, ``NoKnownEndpoint`` and ``PairingFailed`` are meant to
reach the user. The rest are raised inside I/O helpers and absorbed by their
callers, which fall back to the last known good state.
"""


class BridgeLinkError(Exception):
    """Base class for all Bridge Link errors."""


class InvalidAddress(BridgeLinkError, ValueError):
    """Raised when user-entered or scanned input cannot become a URL."""


class NoKnownEndpoint(BridgeLinkError):
    """Raised when no candidate endpoint is available to select."""


class ProbeFailed(BridgeLinkError):
    """A reachability probe did not get a usable answer."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Probe of {url} failed: {reason}")
        self.url = url
        self.reason = reason


class DiscoveryTimeout(BridgeLinkError):
    """A discovered service did not resolve in time."""


class TunnelFetchUnavailable(BridgeLinkError):
    """The bridge answered but has no tunnel URL to offer right now."""


class PairingFailed(BridgeLinkError):
    """The bridge refused or failed the pairing request."""
