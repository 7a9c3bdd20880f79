"""Periodic reachability checks for a local endpoint, with backoff."""

import asyncio
import logging

from config import HEALTH_BASE_INTERVAL, HEALTH_MAX_INTERVAL, HEALTH_MAX_RECOVERIES
from endpoint.address import is_local_address
from endpoint.models import EndpointState
from endpoint.probe import EndpointProber
from endpoint.selector import EndpointSelector
from network.monitor import NetworkPathMonitor

logger = logging.getLogger(__name__)


class HealthMonitor:
    """
    Re-probes the active endpoint while idle.

    Only local endpoints on the home LAN are checked; a failing tunnel has no
    better local alternative and losing WiFi is reported by the path monitor.
    """

    def __init__(
        self,
        selector: EndpointSelector,
        path_monitor: NetworkPathMonitor,
        prober: EndpointProber,
        base_interval: float = HEALTH_BASE_INTERVAL,
        max_interval: float = HEALTH_MAX_INTERVAL,
        max_recoveries: int = HEALTH_MAX_RECOVERIES,
    ) -> None:
        self._selector = selector
        self._path = path_monitor
        self._prober = prober
        self._base_interval = base_interval
        self._max_interval = max_interval
        self._max_recoveries = max_recoveries
        self._interval = base_interval
        self._failures = 0
        self._on_change: list = []  # callbacks: async def fn(event, data)
        self._timer: asyncio.TimerHandle | None = None
        self._check_task: asyncio.Task | None = None
        self._running = False

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def running(self) -> bool:
        return self._running

    def on_change(self, callback) -> None:
        self._on_change.append(callback)

    def status(self) -> dict:
        return {
            "running": self._running,
            "failures": self._failures,
            "interval": self._interval,
            "recovery_suppressed": self._failures > self._max_recoveries,
        }

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._schedule()
        logger.info("Health monitor started")

    def stop(self) -> None:
        self._running = False
        if self._timer:
            self._timer.cancel()
            self._timer = None
        if self._check_task and not self._check_task.done():
            self._check_task.cancel()
        self._check_task = None
        logger.info("Health monitor stopped")

    def _schedule(self) -> None:
        if not self._running:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._interval, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._check_task = asyncio.ensure_future(self._tick())

    async def _tick(self) -> None:
        try:
            await self.run_check()
        finally:
            self._schedule()

    def should_probe(self) -> bool:
        endpoint = self._selector.endpoint
        return (
            self._path.interface_type.is_lan
            and endpoint.state == EndpointState.ACTIVE
            and bool(endpoint.normalized_url)
            and is_local_address(endpoint.raw_address)
            and self._selector.is_home_network()
        )

    def next_interval(self, failures: int) -> float:
        if failures <= 0:
            return self._base_interval
        return min(self._base_interval * 2 ** (failures - 1), self._max_interval)

    async def run_check(self) -> bool | None:
        """Probe once. Returns None if the endpoint isn't eligible for checks."""
        if not self.should_probe():
            return None

        url = self._selector.endpoint.normalized_url
        healthy = await self._prober.is_reachable(url)
        if healthy:
            if self._failures:
                logger.info(f"Endpoint {url} healthy again after {self._failures} failure(s)")
            self._failures = 0
            self._interval = self._base_interval
        else:
            self._failures += 1
            self._interval = self.next_interval(self._failures)
            logger.warning(
                f"Health check of {url} failed ({self._failures} in a row); "
                f"next check in {self._interval:.0f}s"
            )
            if self._failures <= self._max_recoveries:
                try:
                    await self._selector.recover()
                except Exception as e:
                    logger.error(f"Recovery failed: {e}", exc_info=True)
            else:
                logger.debug("Recovery suppressed after repeated failures")

        await self._emit("health_changed", {"healthy": healthy, **self.status()})
        return healthy

    async def _emit(self, event: str, data: dict) -> None:
        for cb in self._on_change:
            try:
                await cb(event, data)
            except Exception as e:
                logger.error(f"Health change callback error: {e}", exc_info=True)
