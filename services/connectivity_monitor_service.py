"""
Connectivity monitor for the offline queue.
Classifies connectivity signals as ONLINE / DEGRADED / OFFLINE and publishes
NetworkStatusChanged on every transition. Signals come either from the host
(``update``) or from an optional HTTP reachability probe.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Optional

import httpx
from pydantic import BaseModel

from config import NetworkSettings
from core.events import EventBus, NetworkStatusChanged
from core.scheduler import Scheduler, Ticker
from logger import get_logger

logger = get_logger(__name__)

SLOW_EFFECTIVE_TYPES = frozenset({"2g", "slow-2g"})


class NetworkStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"

    @property
    def is_online(self) -> bool:
        return self is not NetworkStatus.OFFLINE


class ConnectivitySnapshot(BaseModel):
    """One reading from a connectivity signal source."""

    is_connected: bool
    is_internet_reachable: Optional[bool] = None
    effective_type: Optional[str] = None
    latency_ms: Optional[float] = None


def classify(snapshot: ConnectivitySnapshot, degraded_latency_ms: float = 2000.0) -> NetworkStatus:
    """Map a snapshot to a status. Unknown reachability counts as reachable."""
    if not snapshot.is_connected:
        return NetworkStatus.OFFLINE
    if snapshot.is_internet_reachable is False:
        return NetworkStatus.OFFLINE
    if snapshot.effective_type and snapshot.effective_type.lower() in SLOW_EFFECTIVE_TYPES:
        return NetworkStatus.DEGRADED
    if snapshot.latency_ms is not None and snapshot.latency_ms > degraded_latency_ms:
        return NetworkStatus.DEGRADED
    return NetworkStatus.ONLINE


class NetworkMonitor:
    """
    Tracks the current network status and publishes transitions.
    Degraded connectivity still counts as online for syncing.
    """

    def __init__(
        self,
        events: EventBus,
        settings: NetworkSettings | None = None,
        initial_status: NetworkStatus | str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._events = events
        self._settings = settings or NetworkSettings()
        self._status = NetworkStatus(initial_status or self._settings.initial_status)
        self._client = client
        self._ticker: Optional[Ticker] = None
        self.last_snapshot: Optional[ConnectivitySnapshot] = None

    @property
    def status(self) -> NetworkStatus:
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status.is_online

    def update(self, snapshot: ConnectivitySnapshot) -> NetworkStatus:
        """Feed a connectivity reading; returns the resulting status."""
        self.last_snapshot = snapshot
        return self.set_status(classify(snapshot, self._settings.degraded_latency_ms))

    def set_status(self, status: NetworkStatus | str) -> NetworkStatus:
        status = NetworkStatus(status)
        previous = self._status
        if status is previous:
            return status
        self._status = status
        logger.info("network_status_changed", previous=previous.value, current=status.value)
        self._events.publish(
            NetworkStatusChanged(
                previous_status=previous.value,
                current_status=status.value,
                is_online=status.is_online,
            )
        )
        return status

    async def probe(self) -> NetworkStatus:
        """GET the configured probe URL and update status from the outcome."""
        url = self._settings.probe_url
        if not url:
            return self._status

        client = self._client or httpx.AsyncClient(timeout=self._settings.probe_timeout_seconds)
        started = time.perf_counter()
        try:
            response = await client.get(url, timeout=self._settings.probe_timeout_seconds)
            latency_ms = (time.perf_counter() - started) * 1000
            snapshot = ConnectivitySnapshot(
                is_connected=True,
                is_internet_reachable=response.status_code < 500,
                latency_ms=latency_ms,
            )
        except httpx.TimeoutException:
            snapshot = ConnectivitySnapshot(is_connected=True, is_internet_reachable=False)
            logger.debug("network_probe_timeout", url=url)
        except httpx.TransportError as exc:
            snapshot = ConnectivitySnapshot(is_connected=False)
            logger.debug("network_probe_failed", url=url, error=str(exc))
        finally:
            if self._client is None:
                await client.aclose()
        return self.update(snapshot)

    def start(self, scheduler: Scheduler) -> None:
        """Start periodic probing when a probe URL is configured. Idempotent."""
        if not self._settings.probe_url:
            return
        if self._ticker is not None and not self._ticker.cancelled:
            return
        self._ticker = scheduler.every(
            self._settings.probe_interval_seconds,
            self._probe_tick,
            name="network-probe",
        )

    async def _probe_tick(self) -> None:
        await self.probe()

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
