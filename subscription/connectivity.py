"""
Network connectivity probe

Tri-state connectivity signal (connected / disconnected / unknown) with a
push stream of changes. The resilient subscription service uses it to refuse
platform round-trips while offline and to refresh after reconnection.
"""

import asyncio
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Sequence

import httpx

from subscription.streams import StatusStream
from utils.logger import logger


class ConnectivityStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ConnectivityInfo:
    """Result of a connectivity check"""
    status: ConnectivityStatus
    last_checked: Optional[datetime] = None
    response_time_ms: Optional[int] = None

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectivityStatus.CONNECTED

    @property
    def is_disconnected(self) -> bool:
        return self.status == ConnectivityStatus.DISCONNECTED

    @property
    def is_unknown(self) -> bool:
        return self.status == ConnectivityStatus.UNKNOWN

    def copy_with(self, **changes) -> 'ConnectivityInfo':
        return replace(self, **changes)


class NetworkConnectivityService(ABC):
    """Connectivity probe contract"""

    @abstractmethod
    async def get_connectivity_status(self) -> ConnectivityInfo:
        """Latest known status, re-checking when it is stale"""

    @property
    @abstractmethod
    def connectivity_stream(self) -> StatusStream[ConnectivityInfo]:
        """Stream of status changes"""

    @abstractmethod
    async def can_reach_host(self, host: str, port: int = 443, timeout: Optional[float] = None) -> bool:
        ...

    @abstractmethod
    async def perform_connectivity_test(self) -> ConnectivityInfo:
        """Run a fresh check"""

    @abstractmethod
    def dispose(self) -> None:
        ...


class HttpConnectivityService(NetworkConnectivityService):
    """
    Connectivity probe based on HEAD requests.

    Every check probes all test URLs concurrently with a short timeout. No
    successful probe means disconnected; a majority means connected; a
    minority is reported as connected with a warning (degraded network).
    Changes are pushed to the stream; repeated identical results are not.
    """

    # Cached result age under which get_connectivity_status skips the probe
    FRESHNESS = timedelta(minutes=1)

    def __init__(
        self,
        test_urls: Sequence[str],
        timeout: float = 5.0,
        check_interval: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not test_urls:
            raise ValueError("At least one connectivity test URL is required")
        self.test_urls: List[str] = list(test_urls)
        self.timeout = timeout
        self.check_interval = check_interval
        self._transport = transport
        self._clock = clock or datetime.now

        self._current = ConnectivityInfo(status=ConnectivityStatus.UNKNOWN)
        self._stream: StatusStream[ConnectivityInfo] = StatusStream(name="connectivity stream")
        self._monitoring = False
        self._monitor_task: Optional[asyncio.Task] = None
        self._disposed = False

    def _ensure_not_disposed(self):
        if self._disposed:
            raise RuntimeError("Service has been disposed")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @property
    def current_info(self) -> ConnectivityInfo:
        return self._current

    @property
    def connectivity_stream(self) -> StatusStream[ConnectivityInfo]:
        self._ensure_not_disposed()
        return self._stream

    async def _probe(self, client: httpx.AsyncClient, url: str) -> bool:
        try:
            await client.head(url)
            return True
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity probe to {url} failed: {e}")
            return False

    async def can_reach_host(self, host: str, port: int = 443, timeout: Optional[float] = None) -> bool:
        self._ensure_not_disposed()
        scheme = "https" if port == 443 else "http"
        url = f"{scheme}://{host}" if port in (80, 443) else f"{scheme}://{host}:{port}"
        async with httpx.AsyncClient(timeout=timeout or self.timeout, transport=self._transport) as client:
            return await self._probe(client, url)

    async def perform_connectivity_test(self) -> ConnectivityInfo:
        self._ensure_not_disposed()
        started = time.monotonic()
        async with self._client() as client:
            results = await asyncio.gather(*(self._probe(client, url) for url in self.test_urls))
        elapsed_ms = int((time.monotonic() - started) * 1000)

        successes = sum(1 for ok in results if ok)
        if successes == 0:
            status = ConnectivityStatus.DISCONNECTED
        else:
            status = ConnectivityStatus.CONNECTED
            if successes < math.ceil(len(self.test_urls) / 2):
                logger.warning(
                    f"Partial connectivity: {successes}/{len(self.test_urls)} test hosts reachable"
                )

        return ConnectivityInfo(status=status, last_checked=self._clock(), response_time_ms=elapsed_ms)

    async def get_connectivity_status(self) -> ConnectivityInfo:
        self._ensure_not_disposed()
        checked = self._current.last_checked
        if checked is not None and self._clock() - checked < self.FRESHNESS:
            return self._current
        info = await self.perform_connectivity_test()
        self._update(info)
        return info

    async def check_now(self) -> ConnectivityInfo:
        """Probe and publish the result"""
        try:
            info = await self.perform_connectivity_test()
        except Exception as e:
            logger.warning(f"Connectivity check failed, assuming offline: {e}")
            info = ConnectivityInfo(status=ConnectivityStatus.DISCONNECTED, last_checked=self._clock())
        self._update(info)
        return info

    def _update(self, info: ConnectivityInfo):
        if self._disposed:
            return
        previous = self._current.status
        self._current = info
        if previous != info.status or previous == ConnectivityStatus.UNKNOWN:
            logger.info(f"Connectivity changed: {previous.value} -> {info.status.value}")
            self._stream.emit(info)

    async def start_monitoring(self) -> None:
        """Start periodic connectivity checks"""
        self._ensure_not_disposed()
        if self._monitoring:
            return
        self._monitoring = True
        self._monitor_task = asyncio.create_task(self._monitoring_loop())
        logger.info("Connectivity monitoring started")

    async def stop_monitoring(self) -> None:
        self._monitoring = False
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        logger.info("Connectivity monitoring stopped")

    async def _monitoring_loop(self) -> None:
        while self._monitoring:
            try:
                await self.check_now()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Connectivity monitoring error: {e}")
                await asyncio.sleep(self.check_interval)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._monitoring = False
        if self._monitor_task:
            self._monitor_task.cancel()
            self._monitor_task = None
        self._stream.close()
        self._disposed = True

    @property
    def is_disposed(self) -> bool:
        return self._disposed


class ManualConnectivityService(NetworkConnectivityService):
    """Connectivity state pushed by the host application (and tests)"""

    def __init__(self, initial_status: ConnectivityStatus = ConnectivityStatus.CONNECTED,
                 clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or datetime.now
        self._current = ConnectivityInfo(
            status=initial_status,
            last_checked=self._clock(),
            response_time_ms=0 if initial_status == ConnectivityStatus.CONNECTED else None,
        )
        self._stream: StatusStream[ConnectivityInfo] = StatusStream(self._current, name="connectivity stream")
        self.fail_checks = False
        self._disposed = False

    def _ensure_not_disposed(self):
        if self._disposed:
            raise RuntimeError("Service has been disposed")

    @property
    def current_info(self) -> ConnectivityInfo:
        return self._current

    @property
    def connectivity_stream(self) -> StatusStream[ConnectivityInfo]:
        self._ensure_not_disposed()
        return self._stream

    async def get_connectivity_status(self) -> ConnectivityInfo:
        self._ensure_not_disposed()
        if self.fail_checks:
            raise ConnectionError("connectivity check unavailable")
        return self._current

    async def can_reach_host(self, host: str, port: int = 443, timeout: Optional[float] = None) -> bool:
        self._ensure_not_disposed()
        return self._current.is_connected

    async def perform_connectivity_test(self) -> ConnectivityInfo:
        self._ensure_not_disposed()
        if self.fail_checks:
            raise ConnectionError("connectivity check unavailable")
        self._current = self._current.copy_with(last_checked=self._clock())
        return self._current

    def set_status(self, status: ConnectivityStatus):
        """Publish a new connectivity status"""
        self._ensure_not_disposed()
        self._current = ConnectivityInfo(
            status=status,
            last_checked=self._clock(),
            response_time_ms=0 if status == ConnectivityStatus.CONNECTED else None,
        )
        self._stream.emit(self._current)

    def go_offline(self):
        self.set_status(ConnectivityStatus.DISCONNECTED)

    def go_online(self):
        self.set_status(ConnectivityStatus.CONNECTED)

    def dispose(self) -> None:
        if not self._disposed:
            self._stream.close()
            self._disposed = True

    @property
    def is_disposed(self) -> bool:
        return self._disposed
