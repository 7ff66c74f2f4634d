"""Driftline — Clocks and periodic scheduling.

Every component reads time and sleeps through an injected ``Clock`` and
registers periodic work through an injected ``Scheduler``. Production code
uses ``SystemClock`` + ``AsyncioScheduler``; tests use ``VirtualClock`` +
``ManualScheduler`` and advance time explicitly.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
TickCallback = Callable[[], Awaitable[None]]


# =============================================================================
# Clocks
# =============================================================================

class Clock(ABC):
    """Source of wall-clock time (epoch seconds) and of suspension."""

    @abstractmethod
    def now(self) -> float: ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None: ...

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now(), tz=timezone.utc)

    async def wait_for(self, awaitable: Awaitable[T], timeout: float) -> T:
        """Await with a deadline measured on this clock; raises asyncio.TimeoutError."""
        return await asyncio.wait_for(awaitable, timeout)


class _Deadline:
    def __init__(self, due: float, task: asyncio.Future):
        self.due = due
        self.task = task
        self.expired = False


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class VirtualClock(Clock):
    """Deterministic clock: ``sleep`` advances time instantly and yields once.

    Every requested sleep is recorded in ``sleeps`` so backoff schedules can
    be asserted without waiting. ``wait_for`` deadlines expire only when
    virtual time moves past them.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self.sleeps: list[float] = []
        self._deadlines: list[_Deadline] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds
        self._expire_deadlines()

    async def sleep(self, seconds: float) -> None:
        seconds = max(0.0, seconds)
        self.sleeps.append(seconds)
        self._now += seconds
        self._expire_deadlines()
        await asyncio.sleep(0)

    async def wait_for(self, awaitable: Awaitable[T], timeout: float) -> T:
        task = asyncio.ensure_future(awaitable)
        deadline = _Deadline(self._now + timeout, task)
        self._deadlines.append(deadline)
        try:
            return await task
        except asyncio.CancelledError:
            if deadline.expired:
                raise asyncio.TimeoutError() from None
            raise
        finally:
            self._deadlines.remove(deadline)

    def _expire_deadlines(self) -> None:
        for deadline in self._deadlines:
            if not deadline.expired and deadline.due <= self._now and not deadline.task.done():
                deadline.expired = True
                deadline.task.cancel()


# =============================================================================
# Tickers
# =============================================================================

class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class Ticker:
    """A periodic callback registered with a scheduler."""

    def __init__(self, name: str, interval: float, callback: TickCallback, next_due: float):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.next_due = next_due
        self.token = CancellationToken()
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def cancel(self) -> None:
        self.token.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def fire(self) -> None:
        """Run the callback once; failures are logged, the ticker keeps running."""
        self.runs += 1
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("ticker_callback_failed", ticker=self.name, error=str(exc))


class Scheduler(ABC):
    """Registers periodic callbacks and returns cancellable tickers."""

    def __init__(self, clock: Clock):
        self.clock = clock
        self._tickers: list[Ticker] = []

    @property
    def tickers(self) -> list[Ticker]:
        return [t for t in self._tickers if not t.cancelled]

    @abstractmethod
    def every(self, interval: float, callback: TickCallback, name: str = "ticker") -> Ticker: ...

    def shutdown(self) -> None:
        """Cancel every ticker. In-flight callbacks are not interrupted mid-await
        by the manual scheduler; asyncio-backed tickers are cancelled."""
        for ticker in self._tickers:
            ticker.cancel()
        self._tickers.clear()


class AsyncioScheduler(Scheduler):
    """Runs each ticker as an asyncio task that sleeps ``interval`` between runs.

    Must be used from inside a running event loop.
    """

    def __init__(self, clock: Clock | None = None):
        super().__init__(clock or SystemClock())

    def every(self, interval: float, callback: TickCallback, name: str = "ticker") -> Ticker:
        ticker = Ticker(name, interval, callback, self.clock.now() + interval)
        ticker._task = asyncio.get_running_loop().create_task(self._loop(ticker), name=f"ticker:{name}")
        self._tickers.append(ticker)
        logger.debug("ticker_started", ticker=name, interval=interval)
        return ticker

    async def _loop(self, ticker: Ticker) -> None:
        while not ticker.cancelled:
            await self.clock.sleep(ticker.interval)
            if ticker.cancelled:
                break
            ticker.next_due = self.clock.now() + ticker.interval
            await ticker.fire()


class ManualScheduler(Scheduler):
    """Scheduler driven by ``advance()``; pairs with ``VirtualClock``."""

    def __init__(self, clock: VirtualClock | None = None):
        super().__init__(clock or VirtualClock())

    def every(self, interval: float, callback: TickCallback, name: str = "ticker") -> Ticker:
        ticker = Ticker(name, interval, callback, self.clock.now() + interval)
        self._tickers.append(ticker)
        return ticker

    async def advance(self, seconds: float) -> int:
        """Move virtual time forward, firing due tickers in due order. Returns fire count."""
        target = self.clock.now() + seconds
        fired = 0
        while True:
            due = [t for t in self.tickers if t.next_due <= target]
            if not due:
                break
            ticker = min(due, key=lambda t: t.next_due)
            if ticker.next_due > self.clock.now():
                self.clock.advance(ticker.next_due - self.clock.now())
            ticker.next_due += ticker.interval
            await ticker.fire()
            fired += 1
        if target > self.clock.now():
            self.clock.advance(target - self.clock.now())
        return fired
