"""Driftline — Circuit Breakers.

Per-key state machine that fast-fails calls after repeated failures:

    closed --(threshold failures)--> open --(cooldown elapsed)--> half_open
    half_open --(N probe successes)--> closed
    half_open --(any probe failure)--> open

Half-open admits one probe at a time. State is process-wide and keyed by
operation identity. All transitions happen on the event loop thread; a
multi-threaded caller must add per-key locking around ``allow_request`` /
``record_*``.
"""

from __future__ import annotations

from typing import Optional

from core.events import BreakerClosed, BreakerOpened, EventBus
from core.scheduler import Clock
from logger import get_logger
from schemas.recovery import BreakerSnapshot, BreakerState

logger = get_logger(__name__)


class CircuitBreaker:
    """Failure counter and open/half-open/closed state for one operation key."""

    def __init__(
        self,
        name: str,
        clock: Clock,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        success_threshold: int = 3,
        events: EventBus | None = None,
    ) -> None:
        self.name = name
        self._clock = clock
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.success_threshold = success_threshold
        self._events = events

        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = 0.0
        self.next_attempt_time = 0.0
        self._probe_in_flight = False

    def is_open(self) -> bool:
        """True while the breaker would reject a call. Does not change state."""
        if self.state is BreakerState.OPEN:
            return self._clock.now() < self.next_attempt_time
        if self.state is BreakerState.HALF_OPEN:
            return self._probe_in_flight
        return False

    def allow_request(self) -> bool:
        """Decide whether a call may run now, moving open -> half_open when the cooldown is over."""
        if self.state is BreakerState.CLOSED:
            return True

        if self.state is BreakerState.OPEN:
            if self._clock.now() < self.next_attempt_time:
                return False
            self.state = BreakerState.HALF_OPEN
            self.success_count = 0
            logger.info("circuit_breaker_half_open", operation=self.name)

        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        self._probe_in_flight = False
        if self.state is BreakerState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._close()
        elif self.state is BreakerState.CLOSED:
            self.failure_count = 0

    def record_failure(self) -> None:
        self._probe_in_flight = False
        self.failure_count += 1
        self.last_failure_time = self._clock.now()

        if self.state is BreakerState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open()
        elif self.state is BreakerState.HALF_OPEN:
            self._open()

    def release_probe(self) -> None:
        """Forget an admitted probe that neither succeeded nor failed (cancelled call)."""
        self._probe_in_flight = False

    def reset(self) -> None:
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.next_attempt_time = 0.0
        self._probe_in_flight = False

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            operation=self.name,
            state=self.state,
            failures=self.failure_count,
            next_attempt_time=self.next_attempt_time,
        )

    def _open(self) -> None:
        self.state = BreakerState.OPEN
        self.success_count = 0
        self.next_attempt_time = self._clock.now() + self.cooldown_seconds
        logger.warning(
            "circuit_breaker_opened",
            operation=self.name,
            failure_count=self.failure_count,
            cooldown_seconds=self.cooldown_seconds,
        )
        if self._events is not None:
            self._events.publish(
                BreakerOpened(
                    operation=self.name,
                    failure_count=self.failure_count,
                    next_attempt_time=self.next_attempt_time,
                )
            )

    def _close(self) -> None:
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        logger.info("circuit_breaker_closed", operation=self.name)
        if self._events is not None:
            self._events.publish(BreakerClosed(operation=self.name))


class CircuitBreakerRegistry:
    """Creates breakers on first use and keeps them for the life of the process."""

    def __init__(
        self,
        clock: Clock,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        success_threshold: int = 3,
        events: EventBus | None = None,
    ) -> None:
        self._clock = clock
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.success_threshold = success_threshold
        self._events = events
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_or_create(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                self._clock,
                failure_threshold=self.failure_threshold,
                cooldown_seconds=self.cooldown_seconds,
                success_threshold=self.success_threshold,
                events=self._events,
            )
            self._breakers[name] = breaker
        return breaker

    def configure(
        self,
        failure_threshold: int,
        cooldown_seconds: float,
        success_threshold: int,
    ) -> None:
        """Apply new thresholds to future and existing breakers."""
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.success_threshold = success_threshold
        for breaker in self._breakers.values():
            breaker.failure_threshold = failure_threshold
            breaker.cooldown_seconds = cooldown_seconds
            breaker.success_threshold = success_threshold

    def snapshots(self) -> list[BreakerSnapshot]:
        return [b.snapshot() for b in self._breakers.values()]

    def clear(self) -> None:
        self._breakers.clear()
