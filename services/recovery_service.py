"""Driftline — Error Recovery Service.

Executes a caller-supplied unit of work under a named policy:

    retry                 backoff retries, breaker protected
    circuit_breaker       same as retry; named for callers that only want fast-fail
    fallback              retries, then the fallback chain
    graceful_degradation  retries, then the fallback chain
    manual                a single breaker-protected attempt, errors surface as-is

Backoff delay for attempt n is ``min(base * multiplier**(n-1), cap)`` with
optional +/-10% jitter. Errors that read like authorization or bad-request
failures are never retried.

Usage:
    recovery = ErrorRecoveryService(settings.recovery, clock, events)
    result = await recovery.execute_with_policy(
        lambda: client.submit(tx),
        "transaction-submit",
        RecoveryPolicy.FALLBACK,
    )
"""

from __future__ import annotations

import asyncio
import itertools
import random
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from config import RecoverySettings
from core.events import EventBus
from core.exceptions import CircuitOpenError
from core.scheduler import Clock, Scheduler, SystemClock, Ticker
from logger import get_logger
from schemas.recovery import (
    FallbackProvider,
    HealthRecord,
    RecoveryContext,
    RecoveryPolicy,
    RecoveryStatus,
)
from services.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry

logger = get_logger(__name__)

T = TypeVar("T")

NON_RETRIABLE_MARKERS: tuple[str, ...] = (
    "unauthorized",
    "unauthorised",
    "forbidden",
    "invalid_credentials",
    "malformed_request",
    "malformed_input",
    "bad_request",
)

JITTER_RATIO = 0.1


def is_non_retriable(error: BaseException) -> bool:
    """Classify an error as never-retry by its ``retriable`` flag or its message."""
    if getattr(error, "retriable", True) is False:
        return True
    message = re.sub(r"[\s\-]+", "_", str(error).lower())
    return any(marker in message for marker in NON_RETRIABLE_MARKERS)


class ErrorRecoveryService:
    """Retry-with-backoff, per-key circuit breaking and prioritized fallbacks."""

    def __init__(
        self,
        settings: RecoverySettings | None = None,
        clock: Clock | None = None,
        events: EventBus | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = settings or RecoverySettings()
        self._clock = clock or SystemClock()
        self._events = events
        self._rng = rng or random.Random()
        self._breakers = CircuitBreakerRegistry(
            self._clock,
            failure_threshold=self._config.circuit_breaker_threshold,
            cooldown_seconds=self._config.circuit_breaker_timeout_seconds,
            success_threshold=self._config.circuit_breaker_success_threshold,
            events=events,
        )
        self._providers: dict[str, list[FallbackProvider]] = {}
        self._health: dict[tuple[str, str], HealthRecord] = {}
        self._active: dict[int, RecoveryContext] = {}
        self._ids = itertools.count()
        self._ticker: Optional[Ticker] = None

    @property
    def config(self) -> RecoverySettings:
        return self._config

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_with_policy(
        self,
        unit_of_work: Callable[[], Awaitable[T]],
        operation_key: str,
        policy: RecoveryPolicy | str = RecoveryPolicy.RETRY,
        metadata: dict[str, Any] | None = None,
        max_retries: int | None = None,
    ) -> T:
        """Run ``unit_of_work`` under ``policy`` for ``operation_key``.

        Args:
            unit_of_work: Zero-argument coroutine factory; called once per attempt.
            operation_key: Breaker and fallback key (usually the operation kind).
            policy: Recovery policy.
            metadata: Free-form context passed to fallback providers.
            max_retries: Per-call override of the configured retry count.

        Raises:
            CircuitOpenError: The breaker is open and no fallback handled it.
            Exception: The last error from the unit of work when recovery failed.
        """
        policy = RecoveryPolicy(policy)
        if policy is RecoveryPolicy.MANUAL:
            retries = 0
        else:
            retries = self._config.max_retries if max_retries is None else max_retries

        context = RecoveryContext(
            operation=operation_key,
            policy=policy,
            start_time=self._clock.now(),
            metadata=dict(metadata or {}),
        )
        token = next(self._ids)
        self._active[token] = context

        try:
            result = await self._attempt(unit_of_work, context, retries)
        except Exception as exc:
            logger.error(
                "recovery_failed",
                operation=operation_key,
                policy=policy.value,
                attempts=context.attempt,
                duration_seconds=round(self._clock.now() - context.start_time, 3),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise
        finally:
            self._active.pop(token, None)

        if context.attempt > 1:
            logger.info(
                "recovery_succeeded",
                operation=operation_key,
                policy=policy.value,
                attempts=context.attempt,
            )
        return result

    async def _attempt(
        self,
        unit_of_work: Callable[[], Awaitable[T]],
        context: RecoveryContext,
        max_retries: int,
    ) -> T:
        breaker = self._breakers.get_or_create(context.operation)

        while True:
            context.attempt += 1

            if not breaker.allow_request():
                error = CircuitOpenError(context.operation, breaker.next_attempt_time)
                context.last_error = error
                logger.debug("circuit_breaker_fast_fail", operation=context.operation)
                return await self._fallback_or_raise(error, context)

            try:
                result = await unit_of_work()
            except asyncio.CancelledError:
                breaker.release_probe()
                raise
            except Exception as exc:
                context.last_error = exc
                breaker.record_failure()

                if self._should_retry(exc, context, breaker, max_retries):
                    delay = self.calculate_backoff_delay(context.attempt)
                    logger.warning(
                        "retrying_operation",
                        operation=context.operation,
                        attempt=context.attempt,
                        delay_seconds=round(delay, 3),
                        error=str(exc),
                    )
                    await self._clock.sleep(delay)
                    continue

                return await self._fallback_or_raise(exc, context)

            breaker.record_success()
            return result

    def _should_retry(
        self,
        error: BaseException,
        context: RecoveryContext,
        breaker: CircuitBreaker,
        max_retries: int,
    ) -> bool:
        if context.attempt - 1 >= max_retries:
            return False
        if is_non_retriable(error):
            return False
        if breaker.is_open():
            return False
        elapsed = self._clock.now() - context.start_time
        if elapsed >= self._config.policy_timeout_seconds:
            return False
        return True

    async def _fallback_or_raise(self, error: Exception, context: RecoveryContext) -> Any:
        if context.policy.uses_fallback:
            handled, result = await self._try_fallback(error, context)
            if handled:
                return result
        raise error

    def calculate_backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before the retry that follows ``attempt``."""
        cfg = self._config
        delay = min(cfg.base_delay_seconds * cfg.backoff_multiplier ** (attempt - 1), cfg.max_delay_seconds)
        if cfg.jitter_enabled:
            delay += delay * self._rng.uniform(-JITTER_RATIO, JITTER_RATIO)
        return max(0.0, delay)

    # =========================================================================
    # Fallbacks
    # =========================================================================

    def register_fallback_provider(self, operation_key: str, provider: FallbackProvider) -> None:
        providers = self._providers.setdefault(operation_key, [])
        providers.append(provider)
        providers.sort(key=lambda p: p.priority)
        logger.info(
            "fallback_provider_registered",
            operation=operation_key,
            provider=provider.id,
            priority=provider.priority,
        )

    def unregister_fallback_provider(self, operation_key: str, provider_id: str) -> bool:
        providers = self._providers.get(operation_key, [])
        remaining = [p for p in providers if p.id != provider_id]
        if len(remaining) == len(providers):
            return False
        self._providers[operation_key] = remaining
        self._health.pop((operation_key, provider_id), None)
        return True

    async def _try_fallback(self, error: Exception, context: RecoveryContext) -> tuple[bool, Any]:
        for provider in list(self._providers.get(context.operation, [])):
            try:
                applicable = provider.can_handle(error, context)
            except Exception as exc:
                logger.warning("fallback_predicate_failed", provider=provider.id, error=str(exc))
                continue
            if not applicable:
                continue
            if not await self._is_provider_healthy(context.operation, provider):
                logger.debug("fallback_provider_unhealthy", operation=context.operation, provider=provider.id)
                continue

            logger.info("attempting_fallback", operation=context.operation, provider=provider.id)
            try:
                result = await provider.execute(error, context)
            except Exception as exc:
                logger.warning(
                    "fallback_failed",
                    operation=context.operation,
                    provider=provider.id,
                    error=str(exc),
                )
                continue

            logger.info(
                "fallback_succeeded",
                operation=context.operation,
                provider=provider.id,
                attempt=context.attempt,
            )
            return True, result

        return False, None

    async def _is_provider_healthy(self, operation_key: str, provider: FallbackProvider) -> bool:
        record = self._health.get((operation_key, provider.id))
        stale = record is None or (
            self._clock.now() - record.last_check >= self._config.health_check_interval_seconds
        )
        if stale:
            record = await self._check_provider(operation_key, provider)
        return record.healthy

    async def _check_provider(self, operation_key: str, provider: FallbackProvider) -> HealthRecord:
        if provider.is_healthy is None:
            healthy = True
        else:
            try:
                healthy = bool(await provider.is_healthy())
            except Exception as exc:
                healthy = False
                logger.error("health_check_failed", operation=operation_key, provider=provider.id, error=str(exc))
        record = HealthRecord(healthy=healthy, last_check=self._clock.now())
        self._health[(operation_key, provider.id)] = record
        return record

    async def perform_health_checks(self) -> None:
        """Refresh cached health for every registered provider."""
        for operation_key, providers in list(self._providers.items()):
            for provider in list(providers):
                record = await self._check_provider(operation_key, provider)
                if not record.healthy:
                    logger.warning("fallback_provider_unhealthy", operation=operation_key, provider=provider.id)

    # =========================================================================
    # Lifecycle & diagnostics
    # =========================================================================

    def start(self, scheduler: Scheduler) -> None:
        """Start the background health-check ticker. Idempotent."""
        if self._ticker is not None and not self._ticker.cancelled:
            return
        self._ticker = scheduler.every(
            self._config.health_check_interval_seconds,
            self.perform_health_checks,
            name="fallback-health-checks",
        )
        logger.info("error_recovery_started", interval=self._config.health_check_interval_seconds)

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def get_recovery_status(self) -> RecoveryStatus:
        total = 0
        healthy = 0
        for operation_key, providers in self._providers.items():
            total += len(providers)
            for provider in providers:
                record = self._health.get((operation_key, provider.id))
                if record is not None and record.healthy:
                    healthy += 1
        return RecoveryStatus(
            active_recoveries=len(self._active),
            circuit_breakers=self._breakers.snapshots(),
            healthy_fallbacks=healthy,
            total_fallbacks=total,
        )

    def update_config(self, **overrides: Any) -> RecoverySettings:
        """Replace selected settings; breakers pick up new thresholds immediately."""
        merged = {**self._config.model_dump(), **overrides}
        self._config = RecoverySettings.model_validate(merged)
        self._breakers.configure(
            failure_threshold=self._config.circuit_breaker_threshold,
            cooldown_seconds=self._config.circuit_breaker_timeout_seconds,
            success_threshold=self._config.circuit_breaker_success_threshold,
        )
        logger.info("recovery_config_updated", overrides=overrides)
        return self._config

    def reset(self) -> None:
        """Drop all breakers, providers and cached health."""
        self.stop()
        self._active.clear()
        self._breakers.clear()
        self._providers.clear()
        self._health.clear()
