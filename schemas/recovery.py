"""Driftline — Resilience Schemas.

Policies, recovery context, fallback providers and diagnostics snapshots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field


class RecoveryPolicy(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    CIRCUIT_BREAKER = "circuit_breaker"
    GRACEFUL_DEGRADATION = "graceful_degradation"
    MANUAL = "manual"

    @property
    def uses_fallback(self) -> bool:
        return self in (RecoveryPolicy.FALLBACK, RecoveryPolicy.GRACEFUL_DEGRADATION)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RecoveryContext:
    """Mutable state of one execute_with_policy call."""

    operation: str
    policy: RecoveryPolicy
    start_time: float
    attempt: int = 0
    last_error: Optional[BaseException] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FallbackProvider:
    """Alternate execution path for an operation key.

    ``can_handle`` decides applicability for a given error; ``is_healthy`` is
    polled on the health-check interval and its result cached.
    """

    id: str
    execute: Callable[[BaseException, RecoveryContext], Awaitable[Any]]
    priority: int = 100
    can_handle: Callable[[BaseException, RecoveryContext], bool] = lambda error, context: True
    is_healthy: Optional[Callable[[], Awaitable[bool]]] = None


@dataclass
class HealthRecord:
    healthy: bool
    last_check: float


class BreakerSnapshot(BaseModel):
    operation: str
    state: BreakerState
    failures: int
    next_attempt_time: float = 0.0


class RecoveryStatus(BaseModel):
    """Diagnostics view of the resilience engine."""

    active_recoveries: int = 0
    circuit_breakers: list[BreakerSnapshot] = Field(default_factory=list)
    healthy_fallbacks: int = 0
    total_fallbacks: int = 0
