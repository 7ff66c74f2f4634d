"""Driftline — Domain Events.

Events are immutable records of something that happened in the queue,
the resilience engine, the network monitor or the entity store. Callers
observe them through an ``EventBus`` created once per process and passed
explicitly to every component.

Usage:
    bus = EventBus()
    sub = bus.subscribe(OperationFailed, lambda e: print(e.operation_id))
    ...
    sub.unsubscribe()
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar
from uuid import uuid4

from logger import get_logger

if TYPE_CHECKING:
    from schemas.operation import SyncResult

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    event_id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__


# =============================================================================
# Queue & Sync
# =============================================================================

@dataclass(frozen=True)
class OperationEnqueued(DomainEvent):
    """An operation was persisted to the queue."""

    operation_id: str = ""
    kind: str = ""
    action: str = ""
    priority: str = "medium"


@dataclass(frozen=True)
class OperationEvicted(DomainEvent):
    """A low-priority operation was dropped to make room in a full queue."""

    operation_id: str = ""
    kind: str = ""


@dataclass(frozen=True)
class OperationFailed(DomainEvent):
    """An operation exhausted its retries and was removed from the queue."""

    operation_id: str = ""
    kind: str = ""
    action: str = ""
    retry_count: int = 0
    error: str = ""


@dataclass(frozen=True)
class QueueCleared(DomainEvent):
    """All pending operations were removed administratively."""

    removed: int = 0


@dataclass(frozen=True)
class SyncStarted(DomainEvent):
    """A sync pass started."""

    queue_size: int = 0


@dataclass(frozen=True)
class SyncCompleted(DomainEvent):
    """A sync pass finished."""

    result: "SyncResult | None" = None


# =============================================================================
# Resilience
# =============================================================================

@dataclass(frozen=True)
class BreakerOpened(DomainEvent):
    """A circuit breaker tripped and will fast-fail until its cooldown elapses."""

    operation: str = ""
    failure_count: int = 0
    next_attempt_time: float = 0.0


@dataclass(frozen=True)
class BreakerClosed(DomainEvent):
    """A half-open circuit breaker collected enough probe successes to close."""

    operation: str = ""


# =============================================================================
# Network & Entities
# =============================================================================

@dataclass(frozen=True)
class NetworkStatusChanged(DomainEvent):
    """Connectivity moved between online, degraded and offline."""

    previous_status: str = "offline"
    current_status: str = "offline"
    is_online: bool = False


@dataclass(frozen=True)
class EntityConflictDetected(DomainEvent):
    """The remote copy of an entity disagreed with the local copy at sync time."""

    entity_type: str = ""
    entity_id: str = ""
    local_version: int = 0
    remote_version: int = 0


# =============================================================================
# Event Bus
# =============================================================================

E = TypeVar("E", bound=DomainEvent)


class Subscription(Generic[E]):
    """Handle returned by ``EventBus.subscribe``; call ``unsubscribe()`` to detach."""

    def __init__(self, bus: "EventBus", event_type: type[E], handler: Callable[[E], Any]):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __call__(self) -> None:
        self.unsubscribe()


class EventBus:
    """Typed publish/subscribe channel.

    Handlers subscribe per event class; subscribing to ``DomainEvent``
    receives everything. A failing handler is logged and skipped so one
    observer can never break the component that published.
    """

    def __init__(self, history_size: int = 500):
        self._handlers: dict[type, list[Subscription]] = {}
        self._history: deque[DomainEvent] = deque(maxlen=history_size)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> Subscription[E]:
        """Subscribe a handler to an event type and return its unsubscribe handle."""
        subscription = Subscription(self, event_type, handler)
        self._handlers.setdefault(event_type, []).append(subscription)
        return subscription

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers of its type, then to catch-all subscribers."""
        self._history.append(event)

        targets = list(self._handlers.get(type(event), []))
        if type(event) is not DomainEvent:
            targets.extend(self._handlers.get(DomainEvent, []))

        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_type=event.event_type,
                    handler=getattr(subscription.handler, "__qualname__", repr(subscription.handler)),
                    error=str(exc),
                )

    def subscriber_count(self, event_type: type[DomainEvent]) -> int:
        return len(self._handlers.get(event_type, []))

    def get_history(self, event_type: type[E] | None = None) -> list[E]:
        """Get recently published events, optionally filtered by type."""
        if event_type is None:
            return list(self._history)
        return [e for e in self._history if isinstance(e, event_type)]

    def clear_history(self) -> None:
        self._history.clear()

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.event_type, [])
        if subscription in handlers:
            handlers.remove(subscription)
