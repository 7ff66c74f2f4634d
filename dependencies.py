"""Driftline — Context Wiring & FastAPI Dependencies.

Builds every engine component exactly once and hands the bundle to the
caller. Nothing here is a module-level singleton; the API reads the bundle
from ``app.state``.

Usage:
    context = build_context(get_settings())
    context.orchestrator.register_handler("transaction-submit", submit)
    await context.start()
    ...
    await context.stop()

    @app.get("/api/sync/status")
    async def sync_status(context: SyncContext = Depends(get_context)):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from config import Settings, get_settings
from core.events import EventBus
from core.scheduler import AsyncioScheduler, Clock, Scheduler, SystemClock
from edge.entity_store import EntityStore
from edge.kv_store import KeyValueStore, SQLiteKeyValueStore
from edge.operation_store import OperationStore
from edge.sync_orchestrator import SyncOrchestrator
from logger import get_logger
from services.connectivity_monitor_service import NetworkMonitor
from services.recovery_service import ErrorRecoveryService

logger = get_logger(__name__)


@dataclass
class SyncContext:
    """Everything a host application needs to drive the offline engine."""

    settings: Settings
    clock: Clock
    events: EventBus
    kv: KeyValueStore
    operations: OperationStore
    entities: EntityStore
    network: NetworkMonitor
    recovery: ErrorRecoveryService
    orchestrator: SyncOrchestrator
    scheduler: Optional[Scheduler] = None
    started: bool = False

    async def start(self, scheduler: Scheduler | None = None) -> None:
        """Start background tickers (sync, health checks, probing). Idempotent.

        Must be awaited from inside the running event loop when the default
        asyncio scheduler is used.
        """
        if self.started:
            return
        if scheduler is not None:
            self.scheduler = scheduler
        if self.scheduler is None:
            self.scheduler = AsyncioScheduler(self.clock)
        self.recovery.start(self.scheduler)
        self.network.start(self.scheduler)
        self.orchestrator.start(self.scheduler)
        self.started = True
        logger.info("driftline_started", network=self.network.status.value, pending=self.operations.count())

    async def stop(self) -> None:
        """Cancel tickers, let in-flight background syncs finish, close the store."""
        self.orchestrator.stop()
        self.network.stop()
        self.recovery.stop()
        if self.scheduler is not None:
            self.scheduler.shutdown()
        await self.orchestrator.wait_for_background()
        self.kv.close()
        self.started = False
        logger.info("driftline_stopped")


def build_context(
    settings: Settings | None = None,
    kv: KeyValueStore | None = None,
    clock: Clock | None = None,
    scheduler: Scheduler | None = None,
) -> SyncContext:
    """Construct the store, monitor, resilience engine and orchestrator once.

    Args:
        settings: Application settings; defaults to ``get_settings()``.
        kv: Key-value store; defaults to SQLite at ``settings.storage.path``.
        clock: Time source; defaults to the system clock.
        scheduler: Ticker scheduler used by ``start()``; defaults to asyncio.
    """
    settings = settings or get_settings()
    clock = clock or SystemClock()
    kv = kv if kv is not None else SQLiteKeyValueStore(settings.storage.path)
    events = EventBus()

    operations = OperationStore(
        kv,
        clock=clock,
        events=events,
        max_queue_size=settings.sync.max_queue_size,
    )
    entities = EntityStore(kv, events=events, clock=clock, settings=settings.entity)
    network = NetworkMonitor(events, settings.network)
    recovery = ErrorRecoveryService(settings.recovery, clock=clock, events=events)
    orchestrator = SyncOrchestrator(
        operations,
        network,
        recovery,
        events,
        clock=clock,
        settings=settings.sync,
        entities=entities,
    )

    logger.debug(
        "driftline_context_built",
        environment=settings.environment,
        pending=operations.count(),
    )
    return SyncContext(
        settings=settings,
        clock=clock,
        events=events,
        kv=kv,
        operations=operations,
        entities=entities,
        network=network,
        recovery=recovery,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


async def get_context(request: Request) -> SyncContext:
    """FastAPI dependency returning the context attached by ``create_app``."""
    return request.app.state.context
