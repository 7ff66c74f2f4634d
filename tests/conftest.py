"""Driftline — Pytest Configuration & Fixtures.

Every component runs against:
1. An in-memory key-value store (no files touched).
2. A virtual clock and a manual scheduler, so backoff sleeps and periodic
   tickers complete instantly and deterministically.
3. An AsyncClient over ASGITransport for the diagnostics API.

Usage:
    async def test_drain(orchestrator, network):
        network.set_status("online")
        result = await orchestrator.trigger_sync()
        assert result.success
"""

import random

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import (
    EntitySettings,
    NetworkSettings,
    RecoverySettings,
    Settings,
    StorageSettings,
    SyncSettings,
)
from core.events import EventBus
from core.scheduler import ManualScheduler, VirtualClock
from edge.entity_store import EntityStore
from edge.kv_store import MemoryKeyValueStore
from edge.operation_store import OperationStore
from edge.sync_orchestrator import SyncOrchestrator
from services.connectivity_monitor_service import NetworkMonitor
from services.recovery_service import ErrorRecoveryService


# =============================================================================
# Time & Plumbing
# =============================================================================

@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock()


@pytest.fixture
def scheduler(clock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture
def sync_settings() -> SyncSettings:
    """Background syncs on enqueue are off so each test drives passes itself."""
    return SyncSettings(interval_seconds=30, sync_on_enqueue=False, max_queue_size=1000)


@pytest.fixture
def recovery_settings() -> RecoverySettings:
    return RecoverySettings(
        max_retries=3,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        backoff_multiplier=2.0,
        jitter_enabled=False,
        circuit_breaker_threshold=5,
        circuit_breaker_timeout_seconds=60,
        circuit_breaker_success_threshold=3,
    )


@pytest.fixture
def entity_settings() -> EntitySettings:
    return EntitySettings(remote_sync_timeout_seconds=1.0, sync_max_retries=3)


# =============================================================================
# Components
# =============================================================================

@pytest.fixture
def operation_store(kv, clock, events) -> OperationStore:
    return OperationStore(kv, clock=clock, events=events, max_queue_size=1000)


@pytest.fixture
def network(events) -> NetworkMonitor:
    return NetworkMonitor(events, NetworkSettings(), initial_status="online")


@pytest.fixture
def recovery(recovery_settings, clock, events) -> ErrorRecoveryService:
    return ErrorRecoveryService(recovery_settings, clock=clock, events=events, rng=random.Random(7))


@pytest.fixture
def entity_store(kv, events, clock, entity_settings) -> EntityStore:
    return EntityStore(kv, events=events, clock=clock, settings=entity_settings)


@pytest.fixture
def orchestrator(operation_store, network, recovery, events, clock, sync_settings, entity_store) -> SyncOrchestrator:
    return SyncOrchestrator(
        operation_store,
        network,
        recovery,
        events,
        clock=clock,
        settings=sync_settings,
        entities=entity_store,
    )


# =============================================================================
# Context & API
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="development",
        storage=StorageSettings(path=":memory:"),
        sync=SyncSettings(sync_on_enqueue=False),
        recovery=RecoverySettings(jitter_enabled=False),
        network=NetworkSettings(initial_status="online"),
    )


@pytest.fixture
def context(settings, clock, scheduler):
    from dependencies import build_context

    return build_context(settings, kv=MemoryKeyValueStore(), clock=clock, scheduler=scheduler)


@pytest_asyncio.fixture
async def client(context):
    """AsyncClient bound to the diagnostics app; the test owns the lifecycle."""
    from api_server import create_app

    app = create_app(context, manage_lifecycle=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
