"""
Sync orchestrator for the offline queue.
Drains pending operations in priority order when online, running each one
through the resilience engine; at-least-once delivery.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Iterable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from config import SyncSettings
from core.events import (
    EventBus,
    NetworkStatusChanged,
    OperationEnqueued,
    OperationFailed,
    QueueCleared,
    Subscription,
    SyncCompleted,
    SyncStarted,
)
from core.exceptions import (
    HandlerNotRegistered,
    OperationRejected,
    StorageError,
    ValidationError,
)
from core.scheduler import Clock, Scheduler, SystemClock, Ticker
from edge.entity_store import ENTITY_DELETE_KIND, ENTITY_SYNC_KIND, EntityStore
from edge.operation_store import OperationStore
from logger import get_logger
from schemas.operation import Operation, Priority, QueueStatus, SyncResult, SyncStatus
from schemas.recovery import RecoveryPolicy
from services.connectivity_monitor_service import NetworkMonitor, NetworkStatus
from services.recovery_service import ErrorRecoveryService

logger = get_logger(__name__)

OperationHandler = Callable[[Operation], Awaitable[Any]]

SYNC_IN_PROGRESS = "Sync already in progress"
DEVICE_OFFLINE = "Device is offline"


@dataclass
class HandlerRegistration:
    kind: str
    handler: OperationHandler
    policy: RecoveryPolicy = RecoveryPolicy.RETRY
    retries: int = 0
    payload_model: Optional[type[BaseModel]] = None


class SyncOrchestrator:
    """
    Executes queued operations via per-kind handlers when the network is online.
    A periodic ticker and network transitions trigger passes once ``start`` is called.
    """

    def __init__(
        self,
        store: OperationStore,
        network: NetworkMonitor,
        recovery: ErrorRecoveryService,
        events: EventBus,
        clock: Clock | None = None,
        settings: SyncSettings | None = None,
        entities: EntityStore | None = None,
    ) -> None:
        self._store = store
        self._network = network
        self._recovery = recovery
        self._events = events
        self._clock = clock or SystemClock()
        self._settings = settings or SyncSettings()
        self._entities = entities
        self._handlers: dict[str, HandlerRegistration] = {}
        self._active_passes = 0
        self._sync_status = SyncStatus.IDLE
        self._last_result: Optional[SyncResult] = None
        self._last_synced_at = None
        self._ticker: Optional[Ticker] = None
        self._subscription: Optional[Subscription] = None
        self._tasks: set[asyncio.Task] = set()

        if entities is not None:
            entities.schedule_with(self.enqueue)

    @property
    def sync_status(self) -> SyncStatus:
        return self._sync_status

    @property
    def sync_in_progress(self) -> bool:
        return self._active_passes > 0

    # ------------------------------------------------------------------
    # Registration & enqueue
    # ------------------------------------------------------------------

    def register_handler(
        self,
        kind: str,
        handler: OperationHandler,
        policy: RecoveryPolicy | str = RecoveryPolicy.RETRY,
        retries: int = 0,
        payload_model: type[BaseModel] | None = None,
    ) -> None:
        """Register the transport function for an operation kind.

        ``retries`` are in-pass retries handed to the resilience engine; the
        queue's own ``max_retries`` governs retries across passes.
        """
        if retries < 0:
            raise ValidationError("retries", "must be >= 0")
        self._handlers[kind] = HandlerRegistration(
            kind=kind,
            handler=handler,
            policy=RecoveryPolicy(policy),
            retries=retries,
            payload_model=payload_model,
        )
        logger.info("handler_registered", kind=kind, policy=RecoveryPolicy(policy).value, retries=retries)

    async def enqueue(
        self,
        kind: str,
        action: str = "",
        payload: Any = None,
        max_retries: int | None = None,
        priority: Priority | str = Priority.MEDIUM,
        depends_on: Iterable[str] = (),
    ) -> str:
        """Persist an operation and return its id."""
        operation = self._store.enqueue(
            kind,
            action=action,
            payload=payload,
            max_retries=self._settings.default_max_retries if max_retries is None else max_retries,
            priority=priority,
            depends_on=depends_on,
        )
        self._events.publish(
            OperationEnqueued(
                operation_id=operation.id,
                kind=operation.kind,
                action=operation.action,
                priority=operation.priority.value,
            )
        )
        logger.info(
            "operation_enqueued",
            operation_id=operation.id,
            kind=operation.kind,
            priority=operation.priority.value,
            queue_size=self._store.count(),
        )
        if self._settings.sync_on_enqueue and self._network.is_online:
            self._spawn(self.trigger_sync())
        return operation.id

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------

    async def trigger_sync(self, force: bool = False) -> SyncResult:
        """Run one pass over the queue.

        Without ``force`` a pass is refused while another is running or while
        the device is offline; the refusal is reported as a synthetic error.
        """
        if self._active_passes > 0 and not force:
            logger.debug("sync_skipped", reason=SYNC_IN_PROGRESS)
            return SyncResult.rejected(SYNC_IN_PROGRESS)
        if not self._network.is_online and not force:
            logger.debug("sync_skipped", reason=DEVICE_OFFLINE)
            return SyncResult.rejected(DEVICE_OFFLINE)

        self._active_passes += 1
        self._sync_status = SyncStatus.SYNCING
        try:
            result = await self._run_pass()
        except Exception as exc:
            self._sync_status = SyncStatus.ERROR
            logger.error("sync_pass_aborted", error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            self._active_passes -= 1

        self._last_result = result
        self._last_synced_at = self._clock.utcnow()
        self._sync_status = SyncStatus.COMPLETED if result.success else SyncStatus.ERROR
        self._events.publish(SyncCompleted(result=result))
        logger.info(
            "sync_completed",
            processed=result.processed,
            failed=result.failed,
            skipped=result.skipped,
            remaining=self._store.count(),
        )
        return result

    async def _run_pass(self) -> SyncResult:
        operations = self._store.list_pending()
        self._events.publish(SyncStarted(queue_size=len(operations)))
        logger.info("sync_started", queue_size=len(operations), network=self._network.status.value)

        result = SyncResult()
        completed: set[str] = set()

        for snapshot in operations:
            # Removed meanwhile by clear_all or an overlapping forced pass.
            operation = self._store.get(snapshot.id)
            if operation is None:
                continue

            if not self._dependencies_met(operation, completed):
                result.skipped += 1
                logger.debug("operation_deferred", operation_id=operation.id, depends_on=operation.depends_on)
                continue

            try:
                await self._execute(operation)
            except Exception as exc:
                result.failed += 1
                result.add_error(operation.id, str(exc))
                self._handle_failure(operation, exc)
                continue

            self._store.remove(operation.id)
            self._store.mark_completed(operation.id)
            completed.add(operation.id)
            result.processed += 1

        try:
            self._store.purge_completed(older_than_days=self._settings.completed_retention_days)
        except StorageError as exc:
            logger.warning("completed_purge_failed", error=str(exc))
        return result

    def _dependencies_met(self, operation: Operation, completed: set[str]) -> bool:
        return all(dep in completed or self._store.is_completed(dep) for dep in operation.depends_on)

    async def _execute(self, operation: Operation) -> Any:
        registration = self._resolve(operation.kind)

        async def unit_of_work() -> Any:
            return await self._dispatch(operation, registration)

        return await self._recovery.execute_with_policy(
            unit_of_work,
            operation.kind,
            registration.policy,
            metadata={"operation_id": operation.id, "action": operation.action},
            max_retries=registration.retries,
        )

    def _resolve(self, kind: str) -> HandlerRegistration:
        registration = self._handlers.get(kind)
        if registration is not None:
            return registration
        if self._entities is not None:
            if kind.startswith(ENTITY_SYNC_KIND):
                return HandlerRegistration(kind=kind, handler=self._sync_entity)
            if kind.startswith(ENTITY_DELETE_KIND):
                return HandlerRegistration(kind=kind, handler=self._delete_entity)
        raise HandlerNotRegistered(kind)

    async def _dispatch(self, operation: Operation, registration: HandlerRegistration) -> Any:
        if registration.payload_model is not None:
            try:
                payload = registration.payload_model.model_validate(operation.payload)
            except PydanticValidationError as exc:
                raise ValidationError("payload", str(exc)) from exc
            operation = operation.model_copy(update={"payload": payload})

        outcome = await registration.handler(operation)
        if outcome is False:
            raise OperationRejected(operation.id, operation.kind)
        return outcome

    async def _sync_entity(self, operation: Operation) -> None:
        payload = operation.payload or {}
        await self._entities.push(payload["type"], payload["id"])

    async def _delete_entity(self, operation: Operation) -> None:
        payload = operation.payload or {}
        await self._entities.push_delete(payload["type"], payload["id"])

    def _handle_failure(self, operation: Operation, error: Exception) -> None:
        if operation.retries_exhausted:
            self._store.remove(operation.id)
            logger.error(
                "operation_failed_permanently",
                operation_id=operation.id,
                kind=operation.kind,
                retry_count=operation.retry_count,
                error=str(error),
            )
            self._events.publish(
                OperationFailed(
                    operation_id=operation.id,
                    kind=operation.kind,
                    action=operation.action,
                    retry_count=operation.retry_count,
                    error=str(error),
                )
            )
            return

        operation.retry_count += 1
        self._store.update(operation)
        logger.warning(
            "operation_retry_scheduled",
            operation_id=operation.id,
            kind=operation.kind,
            retry_count=operation.retry_count,
            max_retries=operation.max_retries,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Automatic triggers
    # ------------------------------------------------------------------

    def start(self, scheduler: Scheduler) -> None:
        """Start the periodic sync ticker and follow network transitions. Idempotent."""
        if self._ticker is not None and not self._ticker.cancelled:
            return
        self._ticker = scheduler.every(
            self._settings.interval_seconds,
            self._periodic_sync,
            name="sync-orchestrator",
        )
        self._subscription = self._events.subscribe(NetworkStatusChanged, self._on_network_change)
        logger.info("sync_orchestrator_started", interval=self._settings.interval_seconds)

    def stop(self) -> None:
        """Cancel the ticker and the network subscription. A running pass is left to finish."""
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    async def _periodic_sync(self) -> None:
        if self._store.count() and self._network.is_online:
            await self.trigger_sync()

    def _on_network_change(self, event: NetworkStatusChanged) -> None:
        if event.is_online and event.previous_status != NetworkStatus.ONLINE.value:
            logger.info("network_restored_sync", previous=event.previous_status, current=event.current_status)
            self._spawn(self.trigger_sync())

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("sync_not_scheduled", reason="no running event loop")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_sync_failed", error=str(task.exception()))

    async def wait_for_background(self) -> None:
        """Wait for syncs started by enqueue or network transitions."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def get_pending_count(self) -> int:
        return self._store.count()

    def get_pending_operations(self) -> list[Operation]:
        return self._store.list_pending()

    def clear_all(self) -> int:
        removed = self._store.clear()
        self._events.publish(QueueCleared(removed=removed))
        logger.info("queue_cleared", removed=removed)
        return removed

    def status(self) -> QueueStatus:
        return QueueStatus(
            pending=self._store.count(),
            sync_status=self._sync_status,
            network_status=self._network.status.value,
            is_online=self._network.is_online,
            sync_in_progress=self.sync_in_progress,
            last_result=self._last_result,
            last_synced_at=self._last_synced_at,
            extra={"handlers": sorted(self._handlers)},
        )
