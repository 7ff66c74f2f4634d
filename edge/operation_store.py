"""
Operation record store for the offline queue.
Keeps pending operations in priority-then-enqueue order, persisted to the
key-value store on every change so the queue survives restarts.
"""

from __future__ import annotations

import bisect
from datetime import timedelta
from typing import Any, Iterable, Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from core.events import EventBus, OperationEvicted
from core.exceptions import QueueFullError, StorageError, ValidationError
from core.scheduler import Clock, SystemClock
from edge.kv_store import KeyValueStore
from logger import get_logger
from schemas.operation import Operation, Priority

logger = get_logger(__name__)

OPERATION_PREFIX = "operation:"
COMPLETED_PREFIX = "completed:"


class OperationStore:
    """
    Durable, ordered table of pending operations.

    Storage failures surface as StorageError and leave the in-memory queue
    untouched; nothing here retries.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        clock: Clock | None = None,
        events: EventBus | None = None,
        max_queue_size: int = 1000,
    ) -> None:
        self._kv = kv
        self._clock = clock or SystemClock()
        self._events = events
        self._max_queue_size = max_queue_size
        self._queue: list[Operation] = []
        self._keys: list[tuple[int, int]] = []
        self._next_sequence = 0
        self.load()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> int:
        """(Re)load the queue from persistence. Returns number of operations loaded."""
        operations: list[Operation] = []
        for key, raw in self._kv.list_by_prefix(OPERATION_PREFIX):
            try:
                operations.append(Operation.model_validate_json(raw))
            except PydanticValidationError as exc:
                logger.error("operation_record_unreadable", key=key, error=str(exc))
        operations.sort(key=lambda op: op.sort_key)
        self._queue = operations
        self._keys = [op.sort_key for op in operations]
        self._next_sequence = max((op.sequence for op in operations), default=-1) + 1
        logger.debug("operation_queue_loaded", count=len(operations))
        return len(operations)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        kind: str,
        action: str = "",
        payload: Any = None,
        max_retries: int = 3,
        priority: Priority | str = Priority.MEDIUM,
        depends_on: Iterable[str] = (),
    ) -> Operation:
        """Create, persist and insert an operation. Returns the stored operation."""
        try:
            operation = Operation(
                id=uuid4().hex,
                kind=kind,
                action=action,
                payload=payload,
                enqueued_at=self._clock.utcnow(),
                sequence=self._next_sequence,
                max_retries=max_retries,
                priority=Priority(priority),
                depends_on=list(depends_on),
            )
        except (PydanticValidationError, ValueError) as exc:
            raise ValidationError("operation", str(exc)) from exc

        victim = self._eviction_victim() if len(self._queue) >= self._max_queue_size else None

        self._persist(operation)
        if victim is not None:
            try:
                self._evict(victim)
            except StorageError:
                self._kv.delete(OPERATION_PREFIX + operation.id)
                raise
        self._next_sequence += 1
        self._insert(operation)
        logger.debug(
            "operation_stored",
            operation_id=operation.id,
            kind=kind,
            priority=operation.priority.value,
            queue_size=len(self._queue),
        )
        return operation.model_copy(deep=True)

    def update(self, operation: Operation) -> None:
        """Persist a changed operation (e.g. bumped retry_count) in place."""
        index = self._index_of(operation.id)
        if index is None:
            logger.warning("operation_update_missing", operation_id=operation.id)
            return
        self._persist(operation)
        self._queue[index] = operation.model_copy(deep=True)

    def remove(self, operation_id: str) -> bool:
        """Delete an operation from persistence and the queue."""
        self._kv.delete(OPERATION_PREFIX + operation_id)
        index = self._index_of(operation_id)
        if index is None:
            return False
        del self._queue[index]
        del self._keys[index]
        return True

    def clear(self) -> int:
        """Remove every pending operation. Returns count removed."""
        self._kv.delete_by_prefix(OPERATION_PREFIX)
        removed = len(self._queue)
        self._queue.clear()
        self._keys.clear()
        return removed

    # ------------------------------------------------------------------
    # Completion markers
    # ------------------------------------------------------------------

    def mark_completed(self, operation_id: str) -> None:
        self._kv.set(COMPLETED_PREFIX + operation_id, self._clock.utcnow().isoformat())

    def is_completed(self, operation_id: str) -> bool:
        return self._kv.get(COMPLETED_PREFIX + operation_id) is not None

    def purge_completed(self, older_than_days: int = 7) -> int:
        """Delete completion markers older than N days. Returns count deleted."""
        cutoff = self._clock.utcnow() - timedelta(days=older_than_days)
        deleted = 0
        for key, completed_at in self._kv.list_by_prefix(COMPLETED_PREFIX):
            if completed_at < cutoff.isoformat():
                self._kv.delete(key)
                deleted += 1
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_pending(self) -> list[Operation]:
        """Return copies of all pending operations in execution order."""
        return [op.model_copy(deep=True) for op in self._queue]

    def get(self, operation_id: str) -> Optional[Operation]:
        index = self._index_of(operation_id)
        if index is None:
            return None
        return self._queue[index].model_copy(deep=True)

    def count(self) -> int:
        return len(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _persist(self, operation: Operation) -> None:
        try:
            raw = operation.model_dump_json()
        except PydanticSerializationError as exc:
            raise ValidationError("payload", f"not serializable: {exc}") from exc
        self._kv.set(OPERATION_PREFIX + operation.id, raw)

    def _insert(self, operation: Operation) -> None:
        index = bisect.bisect_right(self._keys, operation.sort_key)
        self._keys.insert(index, operation.sort_key)
        self._queue.insert(index, operation)

    def _index_of(self, operation_id: str) -> Optional[int]:
        for index, op in enumerate(self._queue):
            if op.id == operation_id:
                return index
        return None

    def _eviction_victim(self) -> Operation:
        low = [op for op in self._queue if op.priority is Priority.LOW]
        if not low:
            raise QueueFullError(self._max_queue_size)
        return min(low, key=lambda op: op.sequence)

    def _evict(self, victim: Operation) -> None:
        self.remove(victim.id)
        logger.warning(
            "operation_evicted",
            operation_id=victim.id,
            kind=victim.kind,
            max_queue_size=self._max_queue_size,
        )
        if self._events is not None:
            self._events.publish(OperationEvicted(operation_id=victim.id, kind=victim.kind))
