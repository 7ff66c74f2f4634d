"""Driftline — Operation Schemas.

Pydantic models for queued operations and sync pass results.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

PayloadT = TypeVar("PayloadT")


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK: dict[Priority, int] = {
    Priority.HIGH: 0,
    Priority.MEDIUM: 1,
    Priority.LOW: 2,
}


class SyncStatus(str, Enum):
    """State of the orchestrator as seen by callers."""

    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    COMPLETED = "completed"


class Operation(BaseModel, Generic[PayloadT]):
    """A durable unit of deferred work.

    ``retry_count`` counts retries already granted; an operation is dropped
    when it fails while ``retry_count == max_retries``.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1)
    kind: str = Field(..., min_length=1, max_length=200)
    action: str = Field(default="", max_length=200)
    payload: PayloadT | None = None
    enqueued_at: datetime
    sequence: int = Field(default=0, ge=0)
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    priority: Priority = Priority.MEDIUM
    depends_on: list[str] = Field(default_factory=list)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority.rank, self.sequence)

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


class SyncError(BaseModel):
    operation_id: str
    error: str


class SyncResult(BaseModel):
    """Outcome of one sync pass."""

    success: bool = True
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[SyncError] = Field(default_factory=list)

    def add_error(self, operation_id: str, error: str) -> None:
        self.errors.append(SyncError(operation_id=operation_id, error=error))
        self.success = False

    @classmethod
    def rejected(cls, reason: str) -> "SyncResult":
        """A pass that never ran (contention or offline)."""
        result = cls(success=False)
        result.errors.append(SyncError(operation_id="system", error=reason))
        return result


class QueueStatus(BaseModel):
    """Snapshot used by the diagnostics API."""

    pending: int
    sync_status: SyncStatus
    network_status: str
    is_online: bool
    sync_in_progress: bool
    last_result: SyncResult | None = None
    last_synced_at: datetime | None = None
    extra: dict[str, Any] = Field(default_factory=dict)
