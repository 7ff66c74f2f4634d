"""
Pydantic schemas for Driftline
==============================
Persisted records (operations, entities) and the API-facing views built on them.
"""

from .entity import (
    ConflictInfo,
    Entity,
    EntitySyncStatus,
    RemoteSyncResult,
    ResolutionStrategy,
    compute_content_hash,
)
from .operation import Operation, Priority, QueueStatus, SyncError, SyncResult, SyncStatus
from .recovery import (
    BreakerSnapshot,
    BreakerState,
    FallbackProvider,
    RecoveryContext,
    RecoveryPolicy,
    RecoveryStatus,
)

__all__ = [
    "BreakerSnapshot",
    "BreakerState",
    "ConflictInfo",
    "Entity",
    "EntitySyncStatus",
    "FallbackProvider",
    "Operation",
    "Priority",
    "QueueStatus",
    "RecoveryContext",
    "RecoveryPolicy",
    "RecoveryStatus",
    "RemoteSyncResult",
    "ResolutionStrategy",
    "SyncError",
    "SyncResult",
    "SyncStatus",
    "compute_content_hash",
]
