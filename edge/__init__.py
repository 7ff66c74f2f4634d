"""Edge persistence layer: key-value store, operation queue, entities and sync."""

from edge.entity_store import EntityStore
from edge.kv_store import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from edge.operation_store import OperationStore
from edge.sync_orchestrator import SyncOrchestrator

__all__ = [
    "EntityStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "OperationStore",
    "SQLiteKeyValueStore",
    "SyncOrchestrator",
]
