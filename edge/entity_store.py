"""
Entity version store.
Versioned, content-hashed records that are written locally, pushed to the
remote side through per-type handlers, and reconciled when the remote copy
disagrees. Every local write bumps the version and schedules a sync
operation on the offline queue.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import PydanticSerializationError

from config import EntitySettings
from core.events import EntityConflictDetected, EventBus
from core.exceptions import EntitySyncError, ValidationError
from core.scheduler import Clock, SystemClock
from edge.kv_store import KeyValueStore
from logger import get_logger
from schemas.entity import (
    ConflictInfo,
    Entity,
    EntitySyncStatus,
    RemoteSyncResult,
    ResolutionStrategy,
    compute_content_hash,
)

logger = get_logger(__name__)

ENTITY_PREFIX = "entity:"
ENTITY_SYNC_KIND = "entity-sync:"
ENTITY_DELETE_KIND = "entity-delete:"

SyncHandler = Callable[[Entity], Awaitable[Union[bool, RemoteSyncResult]]]
DeleteHandler = Callable[[str, str], Awaitable[Any]]
EnqueueFn = Callable[..., Awaitable[str]]


def _storage_key(entity_type: str, entity_id: str) -> str:
    if ":" in entity_type:
        raise ValidationError("type", "entity type must not contain ':'")
    return f"{ENTITY_PREFIX}{entity_type}:{entity_id}"


def _as_mapping(data: Any) -> Optional[dict]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    if isinstance(data, Mapping):
        return dict(data)
    return None


class EntityStore:
    """
    Durable table of entities keyed by (type, id) with conflict metadata.
    Reads go through an in-memory cache filled lazily from the key-value store.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        events: EventBus | None = None,
        clock: Clock | None = None,
        settings: EntitySettings | None = None,
    ) -> None:
        self._kv = kv
        self._events = events
        self._clock = clock or SystemClock()
        self._settings = settings or EntitySettings()
        self._cache: dict[tuple[str, str], Entity] = {}
        self._sync_handlers: dict[str, SyncHandler] = {}
        self._delete_handlers: dict[str, DeleteHandler] = {}
        self._enqueue: Optional[EnqueueFn] = None

    def schedule_with(self, enqueue: EnqueueFn) -> None:
        """Route sync scheduling through the orchestrator's enqueue."""
        self._enqueue = enqueue

    def register_remote_handler(
        self,
        entity_type: str,
        sync_handler: SyncHandler,
        delete_handler: DeleteHandler | None = None,
    ) -> None:
        _storage_key(entity_type, "")
        self._sync_handlers[entity_type] = sync_handler
        if delete_handler is not None:
            self._delete_handlers[entity_type] = delete_handler
        logger.info("entity_handler_registered", entity_type=entity_type, deletes=delete_handler is not None)

    # ------------------------------------------------------------------
    # Local writes
    # ------------------------------------------------------------------

    async def put(self, entity_type: str, entity_id: str, data: Any) -> Entity:
        """Store data locally (new version, status pending) and schedule a sync."""
        existing = self.get(entity_type, entity_id)
        entity = Entity(
            type=entity_type,
            id=entity_id,
            data=data,
            last_modified=self._clock.utcnow(),
            version=existing.version + 1 if existing else 1,
            sync_status=EntitySyncStatus.PENDING,
            content_hash=compute_content_hash(data),
        )
        self._save(entity)
        logger.debug("entity_stored", entity_type=entity_type, entity_id=entity_id, version=entity.version)
        await self._schedule_sync(entity, previous=existing)
        return entity.model_copy(deep=True)

    async def delete(self, entity_type: str, entity_id: str) -> bool:
        """Remove locally; schedule a remote delete when the type has a delete handler."""
        existed = self._kv.delete(_storage_key(entity_type, entity_id))
        self._cache.pop((entity_type, entity_id), None)
        if existed and entity_type in self._delete_handlers and self._enqueue is not None:
            await self._enqueue(
                kind=ENTITY_DELETE_KIND + entity_type,
                action="delete",
                payload={"type": entity_type, "id": entity_id},
                max_retries=self._settings.sync_max_retries,
                priority=self._settings.sync_priority,
            )
        logger.debug("entity_deleted", entity_type=entity_type, entity_id=entity_id, existed=existed)
        return existed

    def clear_all(self) -> int:
        removed = self._kv.delete_by_prefix(ENTITY_PREFIX)
        self._cache.clear()
        logger.info("entities_cleared", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, entity_type: str, entity_id: str) -> Optional[Entity]:
        cache_key = (entity_type, entity_id)
        entity = self._cache.get(cache_key)
        if entity is None:
            raw = self._kv.get(_storage_key(entity_type, entity_id))
            if raw is None:
                return None
            entity = Entity.model_validate_json(raw)
            self._cache[cache_key] = entity
        return entity.model_copy(deep=True)

    def list_by_type(self, entity_type: str) -> list[Entity]:
        """All entities of a type, most recently modified first."""
        entities = self._load_prefix(_storage_key(entity_type, ""))
        return sorted(entities, key=lambda e: e.last_modified, reverse=True)

    def list_pending(self) -> list[Entity]:
        """Entities awaiting sync, oldest modification first."""
        entities = [e for e in self._load_prefix(ENTITY_PREFIX) if e.sync_status is EntitySyncStatus.PENDING]
        return sorted(entities, key=lambda e: e.last_modified)

    def list_conflicts(self) -> list[Entity]:
        return [e for e in self._load_prefix(ENTITY_PREFIX) if e.sync_status is EntitySyncStatus.CONFLICT]

    # ------------------------------------------------------------------
    # Remote sync
    # ------------------------------------------------------------------

    async def sync_entity(self, entity: Entity) -> bool:
        """Push one entity through its type handler with a bounded wait.

        Returns True when the remote accepted it (or already holds identical
        data). Timeouts and handler errors return False and leave the status
        untouched; a disagreeing remote copy marks the entity as conflict.
        """
        handler = self._sync_handlers.get(entity.type)
        if handler is None:
            logger.warning("entity_sync_handler_missing", entity_type=entity.type, entity_id=entity.id)
            return False

        try:
            outcome = await self._clock.wait_for(
                handler(entity.model_copy(deep=True)),
                self._settings.remote_sync_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "entity_sync_timeout",
                entity_type=entity.type,
                entity_id=entity.id,
                timeout_seconds=self._settings.remote_sync_timeout_seconds,
            )
            return False
        except Exception as exc:
            logger.warning("entity_sync_failed", entity_type=entity.type, entity_id=entity.id, error=str(exc))
            return False

        result = outcome if isinstance(outcome, RemoteSyncResult) else RemoteSyncResult(accepted=bool(outcome))

        if result.remote is not None:
            remote_hash = compute_content_hash(result.remote.data)
            if remote_hash == entity.content_hash:
                self._mark_synced(entity)
                return True
            self._mark_conflict(entity, result.remote, remote_hash)
            return False

        if result.accepted:
            self._mark_synced(entity)
            return True
        return False

    async def push(self, entity_type: str, entity_id: str) -> None:
        """Execute a scheduled entity sync. Raises EntitySyncError when it should be retried."""
        entity = self.get(entity_type, entity_id)
        if entity is None or entity.sync_status is not EntitySyncStatus.PENDING:
            return
        if await self.sync_entity(entity):
            return
        current = self.get(entity_type, entity_id)
        if current is not None and current.sync_status is EntitySyncStatus.CONFLICT:
            return
        raise EntitySyncError(entity_type, entity_id)

    async def push_delete(self, entity_type: str, entity_id: str) -> None:
        handler = self._delete_handlers.get(entity_type)
        if handler is None:
            return
        result = await self._clock.wait_for(
            handler(entity_type, entity_id),
            self._settings.remote_sync_timeout_seconds,
        )
        if result is False:
            raise EntitySyncError(entity_type, entity_id)

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    async def resolve_conflict(
        self,
        local: Entity,
        remote: Entity,
        strategy: ResolutionStrategy | str,
        data: Any = None,
    ) -> Entity:
        """Produce, persist and re-schedule the resolved entity.

        The version is ``max(local.version, remote.version) + 1`` for every
        strategy, so resolving the same pair twice yields the same version.
        Neither input is modified.
        """
        strategy = ResolutionStrategy(strategy)

        if strategy is ResolutionStrategy.LOCAL:
            resolved_data = copy.deepcopy(local.data)
        elif strategy is ResolutionStrategy.REMOTE:
            resolved_data = copy.deepcopy(remote.data)
        elif strategy is ResolutionStrategy.MERGE:
            local_fields = _as_mapping(local.data)
            remote_fields = _as_mapping(remote.data)
            if local_fields is None or remote_fields is None:
                raise ValidationError("data", "merge resolution requires mapping data on both sides")
            resolved_data = {**copy.deepcopy(local_fields), **copy.deepcopy(remote_fields)}
        else:
            if data is None:
                raise ValidationError("data", "manual resolution requires data")
            resolved_data = data

        resolved = Entity(
            type=local.type,
            id=local.id,
            data=resolved_data,
            last_modified=self._clock.utcnow(),
            version=max(local.version, remote.version) + 1,
            sync_status=EntitySyncStatus.PENDING,
            content_hash=compute_content_hash(resolved_data),
            conflict=None,
        )
        previous = self.get(local.type, local.id)
        self._save(resolved)
        logger.info(
            "conflict_resolved",
            entity_type=local.type,
            entity_id=local.id,
            strategy=strategy.value,
            version=resolved.version,
        )
        await self._schedule_sync(resolved, previous=previous)
        return resolved.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _save(self, entity: Entity) -> None:
        try:
            raw = entity.model_dump_json()
        except PydanticSerializationError as exc:
            raise ValidationError("data", f"not serializable: {exc}") from exc
        self._kv.set(_storage_key(entity.type, entity.id), raw)
        self._cache[entity.key] = entity.model_copy(deep=True)

    def _load_prefix(self, prefix: str) -> list[Entity]:
        entities = []
        for key, raw in self._kv.list_by_prefix(prefix):
            try:
                entity = Entity.model_validate_json(raw)
            except PydanticValidationError as exc:
                logger.error("entity_record_unreadable", key=key, error=str(exc))
                continue
            self._cache[entity.key] = entity
            entities.append(entity.model_copy(deep=True))
        return entities

    def _mark_synced(self, entity: Entity) -> None:
        current = self.get(entity.type, entity.id)
        if current is None or current.version != entity.version:
            logger.debug(
                "entity_changed_during_sync",
                entity_type=entity.type,
                entity_id=entity.id,
                synced_version=entity.version,
            )
            return
        current.sync_status = EntitySyncStatus.SYNCED
        current.conflict = None
        self._save(current)
        logger.debug("entity_synced", entity_type=entity.type, entity_id=entity.id, version=entity.version)

    def _mark_conflict(self, entity: Entity, remote: Entity, remote_hash: str) -> None:
        current = self.get(entity.type, entity.id)
        if current is None:
            return
        current.sync_status = EntitySyncStatus.CONFLICT
        current.conflict = ConflictInfo(
            remote_version=remote.version,
            remote_hash=remote_hash,
            remote_data=remote.data,
            detected_at=self._clock.utcnow(),
        )
        self._save(current)
        logger.warning(
            "entity_conflict_detected",
            entity_type=entity.type,
            entity_id=entity.id,
            local_version=current.version,
            remote_version=remote.version,
        )
        if self._events is not None:
            self._events.publish(
                EntityConflictDetected(
                    entity_type=entity.type,
                    entity_id=entity.id,
                    local_version=current.version,
                    remote_version=remote.version,
                )
            )

    async def _schedule_sync(self, entity: Entity, previous: Optional[Entity]) -> None:
        """Enqueue the sync for a just-saved entity; if that fails, restore ``previous``."""
        if self._enqueue is None:
            return
        try:
            await self._enqueue(
                kind=ENTITY_SYNC_KIND + entity.type,
                action="sync",
                payload={"type": entity.type, "id": entity.id, "version": entity.version},
                max_retries=self._settings.sync_max_retries,
                priority=self._settings.sync_priority,
            )
        except Exception as exc:
            logger.warning(
                "entity_write_rolled_back",
                entity_type=entity.type,
                entity_id=entity.id,
                version=entity.version,
                error=str(exc),
            )
            self._restore(entity.type, entity.id, previous)
            raise

    def _restore(self, entity_type: str, entity_id: str, previous: Optional[Entity]) -> None:
        if previous is None:
            self._kv.delete(_storage_key(entity_type, entity_id))
            self._cache.pop((entity_type, entity_id), None)
        else:
            self._save(previous)
