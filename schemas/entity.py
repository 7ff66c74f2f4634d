"""Driftline — Entity Schemas.

Versioned, content-hashed application data subject to two-way sync.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic_core import to_jsonable_python

DataT = TypeVar("DataT")


class EntitySyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


class ResolutionStrategy(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"
    MANUAL = "manual"


def compute_content_hash(data: Any) -> str:
    """SHA-256 over the canonical JSON form of ``data`` (sorted keys, compact)."""
    canonical = json.dumps(
        to_jsonable_python(data),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ConflictInfo(BaseModel):
    """Remote state captured when a conflict was detected."""

    remote_version: int
    remote_hash: str
    remote_data: Any = None
    detected_at: datetime


class Entity(BaseModel, Generic[DataT]):
    """A versioned piece of application data keyed by (type, id)."""

    model_config = ConfigDict(validate_assignment=True)

    type: str = Field(..., min_length=1, max_length=100)
    id: str = Field(..., min_length=1, max_length=200)
    data: DataT
    last_modified: datetime
    version: int = Field(default=1, ge=1)
    sync_status: EntitySyncStatus = EntitySyncStatus.PENDING
    content_hash: str = ""
    conflict: Optional[ConflictInfo] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.id)

    def hash_matches(self) -> bool:
        return self.content_hash == compute_content_hash(self.data)


class RemoteSyncResult(BaseModel):
    """What a remote sync handler reports back.

    ``remote`` is set when the remote side holds a different version; the
    store then compares hashes and marks a conflict if the data differs.
    """

    accepted: bool = False
    remote: Optional[Entity] = None
