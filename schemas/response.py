"""Driftline — Standardized API Response Schemas.

Provides a consistent response format for the diagnostics endpoints and an
ORJSONResponse class for faster serialization.

Response Format:
    {
        "data": T,              // The actual response payload
        "meta": {...},          // Timing, version and count info
        "error": null | string  // Error message if applicable
    }

Usage:
    from schemas.response import APIResponse, ORJSONResponse

    @app.get("/api/sync/operations", response_class=ORJSONResponse)
    async def list_operations() -> APIResponse[list[Operation]]:
        return APIResponse.success(orchestrator.get_pending_operations())
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Generic, TypeVar

import orjson
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ResponseMeta(BaseModel):
    """Metadata included in every API response.

    Attributes:
        timestamp: ISO 8601 timestamp of response generation.
        version: API version string.
        count: Number of items in data (for collections).
    """

    model_config = ConfigDict(extra="allow")

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Response generation timestamp",
    )
    version: str = Field(default="1.0.0", description="API version")
    count: int | None = Field(None, description="Number of items in response")


class APIResponse(BaseModel, Generic[T]):
    """Standardized API response wrapper.

    Example Success:
        {
            "data": [{"id": "3f2c...", "kind": "transaction-submit"}],
            "meta": {"count": 1, "timestamp": "2024-12-24T20:00:00Z"},
            "error": null
        }
    """

    data: T | None = Field(None, description="Response payload")
    meta: ResponseMeta = Field(default_factory=ResponseMeta, description="Response metadata")
    error: str | None = Field(None, description="Error message if failed")

    @classmethod
    def success(cls, data: T, **extra_meta: Any) -> "APIResponse[T]":
        """Create a successful response; ``count`` is filled in for lists."""
        meta = ResponseMeta(**extra_meta)
        if isinstance(data, list):
            meta.count = len(data)
        return cls(data=data, meta=meta, error=None)

    @classmethod
    def failure(cls, message: str, **extra_meta: Any) -> "APIResponse[None]":
        return cls(data=None, meta=ResponseMeta(**extra_meta), error=message)


def _orjson_serializer(obj: Any) -> bytes:
    return orjson.dumps(
        obj,
        option=(
            orjson.OPT_UTC_Z |                 # Use Z suffix for UTC
            orjson.OPT_NAIVE_UTC |             # Treat naive datetimes as UTC
            orjson.OPT_NON_STR_KEYS            # Allow non-string dict keys
        ),
    )


class ORJSONResponse(JSONResponse):
    """JSON response rendered with orjson.

    Usage:
        app = FastAPI(default_response_class=ORJSONResponse)
    """

    media_type = "application/json"

    def render(self, content: Any) -> bytes:
        if isinstance(content, BaseModel):
            content = content.model_dump(mode="json")
        return _orjson_serializer(content)
