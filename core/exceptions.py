"""Driftline — Core Exceptions.

Domain-specific exceptions for the queue, the resilience engine and the
entity store. The diagnostics API converts them to JSON responses.

Errors are classified by retriability rather than by source: any exception
with ``retriable = False`` (or whose message reads like an authorization or
bad-request failure, see ``services.recovery_service.is_non_retriable``) is
never retried.

Usage:
    from core.exceptions import StorageError, CircuitOpenError

    try:
        store.set(key, value)
    except sqlite3.Error as exc:
        raise StorageError("set", key, str(exc)) from exc
"""

from __future__ import annotations

from typing import Any


class DriftlineBaseException(Exception):
    """Base exception for all Driftline domain errors."""

    retriable: bool = True

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class StorageError(DriftlineBaseException):
    """Raised when the durable key-value store fails.

    Never retried internally; always propagated to the caller.
    """

    retriable = False

    def __init__(self, action: str, key: str | None, original_error: str):
        self.action = action
        self.key = key
        self.original_error = original_error
        target = f" '{key}'" if key else ""
        super().__init__(
            f"Storage {action}{target} failed: {original_error}",
            {"action": action, "key": key, "error": original_error},
        )


class ResourceNotFound(DriftlineBaseException):
    """Raised when a requested operation or entity does not exist.

    Maps to HTTP 404 Not Found.
    """

    retriable = False

    def __init__(self, resource_type: str, resource_id: Any):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type} with id '{resource_id}' not found"
        super().__init__(message, {"resource_type": resource_type, "resource_id": str(resource_id)})


class ValidationError(DriftlineBaseException):
    """Raised when input validation fails beyond Pydantic's scope.

    Maps to HTTP 422.
    """

    retriable = False

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation error on '{field}': {message}", {"field": field})


class QueueFullError(DriftlineBaseException):
    """Raised when the queue is full and holds no low-priority operation to evict."""

    retriable = False

    def __init__(self, max_queue_size: int):
        self.max_queue_size = max_queue_size
        super().__init__(
            f"Operation queue is full ({max_queue_size} operations)",
            {"max_queue_size": max_queue_size},
        )


class CircuitOpenError(DriftlineBaseException):
    """Raised when a call is rejected because its circuit breaker is open."""

    def __init__(self, operation: str, retry_at: float | None = None):
        self.operation = operation
        self.retry_at = retry_at
        details: dict[str, Any] = {"operation": operation}
        if retry_at is not None:
            details["retry_at"] = retry_at
        super().__init__(f"Circuit breaker is open for {operation}", details)


class NonRetriableError(DriftlineBaseException):
    """Raised by handlers to signal a failure that must not be retried."""

    retriable = False


class OperationRejected(DriftlineBaseException):
    """Raised when a transport handler reports failure without raising."""

    def __init__(self, operation_id: str, kind: str):
        self.operation_id = operation_id
        self.kind = kind
        super().__init__(
            f"Operation '{operation_id}' ({kind}) was rejected by its handler",
            {"operation_id": operation_id, "kind": kind},
        )


class HandlerNotRegistered(DriftlineBaseException):
    """Raised when no transport handler is registered for an operation kind."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"No handler registered for operation kind '{kind}'", {"kind": kind})


class EntitySyncError(DriftlineBaseException):
    """Raised when an entity could not be pushed to the remote side."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Entity {entity_type}/{entity_id} failed to sync",
            {"type": entity_type, "id": entity_id},
        )
