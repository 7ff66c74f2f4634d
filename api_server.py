#!/usr/bin/env python3
"""
Driftline Diagnostics API
Read-mostly HTTP surface over a running SyncContext.

Endpoints:
- /health                          : liveness plus network and queue summary
- /api/sync/status                 : orchestrator status snapshot
- /api/sync/operations             : pending operations (GET) / clear queue (DELETE)
- /api/sync/trigger                : run a sync pass now (POST, ?force=)
- /api/recovery/status             : breaker and fallback diagnostics
- /api/entities/{type}             : entities of one type, newest first
- /api/entities/{type}/{id}        : one entity
- /docs                            : Swagger UI (auto-generated)
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from config import get_settings
from core.exceptions import DriftlineBaseException, ResourceNotFound, ValidationError
from dependencies import SyncContext, build_context, get_context
from logger import configure_logging, get_logger
from schemas.response import APIResponse, ORJSONResponse

logger = get_logger(__name__)


def create_app(context: SyncContext, manage_lifecycle: bool = True) -> FastAPI:
    """Build the diagnostics app around an existing context.

    With ``manage_lifecycle`` the app starts the context's tickers on startup
    and stops them on shutdown; embedders that own the lifecycle pass False.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await context.start()
        yield
        if manage_lifecycle:
            await context.stop()

    app = FastAPI(
        title="Driftline Diagnostics API",
        description="Offline queue, resilience and entity sync diagnostics.",
        version=context.settings.app_version,
        lifespan=lifespan,
        default_response_class=ORJSONResponse,
    )
    app.state.context = context

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================
    @app.exception_handler(ResourceNotFound)
    async def not_found_handler(request: Request, exc: ResourceNotFound):
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content=exc.to_dict())

    @app.exception_handler(DriftlineBaseException)
    async def domain_error_handler(request: Request, exc: DriftlineBaseException):
        error_id = uuid.uuid4().hex
        logger.error(
            "api_domain_error",
            error_id=error_id,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        body = exc.to_dict()
        body["reference_id"] = error_id
        return JSONResponse(status_code=500, content=body)

    # =========================================================================
    # SYSTEM
    # =========================================================================
    @app.get("/health", tags=["System"])
    async def health_check(ctx: SyncContext = Depends(get_context)):
        return {
            "status": "ok",
            "service": ctx.settings.app_name,
            "network": ctx.network.status.value,
            "pending": ctx.orchestrator.get_pending_count(),
        }

    # =========================================================================
    # SYNC
    # =========================================================================
    @app.get("/api/sync/status", tags=["Sync"])
    async def sync_status(ctx: SyncContext = Depends(get_context)):
        return APIResponse.success(ctx.orchestrator.status())

    @app.get("/api/sync/operations", tags=["Sync"])
    async def list_operations(ctx: SyncContext = Depends(get_context)):
        return APIResponse.success(ctx.orchestrator.get_pending_operations())

    @app.post("/api/sync/trigger", tags=["Sync"])
    async def trigger_sync(
        force: bool = Query(False, description="Run even when offline or already syncing"),
        ctx: SyncContext = Depends(get_context),
    ):
        result = await ctx.orchestrator.trigger_sync(force=force)
        return APIResponse.success(result)

    @app.delete("/api/sync/operations", tags=["Sync"])
    async def clear_operations(ctx: SyncContext = Depends(get_context)):
        removed = ctx.orchestrator.clear_all()
        return APIResponse.success({"removed": removed})

    # =========================================================================
    # RECOVERY
    # =========================================================================
    @app.get("/api/recovery/status", tags=["Recovery"])
    async def recovery_status(ctx: SyncContext = Depends(get_context)):
        return APIResponse.success(ctx.recovery.get_recovery_status())

    # =========================================================================
    # ENTITIES
    # =========================================================================
    @app.get("/api/entities/{entity_type}", tags=["Entities"])
    async def list_entities(entity_type: str, ctx: SyncContext = Depends(get_context)):
        return APIResponse.success(ctx.entities.list_by_type(entity_type))

    @app.get("/api/entities/{entity_type}/{entity_id}", tags=["Entities"])
    async def get_entity(entity_type: str, entity_id: str, ctx: SyncContext = Depends(get_context)):
        entity = ctx.entities.get(entity_type, entity_id)
        if entity is None:
            raise ResourceNotFound(entity_type, entity_id)
        return APIResponse.success(entity)

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.environment, settings.log.level, settings.log.format == "json")
    app = create_app(build_context(settings))
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
