"""HTTP API for the Hippo memory service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg
import structlog
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from hippo import __version__
from hippo.config import HippoConfig
from hippo.models import MemoryTier, MessageEvent
from hippo.observability import configure_logging
from hippo.service import (
    InvalidMemoryError,
    MemoryNotFoundError,
    MemoryOwnershipError,
    MemoryService,
)

logger = structlog.get_logger(__name__)
router = APIRouter(tags=["memory"])


# ==================== SCHEMAS ====================


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class TokenUsage(CamelModel):
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)


class MessageEventRequest(CamelModel):
    user_id: str = Field(min_length=1)
    thread_id: str = Field(min_length=1)
    msg_id: str = Field(min_length=1)
    role: str
    content: str
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    timestamp: int | None = None  # Epoch milliseconds

    def to_event(self) -> MessageEvent:
        return MessageEvent(
            user_id=self.user_id,
            thread_id=self.thread_id,
            msg_id=self.msg_id,
            role=self.role,
            content=self.content,
            input_tokens=self.tokens.input,
            output_tokens=self.tokens.output,
            timestamp=self.timestamp / 1000.0 if self.timestamp is not None else None,
        )


class MemoryOut(CamelModel):
    """A memory as returned to clients. Content stays redacted."""

    id: str
    user_id: str
    thread_id: str
    content: str
    entities: list[str]
    priority: float
    confidence: float
    tier: MemoryTier
    source_thread_id: str | None = None
    repeats: int
    thread_set: list[str]
    last_seen_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None


class RecallResponse(CamelModel):
    memories: list[MemoryOut]
    count: int
    elapsed_ms: float
    timed_out: bool


class MemoryListResponse(CamelModel):
    memories: list[MemoryOut]
    total: int
    limit: int
    offset: int


class SaveMemoryRequest(CamelModel):
    user_id: str = Field(min_length=1)
    thread_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    priority: float | None = Field(default=None, ge=0.0, le=1.0)
    tier: MemoryTier | None = None


class PatchMemoryRequest(CamelModel):
    user_id: str = Field(min_length=1)
    content: str | None = Field(default=None, min_length=1)
    priority: float | None = Field(default=None, ge=0.0, le=1.0)
    tier: MemoryTier | None = None


class AuditRequest(CamelModel):
    user_id: str = Field(min_length=1)
    thread_id: str = Field(min_length=1)


# ==================== DEPENDENCIES ====================


def get_service(request: Request) -> MemoryService:
    """Dependency to get the memory service from app state."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Memory service not initialized",
        )
    return service


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="userId is required")
    return user_id


# ==================== ROUTES ====================


@router.post("/events/message", status_code=status.HTTP_202_ACCEPTED)
async def ingest_message(
    body: MessageEventRequest,
    service: MemoryService = Depends(get_service),
) -> dict[str, bool]:
    """Record a chat message. Returns before any scoring or storage happens."""
    triggered = service.ingest_message(body.to_event())
    return {"received": True, "auditTriggered": triggered}


@router.get("/recall", response_model=RecallResponse)
async def recall(
    user_id: str | None = Query(default=None, alias="userId"),
    thread_id: str | None = Query(default=None, alias="threadId"),
    max_items: int | None = Query(default=None, alias="maxItems"),
    deadline_ms: int | None = Query(default=None, alias="deadlineMs"),
    service: MemoryService = Depends(get_service),
) -> RecallResponse:
    """Ranked memories within a deadline."""
    result = await service.recall(
        _require_user(user_id),
        thread_id=thread_id,
        max_items=max_items,
        deadline_ms=deadline_ms,
    )
    return RecallResponse(
        memories=[MemoryOut.model_validate(m) for m in result.memories],
        count=result.count,
        elapsed_ms=result.elapsed_ms,
        timed_out=result.timed_out,
    )


@router.get("/memories", response_model=MemoryListResponse)
async def list_memories(
    user_id: str | None = Query(default=None, alias="userId"),
    thread_id: str | None = Query(default=None, alias="threadId"),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    min_priority: float | None = Query(default=None, alias="minPriority", ge=0.0, le=1.0),
    include_deleted: bool = Query(default=False, alias="includeDeleted"),
    service: MemoryService = Depends(get_service),
) -> MemoryListResponse:
    """Paginated listing, highest priority first."""
    page = await service.list_memories(
        _require_user(user_id),
        thread_id=thread_id,
        min_priority=min_priority,
        include_deleted=include_deleted,
        limit=limit,
        offset=offset,
    )
    return MemoryListResponse(
        memories=[MemoryOut.model_validate(m) for m in page.memories],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.post("/memories", response_model=MemoryOut, status_code=status.HTTP_201_CREATED)
async def save_memory(
    body: SaveMemoryRequest,
    service: MemoryService = Depends(get_service),
) -> MemoryOut:
    """Explicitly save a memory."""
    result = await service.save_memory(
        body.user_id,
        body.thread_id,
        body.content,
        priority=body.priority,
        tier=body.tier,
    )
    if not result.success or result.memory is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return MemoryOut.model_validate(result.memory)


@router.patch("/memories/{memory_id}", response_model=MemoryOut)
async def patch_memory(
    memory_id: str,
    body: PatchMemoryRequest,
    service: MemoryService = Depends(get_service),
) -> MemoryOut:
    """Update content, priority or tier."""
    memory = await service.patch_memory(
        memory_id,
        body.user_id,
        content=body.content,
        priority=body.priority,
        tier=body.tier,
    )
    return MemoryOut.model_validate(memory)


@router.delete("/memories/{memory_id}")
async def delete_memory(
    memory_id: str,
    user_id: str | None = Query(default=None, alias="userId"),
    service: MemoryService = Depends(get_service),
) -> dict[str, bool]:
    """Soft-delete a memory."""
    deleted = await service.delete_memory(memory_id, _require_user(user_id))
    return {"deleted": deleted}


@router.post("/jobs/audit", status_code=status.HTTP_202_ACCEPTED)
async def trigger_audit(
    body: AuditRequest,
    service: MemoryService = Depends(get_service),
) -> dict[str, bool]:
    """Manually enqueue an audit."""
    return {"enqueued": service.trigger_audit(body.user_id, body.thread_id)}


@router.post("/jobs/retention", status_code=status.HTTP_202_ACCEPTED)
async def trigger_retention(service: MemoryService = Depends(get_service)) -> dict[str, bool]:
    """Enqueue a retention pass."""
    return {"enqueued": service.trigger_retention()}


@router.get("/metrics")
async def metrics(service: MemoryService = Depends(get_service)) -> dict[str, Any]:
    """Queue depth, cadence threads and rejection counters."""
    return service.get_metrics()


@router.get("/metrics/prometheus")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
async def health(service: MemoryService = Depends(get_service)) -> JSONResponse:
    checks = await service.health_check()
    healthy = checks["postgres"]
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ok" if healthy else "degraded", **checks},
    )


# ==================== APPLICATION ====================


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(InvalidMemoryError)
    async def invalid_memory(request: Request, exc: InvalidMemoryError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(MemoryNotFoundError)
    async def not_found(request: Request, exc: MemoryNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "Memory not found"})

    @app.exception_handler(MemoryOwnershipError)
    async def forbidden(request: Request, exc: MemoryOwnershipError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"detail": "Memory belongs to another user"},
        )

    @app.exception_handler(asyncpg.PostgresError)
    async def storage_error(request: Request, exc: asyncpg.PostgresError) -> JSONResponse:
        logger.error("storage_error", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Storage error"},
        )


def create_app(
    service: MemoryService | None = None,
    config: HippoConfig | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    When a service is passed in, the caller owns its lifecycle. Otherwise
    one is created from config and initialized in the app lifespan.
    """
    config = config or (service.config if service else HippoConfig())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "service", None) is None
        if owned:
            configure_logging(config.debug, config.log_level)
            app.state.service = MemoryService(config)
            await app.state.service.initialize()
        logger.info("api_started", version=__version__)
        yield
        if owned:
            await app.state.service.close()
            app.state.service = None
        logger.info("api_stopped")

    app = FastAPI(
        title="Hippo Memory Service",
        description="Background conversational memory: audit, retention and recall",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    app.include_router(router)
    _register_exception_handlers(app)
    return app
