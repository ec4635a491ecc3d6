"""
HTTP adapter over the coordinators.
Each entity kind exposes the same state and actions a view would bind to.
"""

import time
import traceback
from contextlib import asynccontextmanager
from typing import Any, Callable, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from crm_core.batch.executor import OperationKind
from crm_core.config import get_settings
from crm_core.coordinator.dashboard import DashboardCoordinator
from crm_core.coordinator.entity import EntityCoordinator
from crm_core.coordinator.hub import CoordinatorHub
from crm_core.errors import CoordinatorDisposedError, QueryDescriptorError
from crm_core.sources.base import EntityKind
from crm_core.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["Coordinators"])


# ===================
# Response Models
# ===================

class EntityStateResponse(BaseModel):
    kind: str
    items: list[dict[str, Any]]
    total_count: int
    is_loading: bool
    is_stale: bool
    last_error: Optional[str] = None
    filters: dict[str, Any]
    sort: Optional[dict[str, str]] = None
    search: Optional[str] = None
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool
    has_active_filters: bool
    selection: list[str]
    pending_ids: list[str] = []
    auto_refresh: bool = False


class DashboardResponse(BaseModel):
    view: Optional[dict[str, Any]] = None
    period: str
    is_loading: bool
    is_stale: bool
    last_error: Optional[str] = None
    auto_refresh: bool
    refresh_interval_seconds: float


class BatchItemError(BaseModel):
    target_id: str
    error_message: str


class BatchResponse(BaseModel):
    success: bool
    total: int
    succeeded: int
    failed: int
    errors: list[BatchItemError]
    state: EntityStateResponse


# ===================
# Request Models
# ===================

class FiltersRequest(BaseModel):
    filters: dict[str, Any] = Field(default_factory=dict, description="Partial filters; null removes a filter")


class SortRequest(BaseModel):
    field: str
    order: Literal["asc", "desc"] = "asc"


class SearchRequest(BaseModel):
    term: Optional[str] = None


class SelectionRequest(BaseModel):
    mode: Literal["replace", "toggle", "clear", "all_visible"] = "replace"
    ids: list[str] = Field(default_factory=list)


class BatchRequest(BaseModel):
    operation_kind: OperationKind
    parameters: Optional[dict[str, Any]] = None
    target_ids: Optional[list[str]] = Field(default=None, description="Defaults to the current selection")


class PeriodRequest(BaseModel):
    period: Literal["today", "week", "month", "quarter", "year"]


class AutoRefreshRequest(BaseModel):
    enabled: bool
    interval_seconds: Optional[float] = Field(default=None, gt=0)


# ===================
# Dependencies
# ===================

def get_hub(request: Request) -> CoordinatorHub:
    return request.app.state.hub


def get_coordinator(kind: str, hub: CoordinatorHub = Depends(get_hub)) -> EntityCoordinator:
    try:
        entity_kind = EntityKind(kind)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown entity kind: {kind}")
    return hub.use_coordinator(entity_kind)


def get_dashboard(hub: CoordinatorHub = Depends(get_hub)) -> DashboardCoordinator:
    return hub.dashboard()


def entity_state(coordinator: EntityCoordinator) -> EntityStateResponse:
    return EntityStateResponse(**coordinator.snapshot().to_dict())


def dashboard_state(dashboard: DashboardCoordinator) -> DashboardResponse:
    return DashboardResponse(**dashboard.snapshot().to_dict())


# ===================
# Dashboard Endpoints
# ===================

@router.get("/dashboard", response_model=DashboardResponse)
async def get_dashboard_state(dashboard: DashboardCoordinator = Depends(get_dashboard)):
    """Current KPI view; recomputed first when stale."""
    await dashboard.ensure_fresh()
    return dashboard_state(dashboard)


@router.post("/dashboard/refresh", response_model=DashboardResponse)
async def refresh_dashboard(dashboard: DashboardCoordinator = Depends(get_dashboard)):
    await dashboard.refresh(force=True)
    return dashboard_state(dashboard)


@router.post("/dashboard/period", response_model=DashboardResponse)
async def set_dashboard_period(payload: PeriodRequest, dashboard: DashboardCoordinator = Depends(get_dashboard)):
    await dashboard.set_time_period(payload.period)
    return dashboard_state(dashboard)


@router.post("/dashboard/auto-refresh", response_model=DashboardResponse)
async def configure_dashboard_refresh(payload: AutoRefreshRequest, dashboard: DashboardCoordinator = Depends(get_dashboard)):
    dashboard.configure_auto_refresh(payload.enabled, payload.interval_seconds)
    return dashboard_state(dashboard)


# ===================
# Entity Endpoints
# ===================

@router.get("/{kind}", response_model=EntityStateResponse)
async def get_entity_state(coordinator: EntityCoordinator = Depends(get_coordinator)):
    """Current page of the entity list; reloaded first when stale."""
    await coordinator.ensure_fresh()
    return entity_state(coordinator)


@router.post("/{kind}/refresh", response_model=EntityStateResponse)
async def refresh_entities(coordinator: EntityCoordinator = Depends(get_coordinator)):
    await coordinator.refresh()
    return entity_state(coordinator)


@router.post("/{kind}/filters", response_model=EntityStateResponse)
async def apply_filters(payload: FiltersRequest, coordinator: EntityCoordinator = Depends(get_coordinator)):
    await coordinator.apply_filters(payload.filters)
    return entity_state(coordinator)


@router.delete("/{kind}/filters", response_model=EntityStateResponse)
async def clear_filters(coordinator: EntityCoordinator = Depends(get_coordinator)):
    await coordinator.clear_filters()
    return entity_state(coordinator)


@router.post("/{kind}/search", response_model=EntityStateResponse)
async def search_entities(payload: SearchRequest, coordinator: EntityCoordinator = Depends(get_coordinator)):
    await coordinator.search(payload.term)
    return entity_state(coordinator)


@router.post("/{kind}/sort", response_model=EntityStateResponse)
async def set_sort(payload: SortRequest, coordinator: EntityCoordinator = Depends(get_coordinator)):
    await coordinator.set_sort(payload.field, payload.order)
    return entity_state(coordinator)


@router.post("/{kind}/page/{page}", response_model=EntityStateResponse)
async def go_to_page(
    page: int,
    page_size: Optional[int] = Query(default=None, ge=1, le=500),
    coordinator: EntityCoordinator = Depends(get_coordinator),
):
    if page_size is not None and page_size != coordinator.page_size:
        await coordinator.set_page_size(page_size)
    await coordinator.go_to_page(page)
    return entity_state(coordinator)


@router.post("/{kind}/selection", response_model=EntityStateResponse)
async def update_selection(payload: SelectionRequest, coordinator: EntityCoordinator = Depends(get_coordinator)):
    if payload.mode == "replace":
        coordinator.select_many(payload.ids)
    elif payload.mode == "toggle":
        for entity_id in payload.ids:
            coordinator.toggle_selection(entity_id)
    elif payload.mode == "clear":
        coordinator.clear_selection()
    else:
        coordinator.select_all_visible()
    return entity_state(coordinator)


@router.post("/{kind}/batch", response_model=BatchResponse)
async def run_batch(payload: BatchRequest, coordinator: EntityCoordinator = Depends(get_coordinator)):
    """Apply one operation to many entities; per-item failures are reported, not raised."""
    result = await coordinator.run_batch(payload.operation_kind, payload.parameters, payload.target_ids)
    return BatchResponse(**result.to_dict(), state=entity_state(coordinator))


@router.get("/{kind}/export")
async def export_selected(
    format: Literal["csv", "json"] = Query(default="csv"),
    coordinator: EntityCoordinator = Depends(get_coordinator),
):
    body = coordinator.export_selected(format)
    media_type = "text/csv" if format == "csv" else "application/json"
    return PlainTextResponse(body, media_type=media_type)


@router.get("/{kind}/{entity_id}")
async def get_entity(entity_id: str, coordinator: EntityCoordinator = Depends(get_coordinator)):
    row = await coordinator.get_by_id(entity_id)
    if row is None:
        raise HTTPException(status_code=404, detail=coordinator.last_error or "Not found")
    return row


@router.patch("/{kind}/{entity_id}")
async def update_entity(entity_id: str, payload: dict[str, Any], coordinator: EntityCoordinator = Depends(get_coordinator)):
    row = await coordinator.mutate_optimistic(entity_id, payload)
    if row is None:
        raise HTTPException(status_code=502, detail=coordinator.last_error or "Update failed")
    return row


# ===================
# App Factory
# ===================

def create_api_app(hub_factory: Optional[Callable[[], CoordinatorHub]] = None) -> FastAPI:
    """Create the FastAPI application; one CoordinatorHub lives for the app's lifetime."""
    _log = get_logger("api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if hub_factory is None:
            settings = get_settings()
            setup_logging(settings.log_level, settings.log_json)
            hub = CoordinatorHub(settings)
        else:
            hub = hub_factory()
        app.state.hub = hub
        _log.info("Coordinator API started", data_source=hub.data_source.value)
        try:
            yield
        finally:
            await hub.close()
            _log.info("Coordinator API stopped")

    app = FastAPI(
        title="CRM Data Coordinator API",
        description="Cached, aggregated CRM entity views",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Timing middleware: logs duration and adds X-Response-Time header
    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        _log.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(elapsed_ms, 1),
        )
        return response

    @app.exception_handler(QueryDescriptorError)
    async def query_error_handler(request: Request, exc: QueryDescriptorError):
        return JSONResponse(
            status_code=422,
            content={"error": exc.code or "invalid_query", "detail": exc.message},
        )

    @app.exception_handler(CoordinatorDisposedError)
    async def disposed_error_handler(request: Request, exc: CoordinatorDisposedError):
        return JSONResponse(
            status_code=503,
            content={"error": exc.code or "disposed", "detail": exc.message},
        )

    # Global exception handler: catches unhandled errors, returns clean JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        _log.error(
            "unhandled_exception",
            path=str(request.url.path),
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "detail": "An unexpected error occurred. Please try again.",
            },
        )

    @app.get("/health")
    async def health(hub: CoordinatorHub = Depends(get_hub)):
        return {"status": "ok", **hub.stats()}

    app.include_router(router)
    return app
