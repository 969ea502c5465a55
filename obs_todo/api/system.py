from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, StreamingResponse
from fastapi.templating import Jinja2Templates

from obs_todo.api.dependencies import get_app_metrics, get_app_settings, get_store
from obs_todo.config import Settings
from obs_todo.models.schemas import HealthResponse, InfoResponse, StatsResponse
from obs_todo.observability.logging import log_event
from obs_todo.observability.metrics import AppMetrics
from obs_todo.observability.registry import EXPOSITION_CONTENT_TYPE
from obs_todo.services.todo_store import TodoStore

router = APIRouter(tags=["system"])
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))


@router.get("/", response_class=HTMLResponse)
async def index(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    metrics: AppMetrics = Depends(get_app_metrics),
) -> HTMLResponse:
    log_event("info", "page.index")
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "version": settings.app_version,
            "deployment_time": request.app.state.deployment_time.isoformat(),
            "request_count": metrics.requests_started,
        },
    )


@router.get("/api/info", response_model=InfoResponse)
async def info(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    store: TodoStore = Depends(get_store),
    metrics: AppMetrics = Depends(get_app_metrics),
) -> InfoResponse:
    counts = store.counts()
    return InfoResponse(
        version=settings.app_version,
        deployment_time=request.app.state.deployment_time,
        total_todos=counts.total,
        completed_todos=counts.completed,
        total_requests=metrics.requests_started,
    )


@router.get("/api/stats", response_model=StatsResponse)
async def stats(store: TodoStore = Depends(get_store)) -> StatsResponse:
    counts = store.counts()
    today = datetime.now(timezone.utc).date()
    return StatsResponse(
        total=counts.total,
        completed=counts.completed,
        completion_rate=round(counts.completed / counts.total, 4) if counts.total else 0.0,
        by_category=store.active_by_category(),
        by_priority=store.active_by_priority(),
        overdue=store.overdue_count(today),
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    return HealthResponse(
        uptime=round(time.monotonic() - request.app.state.started_monotonic, 3),
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/metrics")
async def metrics_endpoint(metrics: AppMetrics = Depends(get_app_metrics)) -> StreamingResponse:
    return StreamingResponse(metrics.registry.render(), media_type=EXPOSITION_CONTENT_TYPE)
