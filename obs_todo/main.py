from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from obs_todo.api.system import router as system_router
from obs_todo.api.todos import router as todos_router
from obs_todo.config import Settings, get_settings
from obs_todo.errors import AppError, FieldError, ValidationError
from obs_todo.observability.logging import configure_logging, log_event
from obs_todo.observability.metrics import AppMetrics
from obs_todo.observability.middleware import RequestInstrumentationMiddleware
from obs_todo.observability.tracing import configure_tracing
from obs_todo.security.middleware import (
    BodySizeLimitMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
    default_rate_limit_rules,
)
from obs_todo.services.todo_store import TodoStore


_REQUEST_SECTIONS = {"body", "query", "path", "header", "cookie"}


def _field_from_loc(loc: tuple[object, ...]) -> str:
    for part in loc:
        if isinstance(part, str) and part not in _REQUEST_SECTIONS:
            return part
    return str(loc[0]) if loc else "body"


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    log_event("warn", "request.rejected", status_code=exc.status_code, error=exc.message)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=exc.headers() or None)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors: dict[str, str] = {}
    for err in exc.errors():
        errors.setdefault(_field_from_loc(tuple(err.get("loc", ()))), err.get("msg", "Invalid value"))
    error = ValidationError([FieldError(field=f, message=m) for f, m in errors.items()])
    return await _app_error_handler(request, error)


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        provider = configure_tracing(settings)
        log_event(
            "info",
            "service.started",
            version=settings.app_version,
            tracing=provider is not None,
            otlp_endpoint=settings.otlp_endpoint if provider is not None else None,
        )
        try:
            yield
        finally:
            if provider is not None:
                provider.shutdown()
            log_event("info", "service.stopped")

    app = FastAPI(title="Obs Todo", version=settings.app_version, lifespan=lifespan)

    metrics = AppMetrics(app_name=settings.service_name, version=settings.app_version)
    store = TodoStore()
    metrics.refresh_todo_gauges(store)

    app.state.settings = settings
    app.state.metrics = metrics
    app.state.store = store
    app.state.deployment_time = datetime.now(timezone.utc)
    app.state.started_monotonic = time.monotonic()

    app.include_router(system_router)
    app.include_router(todos_router)

    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)

    # The last middleware added runs first.
    app.add_middleware(
        RateLimitMiddleware,
        rules=default_rate_limit_rules(settings),
        metrics=metrics,
        trust_proxy_headers=settings.trust_proxy_headers,
    )
    app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)
    app.add_middleware(SecurityHeadersMiddleware, extra_origins=settings.csp_origin_list)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset", "Retry-After"],
    )
    app.add_middleware(
        RequestInstrumentationMiddleware,
        metrics=metrics,
        collapse_unmatched_routes=settings.metrics_collapse_unmatched_routes,
    )
    return app


app = create_app()
