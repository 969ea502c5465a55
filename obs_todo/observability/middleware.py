from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from time import perf_counter, process_time
from typing import Any, Callable

import structlog
from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind
from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import JSONResponse

from obs_todo.errors import InternalError
from obs_todo.observability.logging import log_event
from obs_todo.observability.metrics import AppMetrics
from obs_todo.observability.tracing import get_tracer


UNMATCHED_ROUTE = "unmatched"

# Status recorded when the client went away before any response was started.
CLIENT_CLOSED_REQUEST = 499


def _content_length(value: str | None) -> int:
    if not value:
        return 0
    try:
        length = int(value)
    except ValueError:
        return 0
    return max(length, 0)


@dataclass
class RequestObservation:
    method: str
    path: str
    request_number: int
    started: float
    cpu_started: float
    request_bytes: int = 0
    status_code: int = 500
    response_bytes: int = 0
    response_started: bool = False


class RequestInstrumentationMiddleware:
    """Adds request ids, trace spans, access logs and HTTP metrics.

    Every request produces exactly one set of metric updates and one completion
    log line. Completion runs in a ``finally`` block, so it also happens when the
    handler raises or the task is cancelled by a client disconnect, which keeps
    ``http_requests_in_flight`` balanced.
    """

    def __init__(
        self,
        app: Callable[..., Any],
        metrics: AppMetrics,
        collapse_unmatched_routes: bool = False,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.app = app
        self.metrics = metrics
        self.collapse_unmatched_routes = collapse_unmatched_routes
        self.tracer = tracer or get_tracer()

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        method = scope.get("method", "GET")
        path = scope.get("path", "/")
        request_id = headers.get("x-request-id") or str(uuid.uuid4())

        observation = RequestObservation(
            method=method,
            path=path,
            request_number=self.metrics.next_request_number(),
            started=perf_counter(),
            cpu_started=process_time(),
            request_bytes=_content_length(headers.get("content-length")),
        )

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                observation.response_started = True
                observation.status_code = int(message.get("status", 500))
                response_headers = MutableHeaders(scope=message)
                response_headers["X-Request-ID"] = request_id
                observation.response_bytes = _content_length(response_headers.get("content-length"))

            await send(message)

        with self.tracer.start_as_current_span(f"{method} {path}", kind=SpanKind.SERVER) as span:
            # Incremented only once the finally below is guaranteed to run.
            structlog.contextvars.bind_contextvars(request_id=request_id, method=method, path=path)
            self.metrics.http_requests_in_flight.inc((method, path))
            try:
                log_event(
                    "info",
                    "request.received",
                    logger_name="access",
                    request_number=observation.request_number,
                )
                await self.app(scope, receive, send_wrapper)
            except asyncio.CancelledError:
                if not observation.response_started:
                    observation.status_code = CLIENT_CLOSED_REQUEST
                raise
            except Exception:
                log_event(
                    "error",
                    "request.failed",
                    logger_name="access",
                    request_number=observation.request_number,
                    exc_info=True,
                )
                if observation.response_started:
                    raise
                error = InternalError()
                response = JSONResponse(error.to_payload(), status_code=error.status_code)
                await response(scope, receive, send_wrapper)
            finally:
                self._complete(scope, observation, span)
                structlog.contextvars.clear_contextvars()

    def _route_label(self, scope: dict[str, Any], path: str) -> str:
        template = getattr(scope.get("route"), "path", None)
        if template:
            return template
        # Unmatched paths keep their literal value unless told otherwise.
        return UNMATCHED_ROUTE if self.collapse_unmatched_routes else path

    def _complete(self, scope: dict[str, Any], observation: RequestObservation, span: Span) -> None:
        m = self.metrics
        method = observation.method

        # Same key as the increment, before anything else can fail.
        m.http_requests_in_flight.dec((method, observation.path))

        duration = perf_counter() - observation.started
        cpu_seconds = max(process_time() - observation.cpu_started, 0.0)
        route = self._route_label(scope, observation.path)
        status = observation.status_code
        labels = (method, route, status)

        m.http_requests_total.inc(labels)
        m.http_request_duration_seconds.observe(labels, duration)
        m.http_request_cpu_seconds_total.inc(labels, cpu_seconds)
        if status >= 400:
            m.http_errors_total.inc(labels)

        if observation.request_bytes > 0:
            m.http_request_size_bytes.observe((method, route), observation.request_bytes)
        if observation.response_bytes > 0:
            m.http_response_size_bytes.observe(labels, observation.response_bytes)

        span.update_name(f"{method} {route}")
        span.set_attribute("http.request.method", method)
        span.set_attribute("http.route", route)
        span.set_attribute("http.response.status_code", status)

        if status >= 500:
            level = "error"
        elif status >= 400:
            level = "warn"
        else:
            level = "info"
        log_event(
            level,
            "request.completed",
            logger_name="access",
            request_number=observation.request_number,
            route=route,
            status_code=status,
            elapsed_ms=round(duration * 1000.0, 2),
            cpu_ms=round(cpu_seconds * 1000.0, 2),
            request_bytes=observation.request_bytes,
            response_bytes=observation.response_bytes,
        )
