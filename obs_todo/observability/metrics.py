from __future__ import annotations

from collections.abc import Iterator
from threading import Lock
from typing import TYPE_CHECKING

from prometheus_client import ProcessCollector
from prometheus_client.metrics_core import Metric

from obs_todo.observability.registry import MetricRegistry

if TYPE_CHECKING:
    from obs_todo.services.todo_store import TodoStore


HTTP_LABELS = ("method", "route", "status")

DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5)
REQUEST_SIZE_BUCKETS = (100, 500, 1000, 5000, 10000)
RESPONSE_SIZE_BUCKETS = (100, 500, 1000, 5000, 10000, 50000)


class AppProcessCollector:
    """prometheus_client's process metrics, labelled with app/version.

    CPU time, resident memory, start time and file descriptors come straight from
    ``ProcessCollector``; on platforms without /proc it reports nothing.
    """

    def __init__(self, app_name: str, version: str) -> None:
        self._process = ProcessCollector(registry=None)
        self._labels = {"app": app_name, "version": version}

    def collect(self) -> Iterator[Metric]:
        for family in self._process.collect():
            labelled = Metric(family.name, family.documentation, family.type, family.unit)
            for sample in family.samples:
                labelled.add_sample(sample.name, {**sample.labels, **self._labels}, sample.value)
            yield labelled


class AppMetrics:
    """Every series the service exports, bound to one registry."""

    def __init__(
        self,
        registry: MetricRegistry | None = None,
        *,
        app_name: str = "obs-todo-app",
        version: str = "1.0.0",
    ) -> None:
        self.registry = registry or MetricRegistry()
        self._request_lock = Lock()
        self._requests_started = 0

        r = self.registry

        # HTTP metrics (populated by RequestInstrumentationMiddleware)
        self.http_requests_total = r.counter(
            "http_requests_total", "Total number of HTTP requests", HTTP_LABELS
        )
        self.http_request_duration_seconds = r.histogram(
            "http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            HTTP_LABELS,
            buckets=DURATION_BUCKETS,
        )
        self.http_request_cpu_seconds_total = r.counter(
            "http_request_cpu_seconds_total", "CPU time consumed by HTTP requests", HTTP_LABELS
        )
        self.http_errors_total = r.counter(
            "http_errors_total", "Total number of HTTP responses with status >= 400", HTTP_LABELS
        )
        self.http_request_size_bytes = r.histogram(
            "http_request_size_bytes",
            "Size of HTTP request bodies in bytes",
            ("method", "route"),
            buckets=REQUEST_SIZE_BUCKETS,
        )
        self.http_response_size_bytes = r.histogram(
            "http_response_size_bytes",
            "Size of HTTP response bodies in bytes",
            HTTP_LABELS,
            buckets=RESPONSE_SIZE_BUCKETS,
        )
        self.http_requests_in_flight = r.gauge(
            "http_requests_in_flight",
            "Number of HTTP requests currently being processed",
            ("method", "path"),
        )

        # Todo business metrics (populated by the route handlers)
        self.todos_created_total = r.counter(
            "todos_created_total", "Total number of todos created", ("priority",)
        )
        self.todos_completed_total = r.counter(
            "todos_completed_total", "Total number of todos marked completed", ("priority",)
        )
        self.todos_deleted_total = r.counter("todos_deleted_total", "Total number of todos deleted")
        self.todos_active = r.gauge("todos_active", "Current number of incomplete todos")
        self.todos_completed_current = r.gauge("todos_completed_current", "Current number of completed todos")
        self.todos_active_by_category = r.gauge(
            "todos_active_by_category", "Current number of incomplete todos per category", ("category",)
        )

        self.rate_limit_hits_total = r.counter(
            "rate_limit_hits_total", "Requests rejected by rate limiting (429s)", ("limiter",)
        )

        r.register_collector(AppProcessCollector(app_name, version))

    def next_request_number(self) -> int:
        with self._request_lock:
            self._requests_started += 1
            return self._requests_started

    @property
    def requests_started(self) -> int:
        with self._request_lock:
            return self._requests_started

    def refresh_todo_gauges(self, store: TodoStore) -> None:
        """Recompute the derived todo gauges from a full scan of the store."""

        counts = store.counts()
        self.todos_active.set((), counts.active)
        self.todos_completed_current.set((), counts.completed)
        for category, active in store.active_by_category().items():
            self.todos_active_by_category.set((category,), active)
