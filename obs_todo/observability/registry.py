"""Explicitly constructed metric registry backed by prometheus_client.

Each ``MetricRegistry`` owns its own ``CollectorRegistry``, so an app (or a test)
gets an isolated set of series instead of the library's global default registry.
The wrappers take label values as a tuple and raise typed errors on misuse; the
values themselves live in prometheus_client's thread-safe metric children.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Protocol

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter as _PromCounter,
    Gauge as _PromGauge,
    Histogram as _PromHistogram,
    disable_created_metrics,
    generate_latest,
)
from prometheus_client.metrics_core import Metric

# Exposition carries values only; no *_created timestamp series.
disable_created_metrics()

EXPOSITION_CONTENT_TYPE = CONTENT_TYPE_LATEST

DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

LabelValues = Sequence[Any]


class MetricError(Exception):
    """Base class for misuse of the registry or of a metric."""


class DuplicateMetricError(MetricError):
    """A metric name is already registered with a different kind or label set."""


class LabelMismatchError(MetricError):
    """The supplied label values don't line up with the metric's label names."""


class InvalidDeltaError(MetricError):
    """A counter was asked to move backwards."""


class MetricKind(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class HistogramState:
    # (upper bound, cumulative count) pairs, ending with +Inf.
    buckets: tuple[tuple[float, int], ...]
    sum: float
    count: int


class Collector(Protocol):
    def collect(self) -> Iterable[Metric]: ...


class _Metric:
    kind: MetricKind

    def __init__(self, name: str, documentation: str, label_names: Sequence[str], wrapped: Any) -> None:
        self.name = name
        self.documentation = documentation
        self.label_names = tuple(label_names)
        self._wrapped = wrapped

    @property
    def collector(self) -> Any:
        return self._wrapped

    def _values(self, labels: LabelValues) -> tuple[str, ...]:
        # A bare string is a sequence too; never split it into characters.
        if isinstance(labels, (str, bytes)):
            raise LabelMismatchError(f"{self.name}: label values must be a sequence, got {labels!r}")
        values = tuple(str(value) for value in labels)
        if len(values) != len(self.label_names):
            raise LabelMismatchError(
                f"{self.name}: expected {len(self.label_names)} label values {self.label_names}, got {len(values)}"
            )
        return values

    def _child(self, labels: LabelValues) -> Any:
        values = self._values(labels)
        if not self.label_names:
            return self._wrapped
        try:
            return self._wrapped.labels(*values)
        except ValueError as exc:
            raise LabelMismatchError(f"{self.name}: {exc}") from exc

    def _samples(self, labels: LabelValues) -> Iterator[tuple[str, dict[str, str], float]]:
        """Samples of one series, read back without creating it."""

        wanted = dict(zip(self.label_names, self._values(labels)))
        for family in self._wrapped.collect():
            for sample in family.samples:
                series_labels = {k: v for k, v in sample.labels.items() if k != "le"}
                if series_labels == wanted:
                    yield sample.name, sample.labels, sample.value

    def _sample_value(self, sample_name: str, labels: LabelValues) -> float:
        for name, _, value in self._samples(labels):
            if name == sample_name:
                return value
        return 0.0


class Counter(_Metric):
    kind = MetricKind.COUNTER

    def __init__(self, name: str, documentation: str, label_names: Sequence[str]) -> None:
        super().__init__(
            name, documentation, label_names, _PromCounter(name, documentation, label_names, registry=None)
        )
        # prometheus_client always exposes counters with a single _total suffix.
        base = name[: -len("_total")] if name.endswith("_total") else name
        self._sample_name = f"{base}_total"

    def inc(self, labels: LabelValues = (), delta: float = 1.0) -> None:
        if delta < 0 or math.isnan(delta):
            raise InvalidDeltaError(f"{self.name}: counters can only increase, got delta={delta}")
        self._child(labels).inc(delta)

    def value(self, labels: LabelValues = ()) -> float:
        return self._sample_value(self._sample_name, labels)


class Gauge(_Metric):
    kind = MetricKind.GAUGE

    def __init__(self, name: str, documentation: str, label_names: Sequence[str]) -> None:
        super().__init__(name, documentation, label_names, _PromGauge(name, documentation, label_names, registry=None))

    def set(self, labels: LabelValues, value: float) -> None:
        self._child(labels).set(value)

    def inc(self, labels: LabelValues = (), delta: float = 1.0) -> None:
        self._child(labels).inc(delta)

    def dec(self, labels: LabelValues = (), delta: float = 1.0) -> None:
        self._child(labels).dec(delta)

    def value(self, labels: LabelValues = ()) -> float:
        return self._sample_value(self.name, labels)


class Histogram(_Metric):
    kind = MetricKind.HISTOGRAM

    def __init__(
        self,
        name: str,
        documentation: str,
        label_names: Sequence[str],
        buckets: Sequence[float] = DEFAULT_BUCKETS,
    ) -> None:
        self.upper_bounds = _normalize_buckets(buckets)
        super().__init__(
            name,
            documentation,
            label_names,
            _PromHistogram(name, documentation, label_names, registry=None, buckets=self.upper_bounds),
        )

    def observe(self, labels: LabelValues, value: float) -> None:
        self._child(labels).observe(float(value))

    def state(self, labels: LabelValues = ()) -> HistogramState:
        buckets: list[tuple[float, int]] = []
        total = 0.0
        count = 0
        for name, sample_labels, value in self._samples(labels):
            if name == f"{self.name}_bucket":
                buckets.append((float(sample_labels["le"]), int(value)))
            elif name == f"{self.name}_sum":
                total = value
            elif name == f"{self.name}_count":
                count = int(value)
        if not buckets:
            buckets = [(bound, 0) for bound in self.upper_bounds]
        return HistogramState(buckets=tuple(buckets), sum=total, count=count)


def _normalize_buckets(buckets: Sequence[float]) -> tuple[float, ...]:
    bounds = [float(b) for b in buckets]
    if bounds and math.isinf(bounds[-1]):
        bounds = bounds[:-1]
    if not bounds:
        raise ValueError("Histogram needs at least one finite bucket bound")
    if any(later <= earlier for earlier, later in zip(bounds, bounds[1:])):
        raise ValueError(f"Histogram bucket bounds must be strictly increasing: {bounds}")
    return tuple(bounds) + (math.inf,)


def _validate_names(name: str, kind: MetricKind, label_names: Sequence[str]) -> None:
    if not _METRIC_NAME_RE.match(name):
        raise ValueError(f"Invalid metric name: {name!r}")
    if len(set(label_names)) != len(label_names):
        raise ValueError(f"Duplicate label names for {name}: {label_names}")
    for label in label_names:
        if not _LABEL_NAME_RE.match(label) or label.startswith("__"):
            raise ValueError(f"Invalid label name for {name}: {label!r}")
        if kind is MetricKind.HISTOGRAM and label == "le":
            raise ValueError(f"'le' is reserved for histogram buckets ({name})")


class _FamilyView:
    """Lets generate_latest render a single metric family."""

    def __init__(self, family: Metric) -> None:
        self._family = family

    def collect(self) -> Iterator[Metric]:
        yield self._family


class MetricRegistry:
    """Named metrics plus optional custom collectors, rendered on demand."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._metrics: dict[str, _Metric] = {}
        self._registry = CollectorRegistry()

    @property
    def collector_registry(self) -> CollectorRegistry:
        return self._registry

    def register(
        self,
        name: str,
        kind: MetricKind | str,
        label_names: Sequence[str] = (),
        documentation: str = "",
        buckets: Sequence[float] | None = None,
    ) -> _Metric:
        """Create a metric, or return the existing one if it is an exact match.

        Raises DuplicateMetricError when ``name`` is taken by a metric of another
        kind, label set or bucket layout, or clashes with a series the underlying
        collector registry already exposes.
        """

        kind = MetricKind(kind)
        label_names = tuple(label_names)
        _validate_names(name, kind, label_names)

        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if self._same_shape(existing, kind, label_names, buckets):
                    return existing
                raise DuplicateMetricError(
                    f"{name} is already registered as a {existing.kind.value} with labels {existing.label_names}"
                )

            metric: _Metric
            if kind is MetricKind.HISTOGRAM:
                metric = Histogram(name, documentation, label_names, buckets or DEFAULT_BUCKETS)
            elif kind is MetricKind.GAUGE:
                metric = Gauge(name, documentation, label_names)
            else:
                metric = Counter(name, documentation, label_names)

            try:
                self._registry.register(metric.collector)
            except ValueError as exc:
                raise DuplicateMetricError(f"{name}: {exc}") from exc
            self._metrics[name] = metric
            return metric

    @staticmethod
    def _same_shape(
        existing: _Metric,
        kind: MetricKind,
        label_names: tuple[str, ...],
        buckets: Sequence[float] | None,
    ) -> bool:
        if existing.kind is not kind or existing.label_names != label_names:
            return False
        if isinstance(existing, Histogram):
            return existing.upper_bounds == _normalize_buckets(buckets or DEFAULT_BUCKETS)
        return True

    def counter(self, name: str, documentation: str, label_names: Sequence[str] = ()) -> Counter:
        return self.register(name, MetricKind.COUNTER, label_names, documentation)  # type: ignore[return-value]

    def gauge(self, name: str, documentation: str, label_names: Sequence[str] = ()) -> Gauge:
        return self.register(name, MetricKind.GAUGE, label_names, documentation)  # type: ignore[return-value]

    def histogram(
        self,
        name: str,
        documentation: str,
        label_names: Sequence[str] = (),
        buckets: Sequence[float] | None = None,
    ) -> Histogram:
        return self.register(name, MetricKind.HISTOGRAM, label_names, documentation, buckets)  # type: ignore[return-value]

    def get(self, name: str) -> _Metric | None:
        with self._lock:
            return self._metrics.get(name)

    def register_collector(self, collector: Collector) -> None:
        try:
            self._registry.register(collector)
        except ValueError as exc:
            raise DuplicateMetricError(str(exc)) from exc

    def collect(self) -> Iterator[Metric]:
        # Registration order: metrics first as created, then custom collectors.
        return self._registry.collect()

    def render(self) -> Iterator[str]:
        """Yield the exposition text one metric block at a time.

        Every call starts a fresh pass over the current state; nothing is mutated.
        """

        for family in self.collect():
            yield generate_latest(_FamilyView(family)).decode("utf-8")
