import math

import pytest
from prometheus_client.core import GaugeMetricFamily

from obs_todo.observability.metrics import AppProcessCollector
from obs_todo.observability.registry import (
    DuplicateMetricError,
    InvalidDeltaError,
    LabelMismatchError,
    MetricKind,
    MetricRegistry,
)


def _render(registry: MetricRegistry) -> str:
    return "".join(registry.render())


def test_counter_accumulates_per_label_tuple() -> None:
    registry = MetricRegistry()
    requests = registry.counter("requests_total", "Requests", ("method", "status"))

    requests.inc(("GET", 200))
    requests.inc(("GET", 200), 2)
    requests.inc(("POST", 201))

    assert requests.value(("GET", "200")) == 3.0
    assert requests.value(("POST", 201)) == 1.0
    assert requests.value(("DELETE", 404)) == 0.0


def test_counter_rejects_negative_delta() -> None:
    registry = MetricRegistry()
    counter = registry.counter("things_total", "Things")

    with pytest.raises(InvalidDeltaError):
        counter.inc((), -1)
    assert counter.value() == 0.0


def test_label_cardinality_must_match() -> None:
    registry = MetricRegistry()
    counter = registry.counter("labelled_total", "Labelled", ("a", "b"))

    with pytest.raises(LabelMismatchError):
        counter.inc(("only-one",))
    with pytest.raises(LabelMismatchError):
        counter.inc(("x", "y", "z"))
    with pytest.raises(LabelMismatchError):
        counter.inc("ab")


def test_register_is_idempotent_for_identical_shape() -> None:
    registry = MetricRegistry()
    first = registry.register("shared_total", MetricKind.COUNTER, ("route",), "Shared")
    second = registry.register("shared_total", "counter", ("route",), "Shared")

    assert first is second


def test_register_conflicting_shape_raises() -> None:
    registry = MetricRegistry()
    registry.counter("clash", "Clash", ("route",))

    with pytest.raises(DuplicateMetricError):
        registry.gauge("clash", "Clash", ("route",))
    with pytest.raises(DuplicateMetricError):
        registry.counter("clash", "Clash", ("method",))


def test_invalid_names_are_rejected() -> None:
    registry = MetricRegistry()

    with pytest.raises(ValueError):
        registry.counter("bad-name", "Bad")
    with pytest.raises(ValueError):
        registry.histogram("latency", "Latency", ("le",))
    with pytest.raises(ValueError):
        registry.histogram("latency", "Latency", buckets=(1, 1, 2))


def test_gauge_set_inc_dec() -> None:
    registry = MetricRegistry()
    gauge = registry.gauge("in_flight", "In flight", ("path",))

    gauge.inc(("/a",))
    gauge.inc(("/a",), 2)
    gauge.dec(("/a",))
    assert gauge.value(("/a",)) == 2.0

    gauge.set(("/a",), -5)
    assert gauge.value(("/a",)) == -5.0


def test_histogram_buckets_are_cumulative() -> None:
    registry = MetricRegistry()
    latency = registry.histogram("latency_seconds", "Latency", ("route",), buckets=(0.1, 0.5, 1.0))

    for value in (0.05, 0.1, 0.3, 0.7, 3.0):
        latency.observe(("/x",), value)

    state = latency.state(("/x",))
    counts = [count for _, count in state.buckets]
    assert counts == [2, 3, 4, 5]
    assert state.buckets[-1][0] == math.inf
    assert state.buckets[-1][1] == state.count == 5
    assert state.sum == pytest.approx(4.15)
    assert all(later >= earlier for earlier, later in zip(counts, counts[1:]))


def test_render_counter_block() -> None:
    registry = MetricRegistry()
    counter = registry.counter("http_requests_total", "Total number of HTTP requests", ("method", "route"))
    counter.inc(("GET", "/health"))

    lines = _render(registry).splitlines()

    assert lines == [
        "# HELP http_requests_total Total number of HTTP requests",
        "# TYPE http_requests_total counter",
        'http_requests_total{method="GET",route="/health"} 1.0',
    ]


def test_render_histogram_block() -> None:
    registry = MetricRegistry()
    histogram = registry.histogram("size_bytes", "Sizes", ("method",), buckets=(100, 1000))
    histogram.observe(("POST",), 250)

    text = _render(registry)

    assert "# TYPE size_bytes histogram" in text
    assert 'size_bytes_bucket{method="POST",le="100.0"} 0.0' in text
    assert 'size_bytes_bucket{method="POST",le="1000.0"} 1.0' in text
    assert 'size_bytes_bucket{method="POST",le="+Inf"} 1.0' in text
    assert 'size_bytes_sum{method="POST"} 250.0' in text
    assert 'size_bytes_count{method="POST"} 1.0' in text


def test_unlabelled_metrics_render_zero_before_first_use() -> None:
    registry = MetricRegistry()
    registry.counter("deleted_total", "Deleted")

    assert "deleted_total 0.0" in _render(registry)


def test_label_values_are_escaped() -> None:
    registry = MetricRegistry()
    counter = registry.counter("paths_total", "Paths", ("path",))
    counter.inc(('/a"b\\c\nd',))

    assert 'paths_total{path="/a\\"b\\\\c\\nd"} 1.0' in _render(registry)




def test_render_is_lazy_restartable_and_deterministic() -> None:
    registry = MetricRegistry()
    counter = registry.counter("zeta_total", "Zeta", ("k",))
    registry.gauge("alpha", "Alpha")
    counter.inc(("b",))
    counter.inc(("a",))

    stream = registry.render()
    assert next(stream).startswith("# HELP zeta_total")

    first = _render(registry)
    second = _render(registry)
    assert first == second
    # Registration order for metrics, first-use order for series within a metric.
    assert first.index('zeta_total{k="b"}') < first.index('zeta_total{k="a"}') < first.index("# HELP alpha")


def test_rendered_counter_values_never_decrease() -> None:
    registry = MetricRegistry()
    counter = registry.counter("ticks_total", "Ticks")
    seen = []
    for delta in (0, 1, 2.5, 0, 4):
        counter.inc((), delta)
        line = next(row for row in _render(registry).splitlines() if row.startswith("ticks_total "))
        seen.append(float(line.split()[-1]))

    assert seen == sorted(seen)


def test_render_has_no_created_series() -> None:
    registry = MetricRegistry()
    registry.counter("events_total", "Events").inc()
    registry.histogram("wait_seconds", "Wait", buckets=(1,)).observe((), 0.5)

    assert "_created" not in _render(registry)


def test_values_live_in_a_private_collector_registry() -> None:
    registry = MetricRegistry()
    other = MetricRegistry()
    counter = registry.counter("jobs_total", "Jobs", ("queue",))
    other.counter("jobs_total", "Jobs", ("queue",))

    counter.inc(("fast",), 3)

    assert registry.collector_registry.get_sample_value("jobs_total", {"queue": "fast"}) == 3.0
    assert other.collector_registry.get_sample_value("jobs_total", {"queue": "fast"}) is None


def test_reading_an_unused_series_does_not_create_it() -> None:
    registry = MetricRegistry()
    counter = registry.counter("lookups_total", "Lookups", ("route",))
    latency = registry.histogram("lookup_seconds", "Lookup latency", ("route",), buckets=(0.1, 1))

    assert counter.value(("/never",)) == 0.0
    state = latency.state(("/never",))
    assert state.count == 0
    assert [count for _, count in state.buckets] == [0, 0, 0]
    assert "/never" not in _render(registry)


def test_custom_collectors_render_after_registered_metrics() -> None:
    class StaticCollector:
        def collect(self):
            family = GaugeMetricFamily("static_info", "Static", labels=["app"])
            family.add_metric(["x"], 1.0)
            yield family

    registry = MetricRegistry()
    registry.counter("first_total", "First")
    registry.register_collector(StaticCollector())

    text = _render(registry)
    assert text.index("first_total") < text.index('static_info{app="x"} 1.0')


def test_process_collector_adds_app_and_version_labels() -> None:
    registry = MetricRegistry()
    registry.register_collector(AppProcessCollector("todo", "1.2.3"))

    samples = [sample for family in registry.collect() for sample in family.samples]

    assert samples
    assert all(sample.labels["app"] == "todo" and sample.labels["version"] == "1.2.3" for sample in samples)
    assert "process_start_time_seconds" in {sample.name for sample in samples}
