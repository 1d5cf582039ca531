from __future__ import annotations

import pytest

from forgemirror.common.metrics import Counter, Gauge, Histogram, LabeledCounter, MetricsRegistry


def test_counter_renders_and_rejects_decrement():
    counter = Counter("jobs_total", "Jobs")
    counter.inc()
    counter.inc(2)
    assert counter.value == 3
    assert "jobs_total 3.0" in counter.render()
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_labeled_counter_renders_each_label():
    counter = LabeledCounter("policy_total", "policy", "Per policy")
    counter.inc("versioned")
    counter.inc("dynamic", 2)
    rendered = counter.render()
    assert counter.value("dynamic") == 2
    assert counter.value("default") == 0
    assert rendered.index('policy="dynamic"') < rendered.index('policy="versioned"')


def test_gauge_uses_supplier_when_given():
    assert "depth 4" in Gauge("depth", supplier=lambda: 4).render()
    gauge = Gauge("pending")
    gauge.set(2.0)
    assert "pending 2.0" in gauge.render()


def test_histogram_buckets_are_cumulative():
    histogram = Histogram("latency", buckets=[0.1, 1.0])
    for value in (0.05, 0.5, 5.0):
        histogram.observe(value)
    rendered = histogram.render()
    assert 'latency_bucket{le="0.1"} 1' in rendered
    assert 'latency_bucket{le="1.0"} 2' in rendered
    assert 'latency_bucket{le="+Inf"} 3' in rendered
    assert "latency_count 3" in rendered


def test_registry_returns_existing_metric_for_duplicate_name():
    registry = MetricsRegistry()
    first = registry.register(Counter("requests_total"))
    second = registry.register(Counter("requests_total"))
    assert first is second
    assert registry.get("requests_total") is first
    assert registry.render().count("# TYPE requests_total counter") == 1
