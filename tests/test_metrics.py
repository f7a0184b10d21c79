import math

import pytest

from icmrelay.metrics import (
    AppRequestNetworkMetrics,
    Counter,
    Histogram,
    MetricsRegistry,
    exponential_buckets_range,
)


def test_exponential_buckets_range_endpoints_and_length():
    buckets = exponential_buckets_range(100, 10000, 10)
    assert len(buckets) == 10
    assert buckets[0] == pytest.approx(100)
    assert buckets[-1] == pytest.approx(10000)


def test_exponential_buckets_range_constant_ratio():
    buckets = exponential_buckets_range(100, 10000, 10)
    ratios = [upper / lower for lower, upper in zip(buckets, buckets[1:])]
    assert all(r == pytest.approx(ratios[0]) for r in ratios)
    assert all(lower < upper for lower, upper in zip(buckets, buckets[1:]))


def test_exponential_buckets_range_single_bucket():
    assert exponential_buckets_range(5, 50, 1) == [5.0]


@pytest.mark.parametrize("minimum,count", [(100, 0), (0, 10), (-1, 3)])
def test_exponential_buckets_range_rejects_bad_arguments(minimum, count):
    with pytest.raises(ValueError):
        exponential_buckets_range(minimum, 10000, count)


def test_counter_increments():
    counter = Counter("connects")
    counter.inc()
    counter.inc(2.5)
    assert counter.value == pytest.approx(3.5)


def test_counter_cannot_decrease():
    counter = Counter("connects")
    with pytest.raises(ValueError):
        counter.inc(-1)
    assert counter.value == 0


def test_histogram_cumulative_buckets():
    histogram = Histogram("latency", buckets=[1, 10, 100])
    for value in (0.5, 1, 5, 50, 500):
        histogram.observe(value)
    counts = histogram.bucket_counts
    assert counts[1.0] == 2
    assert counts[10.0] == 3
    assert counts[100.0] == 4
    assert counts[math.inf] == 5
    assert histogram.count == 5
    assert histogram.sum == pytest.approx(556.5)


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram("latency", buckets=[10, 1])


def test_app_request_network_metrics_registers_all():
    registry = MetricsRegistry()
    metrics = AppRequestNetworkMetrics(registry)
    assert registry.names == ["connects", "disconnects", "p_chain_api_call_latency_ms"]
    assert registry.get("connects") is metrics.connects
    assert len(metrics.p_chain_api_call_latency_ms.buckets) == 10


def test_app_request_network_metrics_duplicate_registration():
    registry = MetricsRegistry()
    AppRequestNetworkMetrics(registry)
    with pytest.raises(ValueError):
        AppRequestNetworkMetrics(registry)