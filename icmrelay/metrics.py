"""Counters and histograms describing the app-request network."""

from __future__ import annotations

import bisect
import math
import threading
from typing import Sequence, Union


def exponential_buckets_range(minimum: float, maximum: float, count: int) -> list[float]:
    """Return ``count`` bucket bounds growing by a constant factor from ``minimum`` to ``maximum``."""
    if count < 1:
        raise ValueError("exponential_buckets_range needs a positive count")
    if minimum <= 0:
        raise ValueError("exponential_buckets_range minimum needs to be greater than 0")
    if count == 1:
        return [float(minimum)]
    growth_factor = math.pow(maximum / minimum, 1.0 / (count - 1))
    return [minimum * math.pow(growth_factor, power) for power in range(count)]


class Counter:
    """A value that only ever goes up."""

    def __init__(self, name: str, help: str = "") -> None:
        self.name = name
        self.help = help
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount


class Histogram:
    """Counts observations into buckets with the given upper bounds."""

    def __init__(self, name: str, help: str = "", buckets: Sequence[float] = ()) -> None:
        bounds = [float(bound) for bound in buckets]
        if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
            bounds.pop()
        if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be in strictly increasing order")
        self.name = name
        self.help = help
        self._bounds = tuple(bounds)
        # One slot per bound, plus the implicit +Inf bucket.
        self._counts = [0] * (len(bounds) + 1)
        self._sum = 0.0
        self._lock = threading.Lock()

    @property
    def buckets(self) -> tuple[float, ...]:
        return self._bounds

    @property
    def count(self) -> int:
        return sum(self._counts)

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def bucket_counts(self) -> dict[float, int]:
        """Cumulative counts keyed by upper bound, ending with +Inf."""
        with self._lock:
            counts = list(self._counts)
        result: dict[float, int] = {}
        running = 0
        for bound, bucket_count in zip((*self._bounds, math.inf), counts):
            running += bucket_count
            result[bound] = running
        return result

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self._bounds, value)
        with self._lock:
            self._counts[index] += 1
            self._sum += value


Metric = Union[Counter, Histogram]


class MetricsRegistry:
    """Holds metrics by name and refuses duplicate registrations."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: Metric) -> None:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(
                    f"duplicate metrics collector registration attempted: {metric.name}"
                )
            self._metrics[metric.name] = metric

    def get(self, name: str) -> Metric:
        return self._metrics[name]

    def __contains__(self, name: object) -> bool:
        return name in self._metrics

    @property
    def names(self) -> list[str]:
        return sorted(self._metrics)


class AppRequestNetworkMetrics:
    """P-Chain call latency and peer connection counters of the app-request network."""

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        registry = registry if registry is not None else MetricsRegistry()
        self.p_chain_api_call_latency_ms = Histogram(
            "p_chain_api_call_latency_ms",
            "Latency of calling p-chain rpc in milliseconds",
            exponential_buckets_range(100, 10000, 10),
        )
        registry.register(self.p_chain_api_call_latency_ms)
        self.connects = Counter("connects", "Number of connected events")
        registry.register(self.connects)
        self.disconnects = Counter("disconnects", "Number of disconnected events")
        registry.register(self.disconnects)
        self.registry = registry