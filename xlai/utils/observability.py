from __future__ import annotations

from collections import defaultdict, deque
from contextlib import contextmanager
import time
from typing import Deque, Dict, List

MetricsSnapshot = Dict[str, Dict[str, float]]


class RequestMetrics:
    def __init__(self, percentile_window: int = 200) -> None:
        self._percentile_window = percentile_window
        self.reset()

    def reset(self) -> None:
        self._counts: Dict[str, int] = defaultdict(int)
        self._latency_sum: Dict[str, float] = defaultdict(float)
        self._latency_samples: Dict[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=self._percentile_window)
        )
        self._phase_latency_sum: Dict[str, float] = defaultdict(float)
        self._phase_latency_samples: Dict[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=self._percentile_window)
        )
        self._counters: Dict[str, float] = defaultdict(float)

    def record(self, endpoint: str, duration_ms: float) -> None:
        self._counts[endpoint] += 1
        self._latency_sum[endpoint] += duration_ms
        self._latency_samples[endpoint].append(duration_ms)

    def record_phase(self, phase: str, duration_ms: float) -> None:
        self._phase_latency_sum[phase] += duration_ms
        self._phase_latency_samples[phase].append(duration_ms)

    def increment_counter(self, name: str, amount: float = 1.0) -> None:
        self._counters[name] += amount

    def snapshot(self) -> MetricsSnapshot:
        data: MetricsSnapshot = {}
        for endpoint, count in self._counts.items():
            percentiles = _compute_percentiles(list(self._latency_samples[endpoint]))
            data[endpoint] = {
                "count": float(count),
                "avg_latency_ms": (self._latency_sum[endpoint] / count) if count else 0.0,
                "p50_latency_ms": percentiles.get(50, 0.0),
                "p95_latency_ms": percentiles.get(95, 0.0),
            }
        phase_block: Dict[str, Dict[str, float]] = {}
        for phase, samples in self._phase_latency_samples.items():
            phase_samples = list(samples)
            percentiles = _compute_percentiles(phase_samples)
            total_count = len(phase_samples)
            phase_block[phase] = {
                "count": float(total_count),
                "avg_latency_ms": (self._phase_latency_sum[phase] / total_count) if total_count else 0.0,
                "p50_latency_ms": percentiles.get(50, 0.0),
                "p95_latency_ms": percentiles.get(95, 0.0),
            }
        if phase_block:
            data["phases"] = phase_block
        if self._counters:
            data["counters"] = dict(self._counters)
        return data


@contextmanager
def time_phase(metrics: RequestMetrics, phase: str):
    start = time.perf_counter()
    try:
        yield
    finally:
        metrics.record_phase(phase, (time.perf_counter() - start) * 1000)


def _compute_percentiles(samples: List[float]) -> Dict[int, float]:
    if not samples:
        return {}
    ordered = sorted(samples)
    results: Dict[int, float] = {}
    for percentile in (50, 95):
        index = int(round((percentile / 100) * (len(ordered) - 1)))
        index = min(max(index, 0), len(ordered) - 1)
        results[percentile] = ordered[index]
    return results


_METRICS = RequestMetrics()


def get_metrics() -> RequestMetrics:
    return _METRICS
