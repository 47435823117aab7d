from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Mapping

SeriesKey = tuple[str, tuple[tuple[str, str], ...]]


def _series(name: str, labels: Mapping[str, str] | None) -> SeriesKey:
    return name, tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


def render_key(series: SeriesKey, suffix: str = "") -> str:
    name, labels = series
    if not labels:
        return f"{name}{suffix}"
    body = ",".join(f"{k}={v}" for k, v in labels)
    return f"{name}{suffix}{{{body}}}"


class MetricRegistry:
    """Process-local counters and latency totals, served as a flat dict by ``GET /metrics``."""

    def __init__(self) -> None:
        self._counts: Counter[SeriesKey] = Counter()
        self._latency_count: Counter[SeriesKey] = Counter()
        self._latency_sum: Counter[SeriesKey] = Counter()
        self._lock = Lock()

    def inc(self, name: str, labels: Mapping[str, str] | None = None, value: int = 1) -> None:
        series = _series(name, labels)
        with self._lock:
            self._counts[series] += value

    def observe_ms(self, name: str, took_ms: int, labels: Mapping[str, str] | None = None) -> None:
        series = _series(name, labels)
        with self._lock:
            self._latency_count[series] += 1
            self._latency_sum[series] += max(0, int(took_ms))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            flat = {render_key(series): value for series, value in self._counts.items()}
            for series, count in self._latency_count.items():
                flat[render_key(series, "_count")] = count
                flat[render_key(series, "_sum")] = self._latency_sum[series]
            return flat

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._latency_count.clear()
            self._latency_sum.clear()


metrics = MetricRegistry()
