"""In-process metrics for the trading pipeline.

Every series is a metric name plus optional string labels, for example
``METRICS.increment("dispatch_success", method="aggregator")``. Labels let one
series cover every API, execution method or profit tier without minting new
metric names at runtime.
"""

from __future__ import annotations

import math
import re
import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from statistics import mean
from typing import Deque, Dict, Iterator, List, MutableMapping, Tuple

_NAME_RE = re.compile(r"[^a-zA-Z0-9_:]")

Labels = Tuple[Tuple[str, str], ...]
SeriesKey = Tuple[str, Labels]

QUANTILES = {"p50": 0.5, "p90": 0.9, "p99": 0.99}


def _metric_name(name: str) -> str:
    cleaned = _NAME_RE.sub("_", name) or "_"
    return f"_{cleaned}" if cleaned[0].isdigit() else cleaned


def _key(name: str, labels: Dict[str, object]) -> SeriesKey:
    return name, tuple(sorted((key, str(value)) for key, value in labels.items()))


def _render(key: SeriesKey, *, prometheus: bool = False) -> str:
    name, labels = key
    if prometheus:
        name = _metric_name(name)
    if not labels:
        return name
    body = ",".join(f'{label}="{value}"' for label, value in labels)
    return f"{name}{{{body}}}"


class MetricsRegistry:
    """Counters, gauges and bounded latency samples, safe to update from any thread."""

    def __init__(self, *, max_samples: int = 1024) -> None:
        self._lock = threading.RLock()
        self._counters: MutableMapping[SeriesKey, float] = defaultdict(float)
        self._gauges: MutableMapping[SeriesKey, float] = {}
        self._samples: MutableMapping[SeriesKey, Deque[float]] = defaultdict(lambda: deque(maxlen=max_samples))

    def increment(self, name: str, amount: float = 1.0, **labels: object) -> None:
        with self._lock:
            self._counters[_key(name, labels)] += amount

    def get(self, name: str, **labels: object) -> float:
        with self._lock:
            return self._counters.get(_key(name, labels), 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across all of its label sets."""

        with self._lock:
            return sum(value for (series, _), value in self._counters.items() if series == name)

    def gauge(self, name: str, value: float, **labels: object) -> None:
        with self._lock:
            self._gauges[_key(name, labels)] = float(value)

    def observe(self, name: str, value: float, **labels: object) -> None:
        with self._lock:
            self._samples[_key(name, labels)].append(float(value))

    @contextmanager
    def timed(self, name: str, **labels: object) -> Iterator[None]:
        """Observe the wall time of the block, including when it raises."""

        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(name, time.perf_counter() - started, **labels)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            counters = {_render(key): value for key, value in self._counters.items()}
            gauges = {_render(key): value for key, value in self._gauges.items()}
            summaries = {_render(key): _summarize(values) for key, values in self._samples.items() if values}
        return {"counters": counters, "gauges": gauges, "latencies": summaries}

    def export_prometheus(self) -> str:
        with self._lock:
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            samples = sorted((key, list(values)) for key, values in self._samples.items() if values)
        lines: List[str] = []
        declared = set()

        def declare(key: SeriesKey, kind: str) -> None:
            name = _metric_name(key[0])
            if name not in declared:
                declared.add(name)
                lines.append(f"# TYPE {name} {kind}")

        for key, value in counters:
            declare(key, "counter")
            lines.append(f"{_render(key, prometheus=True)} {value}")
        for key, value in gauges:
            declare(key, "gauge")
            lines.append(f"{_render(key, prometheus=True)} {value}")
        for key, values in samples:
            declare(key, "summary")
            name, labels = key
            stats = _summarize(values)
            for label, quantile in QUANTILES.items():
                quantile_key = (name, labels + (("quantile", str(quantile)),))
                lines.append(f"{_render(quantile_key, prometheus=True)} {stats[label]}")
            lines.append(f"{_render((name + '_count', labels), prometheus=True)} {len(values)}")
            lines.append(f"{_render((name + '_sum', labels), prometheus=True)} {sum(values)}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._samples.clear()


def _summarize(values) -> Dict[str, float]:
    data = sorted(values)
    summary = {"count": float(len(data)), "avg": mean(data)}
    for label, quantile in QUANTILES.items():
        index = max(int(math.ceil(quantile * len(data))) - 1, 0)
        summary[label] = data[min(index, len(data) - 1)]
    return summary


METRICS = MetricsRegistry()


__all__ = ["METRICS", "MetricsRegistry"]
