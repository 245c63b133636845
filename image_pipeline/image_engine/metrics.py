"""Lightweight in-process metrics for development and tests.

Counters, timings and gauges recorded by the cache, the loader and the
codecs. No external deps, so it works the same in tests and CI.

Usage:
    from image_pipeline.image_engine.metrics import metrics
    metrics.inc("frame_cache.hits")
    with metrics.timed("decode.vips"):
        ...
    metrics.gauge("frame_cache.weight", cache.weight)
    snapshot = metrics.snapshot()
"""

from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from threading import RLock
from typing import Any

# Older samples are dropped so long sessions do not grow without bound.
_MAX_SAMPLES = 1000


class _Metrics:
    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._timings: dict[str, list[float]] = defaultdict(list)
        self._gauges: dict[str, float] = {}
        self._lock = RLock()

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += int(amount)

    def gauge(self, key: str, value: float) -> None:
        with self._lock:
            self._gauges[key] = value

    def timed(self, key: str):
        @contextmanager
        def _ctx():
            start = time.perf_counter()
            try:
                yield
            finally:
                elapsed = time.perf_counter() - start
                with self._lock:
                    samples = self._timings[key]
                    samples.append(elapsed)
                    if len(samples) > _MAX_SAMPLES:
                        del samples[: len(samples) - _MAX_SAMPLES]

        return _ctx()

    def counter(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "timings": {k: list(v) for k, v in self._timings.items()},
                "gauges": dict(self._gauges),
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()
            self._gauges.clear()


metrics = _Metrics()
