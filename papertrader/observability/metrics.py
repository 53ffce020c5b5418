"""In-process metrics: counters and call timings.

The CLI logs the counters after a broker test order.
"""

from __future__ import annotations

import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator


class MetricsCollector:
    """Thread-safe in-process metrics collector."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._timings: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += value

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Record wall-clock milliseconds spent inside the block."""
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            with self._lock:
                self._timings[name].append(elapsed_ms)

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "timings_ms": {
                    k: {
                        "count": len(v),
                        "avg": round(sum(v) / len(v), 2),
                        "max": round(max(v), 2),
                    }
                    for k, v in self._timings.items() if v
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timings.clear()


# Global singleton
metrics = MetricsCollector()
