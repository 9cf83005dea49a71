"""
Thread-safe accumulators and latency statistics shared by the load harnesses.

* :class:`AtomicCounter` – lock-protected integer.
* :class:`LatencyRecorder` – lock-guarded append-only list of samples.
* :func:`percentile` / :func:`summarize` – nearest-rank percentiles over sorted
  samples (``index = floor(p * n)``, clamped to the last element).
"""

from __future__ import annotations

import math
import threading
from typing import Iterable, List, Sequence

from pydantic import BaseModel


class AtomicCounter:
    def __init__(self, value: int = 0) -> None:
        self._value = value
        self._lock = threading.Lock()

    def add(self, n: int = 1) -> int:
        with self._lock:
            self._value += n
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class LatencyRecorder:
    """Append-only collection of latency samples in milliseconds."""

    def __init__(self) -> None:
        self._samples: List[float] = []
        self._lock = threading.Lock()

    def append(self, sample_ms: float) -> None:
        with self._lock:
            self._samples.append(sample_ms)

    def snapshot(self) -> List[float]:
        """Return a copy of the samples recorded so far."""
        with self._lock:
            return list(self._samples)

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Nearest-rank *p* (0..1) of *sorted_values*; ``0`` when empty."""
    if not sorted_values:
        return 0
    index = min(int(math.floor(p * len(sorted_values))), len(sorted_values) - 1)
    return sorted_values[index]


class LatencySummary(BaseModel):
    count: int = 0
    minimum: float = 0
    maximum: float = 0
    mean: float = 0
    p50: float = 0
    p90: float = 0
    p99: float = 0


def summarize(samples: Iterable[float]) -> LatencySummary:
    values = sorted(samples)
    if not values:
        return LatencySummary()
    return LatencySummary(
        count=len(values),
        minimum=values[0],
        maximum=values[-1],
        mean=sum(values) / len(values),
        p50=percentile(values, 0.50),
        p90=percentile(values, 0.90),
        p99=percentile(values, 0.99),
    )
