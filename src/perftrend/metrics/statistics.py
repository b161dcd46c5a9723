"""
Pure latency statistics.

Percentiles use the nearest-rank method: the value at rank ``ceil(p/100 * n)``
of the ascending sort, with no interpolation between neighbours. Empty input
yields NaN rather than zero so that "no data" can never be mistaken for an
all-zero dataset.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from perftrend.metrics.models import NAN, ApdexResult

# tolerating latencies run up to this multiple of the APDEX threshold
APDEX_TOLERATING_FACTOR = 4


def _as_array(values: Sequence[float] | np.ndarray) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).ravel()


def _rank_index(p: float, n: int) -> int:
    index = math.ceil(p * n / 100.0) - 1
    return min(max(index, 0), n - 1)


def percentile(values: Sequence[float] | np.ndarray, p: float) -> float:
    data = _as_array(values)
    if data.size == 0:
        return NAN
    ordered = np.sort(data)
    return float(ordered[_rank_index(p, ordered.size)])


def percentiles(values: Sequence[float] | np.ndarray, ps: Iterable[float]) -> dict[float, float]:
    """Nearest-rank percentiles for several ranks with a single sort."""
    data = _as_array(values)
    if data.size == 0:
        return {float(p): NAN for p in ps}
    ordered = np.sort(data)
    return {float(p): float(ordered[_rank_index(p, ordered.size)]) for p in ps}


def standard_deviation(values: Sequence[float] | np.ndarray, mean: float) -> float:
    data = _as_array(values)
    if data.size == 0:
        return NAN
    return float(np.sqrt(np.mean((data - mean) ** 2)))


def apdex(values: Sequence[float] | np.ndarray, threshold_ms: float, label: str = "Unknown") -> ApdexResult:
    """
    Classify latencies against an APDEX threshold T.

    satisfied <= T < tolerating <= 4T < frustrated. The score is NaN for an
    empty input; callers must handle that case explicitly.
    """
    data = _as_array(values)
    n = int(data.size)
    satisfied = int(np.count_nonzero(data <= threshold_ms))
    frustrated = int(np.count_nonzero(data > threshold_ms * APDEX_TOLERATING_FACTOR))
    tolerating = n - satisfied - frustrated
    score = (satisfied + tolerating / 2) / n if n else NAN
    return ApdexResult(
        label=label,
        score=score,
        samples=n,
        satisfied=satisfied,
        tolerating=tolerating,
        frustrated=frustrated,
    )


@dataclass(slots=True)
class RunningMoments:
    """Exact count, mean, extremes and population SD over a stream (Welford)."""

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    min: float = math.inf
    max: float = -math.inf

    def update(self, values: Sequence[float] | np.ndarray) -> None:
        data = _as_array(values)
        n = int(data.size)
        if n == 0:
            return
        batch_mean = float(data.mean())
        batch_m2 = float(((data - batch_mean) ** 2).sum())
        total = self.count + n
        delta = batch_mean - self.mean
        self.mean += delta * n / total
        self.m2 += batch_m2 + delta * delta * self.count * n / total
        self.count = total
        self.min = min(self.min, float(data.min()))
        self.max = max(self.max, float(data.max()))

    @property
    def average(self) -> float:
        return self.mean if self.count else NAN

    @property
    def std_dev(self) -> float:
        if not self.count:
            return NAN
        return math.sqrt(max(self.m2, 0.0) / self.count)

    @property
    def minimum(self) -> float:
        return self.min if self.count else NAN

    @property
    def maximum(self) -> float:
        return self.max if self.count else NAN
