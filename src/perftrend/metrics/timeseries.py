from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from http import HTTPStatus

import numpy as np

from perftrend.metrics.models import ErrorInfo, TimeSeriesPoint


@dataclass(slots=True)
class _Bucket:
    count: int = 0
    elapsed_sum: float = 0.0
    errors: int = 0
    active_threads: int = 0

    def merge(self, other: _Bucket) -> None:
        self.count += other.count
        self.elapsed_sum += other.elapsed_sum
        self.errors += other.errors
        self.active_threads = max(self.active_threads, other.active_threads)


class TimeSeriesBuilder:
    """Fixed-width time buckets whose width doubles when they exceed max_points."""

    def __init__(self, bucket_ms: int = 1000, max_points: int = 10000) -> None:
        self.bucket_ms = bucket_ms
        self.max_points = max_points
        self._buckets: dict[int, _Bucket] = {}

    def add(
        self,
        timestamps: np.ndarray,
        elapsed: np.ndarray,
        failed: np.ndarray,
        threads: np.ndarray,
    ) -> None:
        if timestamps.size == 0:
            return
        keys = (timestamps // self.bucket_ms).astype(np.int64)
        order = np.argsort(keys, kind="stable")
        keys = keys[order]
        unique, starts = np.unique(keys, return_index=True)
        ends = np.append(starts[1:], keys.size)
        elapsed = elapsed[order]
        failed = failed[order]
        threads = threads[order]
        for key, start, end in zip(unique.tolist(), starts.tolist(), ends.tolist()):
            bucket = self._buckets.setdefault(key, _Bucket())
            bucket.merge(
                _Bucket(
                    count=end - start,
                    elapsed_sum=float(elapsed[start:end].sum()),
                    errors=int(failed[start:end].sum()),
                    active_threads=int(threads[start:end].max()),
                )
            )
        while len(self._buckets) > self.max_points:
            self._coarsen()

    def _coarsen(self) -> None:
        self.bucket_ms *= 2
        merged: dict[int, _Bucket] = {}
        for key, bucket in self._buckets.items():
            merged.setdefault(key // 2, _Bucket()).merge(bucket)
        self._buckets = merged

    def points(self) -> list[TimeSeriesPoint]:
        window_sec = self.bucket_ms / 1000.0
        return [
            TimeSeriesPoint(
                timestamp=key * self.bucket_ms,
                response_time=bucket.elapsed_sum / bucket.count,
                throughput=bucket.count / window_sec,
                error_rate=bucket.errors / bucket.count,
                active_threads=bucket.active_threads,
            )
            for key, bucket in sorted(self._buckets.items())
        ]


def error_message(code: int) -> str:
    try:
        return HTTPStatus(code).phrase
    except ValueError:
        return f"HTTP {code}"


class ErrorSummaryBuilder:
    def __init__(self) -> None:
        self._counts: Counter[int] = Counter()

    def add(self, failed_codes: np.ndarray) -> None:
        if failed_codes.size:
            codes, counts = np.unique(failed_codes.astype(np.int64), return_counts=True)
            self._counts.update(dict(zip(codes.tolist(), counts.tolist())))

    def summary(self, total_requests: int) -> list[ErrorInfo]:
        if total_requests <= 0:
            return []
        return [
            ErrorInfo(
                response_code=code,
                count=count,
                percentage=count / total_requests * 100.0,
                message=error_message(code),
            )
            for code, count in self._counts.most_common()
        ]
