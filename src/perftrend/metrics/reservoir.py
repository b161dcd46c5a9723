"""
Bounded latency storage for percentile estimation.

Exact percentiles need every observation, which cannot fit a fixed memory
ceiling for an unbounded log. A ``LatencyReservoir`` with a capacity keeps
every value until the capacity is reached and then switches to reservoir
sampling (Algorithm R): each later observation replaces a random slot with
probability ``capacity / seen``, so the retained values stay a uniform sample
of the whole stream. Percentiles computed from it are estimates once
``approximate`` is true; counts, means, extremes and APDEX are tracked
elsewhere and stay exact.

A zero capacity retains nothing, which leaves percentiles undefined (NaN).
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

FLOAT_BYTES = np.dtype(np.float64).itemsize


class LatencyReservoir:
    def __init__(self, capacity: int | None, rng: np.random.Generator) -> None:
        if capacity is not None and capacity < 0:
            msg = f"Reservoir capacity must not be negative, got {capacity}"
            raise ValueError(msg)
        self._capacity = capacity
        self._rng = rng
        self._seen = 0
        self._chunks: list[np.ndarray] = []
        self._store: np.ndarray | None = None
        self._size = 0
        if capacity is not None:
            self._store = np.empty(capacity, dtype=np.float64)

    @property
    def capacity(self) -> int | None:
        return self._capacity

    @property
    def seen(self) -> int:
        return self._seen

    @property
    def retained(self) -> int:
        if self._store is None:
            return self._seen
        return self._size

    @property
    def approximate(self) -> bool:
        return self.retained < self._seen

    @property
    def nbytes(self) -> int:
        if self._store is None:
            return sum(chunk.nbytes for chunk in self._chunks)
        return self._store.nbytes

    def extend(self, values: Sequence[float] | np.ndarray) -> None:
        data = np.asarray(values, dtype=np.float64).ravel()
        if data.size == 0:
            return
        if self._store is None:
            self._chunks.append(data.copy())
            self._seen += int(data.size)
            return
        capacity = self._store.size
        if capacity == 0:
            self._seen += int(data.size)
            return
        free = capacity - self._size
        if free > 0:
            head = data[:free]
            self._store[self._size : self._size + head.size] = head
            self._size += int(head.size)
            self._seen += int(head.size)
            data = data[free:]
        if data.size == 0:
            return
        # stream positions of the remaining values, 0-based
        positions = np.arange(self._seen, self._seen + data.size)
        slots = self._rng.integers(0, positions + 1)
        keep = slots < capacity
        # later duplicates win, matching sequential replacement
        self._store[slots[keep]] = data[keep]
        self._seen += int(data.size)

    def shrink(self, capacity: int) -> None:
        """Lower the capacity of a bounded reservoir, keeping a uniform subsample."""
        if self._store is None:
            msg = "Cannot shrink an unbounded reservoir"
            raise ValueError(msg)
        if capacity < 0:
            msg = f"Reservoir capacity must not be negative, got {capacity}"
            raise ValueError(msg)
        if capacity >= self._store.size:
            return
        current = self._store[: self._size]
        if current.size > capacity:
            picked = self._rng.choice(current.size, size=capacity, replace=False)
            current = current[np.sort(picked)]
        store = np.empty(capacity, dtype=np.float64)
        store[: current.size] = current
        self._store = store
        self._size = int(current.size)
        self._capacity = capacity

    def values(self) -> np.ndarray:
        if self._store is None:
            if not self._chunks:
                return np.empty(0, dtype=np.float64)
            if len(self._chunks) > 1:
                self._chunks = [np.concatenate(self._chunks)]
            return self._chunks[0]
        return self._store[: self._size]
