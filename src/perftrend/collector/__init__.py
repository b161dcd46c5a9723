from __future__ import annotations

from perftrend.collector.buffer import CollectorStats, MetricBuffer, RecordResult

__all__ = ["CollectorStats", "MetricBuffer", "RecordResult"]
