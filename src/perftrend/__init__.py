"""Performance sample collection, streaming aggregation and build-over-build trends."""

from __future__ import annotations

from perftrend.analysis import BuildComparator, ComparisonResult, evaluate_thresholds
from perftrend.collector import MetricBuffer, RecordResult
from perftrend.config import AggregationConfig, CollectorConfig, ComparisonConfig, PerformanceThresholds
from perftrend.metrics import (
    AggregationResult,
    EndpointStats,
    SampleRecord,
    SummarySnapshot,
    Trend,
    TrendRecord,
)
from perftrend.metrics.aggregator import StreamAggregator
from perftrend.report import PerformanceReport, build_report, build_report_async
from perftrend.storage import DurableLog

__all__ = [
    "AggregationConfig",
    "AggregationResult",
    "BuildComparator",
    "CollectorConfig",
    "ComparisonConfig",
    "ComparisonResult",
    "DurableLog",
    "EndpointStats",
    "MetricBuffer",
    "PerformanceReport",
    "PerformanceThresholds",
    "RecordResult",
    "SampleRecord",
    "StreamAggregator",
    "SummarySnapshot",
    "Trend",
    "TrendRecord",
    "build_report",
    "build_report_async",
    "evaluate_thresholds",
]
