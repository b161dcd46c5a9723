from __future__ import annotations

from perftrend.metrics.models import (
    AggregationResult,
    AggregationStats,
    ApdexResult,
    EndpointStats,
    ErrorInfo,
    SampleRecord,
    SummarySnapshot,
    TimeSeriesPoint,
    Trend,
    TrendRecord,
)
from perftrend.metrics.statistics import apdex, percentile, percentiles, standard_deviation

__all__ = [
    "AggregationResult",
    "AggregationStats",
    "ApdexResult",
    "EndpointStats",
    "ErrorInfo",
    "SampleRecord",
    "SummarySnapshot",
    "TimeSeriesPoint",
    "Trend",
    "TrendRecord",
    "apdex",
    "percentile",
    "percentiles",
    "standard_deviation",
]
