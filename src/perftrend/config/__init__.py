from __future__ import annotations

from perftrend.config.models import (
    DEFAULT_PERCENTILES,
    AggregationConfig,
    CollectorConfig,
    ComparisonConfig,
    ErrorCallback,
    FlushCallback,
    PerformanceThresholds,
)

__all__ = [
    "DEFAULT_PERCENTILES",
    "AggregationConfig",
    "CollectorConfig",
    "ComparisonConfig",
    "ErrorCallback",
    "FlushCallback",
    "PerformanceThresholds",
]
