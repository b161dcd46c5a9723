from __future__ import annotations

from perftrend.analysis.compare import (
    BuildComparator,
    ComparisonResult,
    classify_trend,
    compare_snapshots,
    next_build_number,
)
from perftrend.analysis.thresholds import ThresholdResult, ThresholdStatus, evaluate_thresholds

__all__ = [
    "BuildComparator",
    "ComparisonResult",
    "ThresholdResult",
    "ThresholdStatus",
    "classify_trend",
    "compare_snapshots",
    "evaluate_thresholds",
    "next_build_number",
]
