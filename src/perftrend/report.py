from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from perftrend.analysis import BuildComparator, ComparisonResult, ThresholdResult, evaluate_thresholds
from perftrend.config import AggregationConfig, ComparisonConfig, PerformanceThresholds
from perftrend.metrics.aggregator import StreamAggregator
from perftrend.metrics.models import AggregationResult, SummarySnapshot, TrendRecord


@dataclass(frozen=True, slots=True)
class PerformanceReport:
    aggregation: AggregationResult
    comparison: ComparisonResult | None = None
    thresholds: list[ThresholdResult] = field(default_factory=list)

    @property
    def snapshot(self) -> SummarySnapshot:
        if self.comparison is not None:
            return self.comparison.snapshot
        return self.aggregation.snapshot

    @property
    def trends(self) -> list[TrendRecord]:
        return self.comparison.trends if self.comparison is not None else []

    @property
    def warnings(self) -> list[str]:
        history = self.comparison.warnings if self.comparison is not None else []
        return [*self.aggregation.warnings, *history]


def _finish(
    aggregation: AggregationResult,
    comparison: ComparisonConfig | None,
    thresholds: PerformanceThresholds | None,
) -> PerformanceReport:
    comparison_result = None
    # an empty pass must not overwrite the build history
    if comparison is not None and aggregation.stats.records_processed > 0:
        comparison_result = BuildComparator(comparison).run(aggregation.snapshot)
    threshold_results: list[ThresholdResult] = []
    if thresholds is not None:
        trends = comparison_result.trends if comparison_result is not None else []
        threshold_results = evaluate_thresholds(aggregation.snapshot.endpoints, thresholds, trends)
    return PerformanceReport(
        aggregation=aggregation,
        comparison=comparison_result,
        thresholds=threshold_results,
    )


def build_report(
    log_path: Path,
    aggregation: AggregationConfig | None = None,
    comparison: ComparisonConfig | None = None,
    thresholds: PerformanceThresholds | None = None,
) -> PerformanceReport:
    result = StreamAggregator(aggregation).aggregate(log_path)
    return _finish(result, comparison, thresholds)


async def build_report_async(
    log_path: Path,
    aggregation: AggregationConfig | None = None,
    comparison: ComparisonConfig | None = None,
    thresholds: PerformanceThresholds | None = None,
) -> PerformanceReport:
    result = await StreamAggregator(aggregation).aggregate_async(log_path)
    return _finish(result, comparison, thresholds)
