from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

from perftrend.analysis.compare import trends_by_label
from perftrend.config import PerformanceThresholds
from perftrend.metrics.models import EndpointStats, Trend, TrendRecord


class ThresholdStatus(str, Enum):
    PASS = "pass"
    WARNING = "warning"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class ThresholdResult:
    label: str
    status: ThresholdStatus
    message: str
    trend: Trend | None = None
    degraded_alert: bool = False

    @property
    def failed(self) -> bool:
        return self.status is not ThresholdStatus.PASS


def _check(stats: EndpointStats, thresholds: PerformanceThresholds) -> tuple[ThresholdStatus, str]:
    if stats.average > thresholds.error_ms:
        return (
            ThresholdStatus.FAILURE,
            f"Average response time ({stats.average:.0f}ms) exceeded error threshold of {thresholds.error_ms:g}ms.",
        )
    if stats.error_rate > thresholds.error_rate:
        return (
            ThresholdStatus.FAILURE,
            f"Error rate ({stats.error_rate * 100:.1f}%) exceeded threshold of {thresholds.error_rate * 100:.1f}%.",
        )
    if stats.average > thresholds.warning_ms:
        return (
            ThresholdStatus.WARNING,
            f"Average response time ({stats.average:.0f}ms) exceeded warning threshold of {thresholds.warning_ms:g}ms.",
        )
    return ThresholdStatus.PASS, ""


def evaluate_thresholds(
    endpoints: Mapping[str, EndpointStats],
    thresholds: PerformanceThresholds | None = None,
    trends: Iterable[TrendRecord] = (),
) -> list[ThresholdResult]:
    thresholds = thresholds or PerformanceThresholds()
    by_label = trends_by_label(list(trends))
    results: list[ThresholdResult] = []
    for label, stats in endpoints.items():
        status, message = _check(stats, thresholds)
        trend_record = by_label.get(label)
        trend = trend_record.trend if trend_record is not None else None
        degraded_alert = stats.average > thresholds.warning_ms and trend is Trend.DEGRADED
        if trend_record is not None and trend is not Trend.STABLE and message:
            message = f"{message} Trend: {trend.value} ({trend_record.delta:+.0f}ms vs previous build)."
        results.append(
            ThresholdResult(
                label=label,
                status=status,
                message=message,
                trend=trend,
                degraded_alert=degraded_alert,
            )
        )
    return results
