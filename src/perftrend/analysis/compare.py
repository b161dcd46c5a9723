from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np
import pandas as pd

from perftrend.config import ComparisonConfig
from perftrend.logger import get_logger
from perftrend.metrics.models import SummarySnapshot, Trend, TrendRecord
from perftrend.storage.snapshots import load_snapshot, save_snapshot

_log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ComparisonResult:
    snapshot: SummarySnapshot
    previous: SummarySnapshot | None
    trends: list[TrendRecord]
    snapshot_path: Path
    warnings: list[str] = field(default_factory=list)


def classify_trend(delta: float, epsilon: float = 10.0) -> Trend:
    if delta < -epsilon:
        return Trend.IMPROVED
    if delta > epsilon:
        return Trend.DEGRADED
    return Trend.STABLE


def next_build_number(previous: SummarySnapshot | None) -> str:
    if previous is None or previous.build_number is None:
        return "1"
    try:
        number = int(float(previous.build_number))
    except (TypeError, ValueError, OverflowError):
        return "1"
    return str(number + 1)


def _averages(snapshot: SummarySnapshot) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "label": list(snapshot.endpoints),
            "average": [stats.average for stats in snapshot.endpoints.values()],
        },
        columns=["label", "average"],
    )


def compare_snapshots(
    current: SummarySnapshot,
    previous: SummarySnapshot | None,
    epsilon: float = 10.0,
) -> list[TrendRecord]:
    """One trend per endpoint present in both snapshots, in current order."""
    if previous is None or not current.endpoints or not previous.endpoints:
        return []
    merged = _averages(current).dropna(subset=["average"]).merge(
        _averages(previous).dropna(subset=["average"]),
        on="label",
        how="inner",
        suffixes=("_cur", "_prev"),
    )
    if merged.empty:
        return []
    delta = merged["average_cur"] - merged["average_prev"]
    with np.errstate(divide="ignore", invalid="ignore"):
        delta_pct = np.where(merged["average_prev"] != 0, delta / merged["average_prev"] * 100.0, np.nan)
    return [
        TrendRecord(
            label=label,
            current_average=float(cur),
            previous_average=float(prev),
            delta=float(d),
            delta_pct=float(pct),
            trend=classify_trend(float(d), epsilon),
        )
        for label, cur, prev, d, pct in zip(
            merged["label"],
            merged["average_cur"],
            merged["average_prev"],
            delta,
            delta_pct,
        )
    ]


class BuildComparator:
    """Compares a fresh snapshot with the last saved one and extends the build history."""

    def __init__(self, config: ComparisonConfig) -> None:
        self.config = config

    def compare(self, current: SummarySnapshot, previous: SummarySnapshot | None) -> list[TrendRecord]:
        return compare_snapshots(current, previous, self.config.trend_epsilon_ms)

    def load_previous(self) -> tuple[SummarySnapshot | None, list[str]]:
        path = self.config.previous_snapshot_path
        if not path.exists():
            _log.info("previous_snapshot_missing", path=str(path))
            return None, []
        try:
            previous = load_snapshot(path)
        except (OSError, ValueError, TypeError, OverflowError) as exc:
            # json.JSONDecodeError is a ValueError
            _log.warning("previous_snapshot_unreadable", path=str(path), error=str(exc))
            return None, [f"Ignoring unreadable previous snapshot {path}: {exc}"]
        return previous, []

    def run(self, current: SummarySnapshot) -> ComparisonResult:
        previous, warnings = self.load_previous()
        trends = self.compare(current, previous)
        build_number = self.config.build_number or next_build_number(previous)
        snapshot = replace(current, build_number=build_number)
        output = self.config.snapshot_output
        try:
            save_snapshot(output, snapshot)
        except (OSError, TypeError, ValueError) as exc:
            _log.warning("snapshot_save_failed", path=str(output), error=str(exc))
            warnings.append(f"Could not save snapshot to {output}: {exc}")
        else:
            _log.info("snapshot_saved", path=str(output), build_number=build_number, endpoints=len(snapshot.endpoints))
        return ComparisonResult(
            snapshot=snapshot,
            previous=previous,
            trends=trends,
            snapshot_path=output,
            warnings=warnings,
        )


def trends_by_label(trends: list[TrendRecord]) -> dict[str, TrendRecord]:
    return {trend.label: trend for trend in trends}
