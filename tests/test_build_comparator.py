from __future__ import annotations

import json
import math
from pathlib import Path

import pytest

from perftrend.analysis import BuildComparator, classify_trend, compare_snapshots, next_build_number
from perftrend.config import ComparisonConfig
from perftrend.metrics.models import NAN, OVERALL_LABEL, EndpointStats, SummarySnapshot, Trend
from perftrend.storage import load_snapshot


def snapshot(build_number: str | None = None, **averages: float) -> SummarySnapshot:
    endpoints = {
        label: EndpointStats(label=label, samples=10, average=avg, error_rate=0.0, throughput=5.0)
        for label, avg in averages.items()
    }
    overall = EndpointStats(label=OVERALL_LABEL, samples=10 * len(endpoints), average=NAN, error_rate=0.0, throughput=5.0)
    return SummarySnapshot(
        name="checkout",
        created_at=1_700_000_000_000,
        overall=overall,
        endpoints=endpoints,
        build_number=build_number,
    )


@pytest.mark.parametrize(
    ("delta", "expected"),
    [
        (-75.0, Trend.IMPROVED),
        (150.0, Trend.DEGRADED),
        (5.0, Trend.STABLE),
        (-5.0, Trend.STABLE),
        (10.0, Trend.STABLE),
        (-10.0, Trend.STABLE),
        (10.5, Trend.DEGRADED),
    ],
)
def test_classify_trend(delta: float, expected: Trend) -> None:
    assert classify_trend(delta) is expected


def test_classify_trend_custom_epsilon() -> None:
    assert classify_trend(15.0, epsilon=20.0) is Trend.STABLE
    assert classify_trend(15.0, epsilon=0.0) is Trend.DEGRADED


def test_only_common_endpoints_are_compared() -> None:
    current = snapshot(a=225.0, c=80.0)
    previous = snapshot(a=150.0, b=300.0)
    trends = compare_snapshots(current, previous)
    assert len(trends) == 1
    trend = trends[0]
    assert trend.label == "a"
    assert trend.delta == 75.0
    assert trend.delta_pct == pytest.approx(50.0)
    assert trend.trend is Trend.DEGRADED


def test_zero_previous_average_has_undefined_percentage() -> None:
    trends = compare_snapshots(snapshot(a=40.0), snapshot(a=0.0))
    assert trends[0].delta == 40.0
    assert math.isnan(trends[0].delta_pct)


def test_no_previous_means_no_trends() -> None:
    assert compare_snapshots(snapshot(a=1.0), None) == []


@pytest.mark.parametrize(
    ("previous", "expected"),
    [(None, "1"), ("41", "42"), ("7.0", "8"), ("nightly", "1")],
)
def test_next_build_number(previous: str | None, expected: str) -> None:
    assert next_build_number(snapshot(build_number=previous, a=1.0)) == expected


def test_build_numbers_chain_across_runs(tmp_path: Path) -> None:
    comparator = BuildComparator(ComparisonConfig(tmp_path / "history" / "last.json"))
    numbers = [comparator.run(snapshot(a=100.0 + i)).snapshot.build_number for i in range(3)]
    assert numbers == ["1", "2", "3"]
    assert load_snapshot(tmp_path / "history" / "last.json").build_number == "3"


def test_run_reports_trends_against_saved_snapshot(tmp_path: Path) -> None:
    comparator = BuildComparator(ComparisonConfig(tmp_path / "last.json"))
    comparator.run(snapshot(a=300.0, b=100.0))
    result = comparator.run(snapshot(a=225.0, b=250.0))
    assert result.previous is not None
    trends = {t.label: t.trend for t in result.trends}
    assert trends == {"a": Trend.IMPROVED, "b": Trend.DEGRADED}
    assert result.warnings == []


def test_numeric_build_number_in_previous_file(tmp_path: Path) -> None:
    path = tmp_path / "last.json"
    path.write_text(json.dumps({"buildNumber": 41, "timestamp": 1, "endpoints": {"a": {"average": 90}}}))
    result = BuildComparator(ComparisonConfig(path)).run(snapshot(a=95.0))
    assert result.snapshot.build_number == "42"
    assert result.trends[0].trend is Trend.STABLE


def test_corrupt_previous_snapshot_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "last.json"
    path.write_text("{not json")
    result = BuildComparator(ComparisonConfig(path)).run(snapshot(a=95.0))
    assert result.previous is None
    assert result.trends == []
    assert len(result.warnings) == 1
    assert result.snapshot.build_number == "1"
    # the corrupt file is replaced by the new snapshot
    assert load_snapshot(path).endpoints["a"].average == 95.0


def test_explicit_build_number_and_separate_output(tmp_path: Path) -> None:
    config = ComparisonConfig(
        tmp_path / "previous.json",
        output_snapshot_path=tmp_path / "out" / "current.json",
        build_number="2024.5",
    )
    result = BuildComparator(config).run(snapshot(a=10.0))
    assert result.snapshot_path == tmp_path / "out" / "current.json"
    assert result.snapshot.build_number == "2024.5"
    assert not (tmp_path / "previous.json").exists()


def test_saved_snapshot_writes_nan_as_null(tmp_path: Path) -> None:
    path = tmp_path / "last.json"
    BuildComparator(ComparisonConfig(path)).run(snapshot(a=10.0))
    data = json.loads(path.read_text())
    assert data["summary"]["averageResponseTime"] is None
    assert data["endpoints"]["a"]["average"] == 10.0
    assert data["buildNumber"] == "1"


@pytest.mark.parametrize("build_number", ["1e400", "\"inf\"", "\"nan\"", "1" + "0" * 400])
def test_non_finite_build_number_restarts_chain(tmp_path: Path, build_number: str) -> None:
    path = tmp_path / "last.json"
    path.write_text(f'{{"buildNumber": {build_number}, "timestamp": 1e400, "endpoints": {{"a": {{"average": 90}}}}}}')
    result = BuildComparator(ComparisonConfig(path)).run(snapshot(a=95.0))
    assert result.snapshot.build_number == "1"
    assert result.previous is not None
    assert result.previous.created_at == 0
