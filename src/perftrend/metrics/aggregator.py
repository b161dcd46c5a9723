from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import numpy as np
import pandas as pd

from perftrend.config import AggregationConfig
from perftrend.logger import get_logger
from perftrend.metrics.models import (
    NAN,
    OVERALL_LABEL,
    AggregationResult,
    AggregationStats,
    ApdexResult,
    EndpointStats,
    SummarySnapshot,
)
from perftrend.metrics.reservoir import FLOAT_BYTES, LatencyReservoir
from perftrend.metrics.statistics import RunningMoments, apdex, percentiles
from perftrend.metrics.timeseries import ErrorSummaryBuilder, TimeSeriesBuilder
from perftrend.storage.durable_log import LOG_COLUMNS, DurableLog, LogRow

_log = get_logger(__name__)

MIB = 1024 * 1024
HIGH_ELAPSED_MS = 300_000
# largest integer a float64 holds exactly
MAX_COUNT = 2**53


@dataclass(slots=True)
class _Accumulator:
    label: str
    reservoir: LatencyReservoir
    moments: RunningMoments = field(default_factory=RunningMoments)
    errors: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0
    apdex: ApdexResult | None = None

    def add(
        self,
        elapsed: np.ndarray,
        failed: np.ndarray,
        received: np.ndarray,
        sent: np.ndarray,
        apdex_threshold_ms: float,
    ) -> None:
        self.moments.update(elapsed)
        self.reservoir.extend(elapsed)
        self.errors += int(failed.sum())
        self.bytes_received += int(received.sum())
        self.bytes_sent += int(sent.sum())
        chunk = apdex(elapsed, apdex_threshold_ms, self.label)
        self.apdex = chunk if self.apdex is None else self.apdex + chunk

    def finish(self, ranks: Iterable[float], window_sec: float) -> EndpointStats:
        samples = self.moments.count
        if samples == 0:
            return EndpointStats(
                label=self.label,
                samples=0,
                average=NAN,
                error_rate=NAN,
                throughput=NAN,
                percentiles=percentiles([], ranks),
            )
        return EndpointStats(
            label=self.label,
            samples=samples,
            average=self.moments.average,
            error_rate=self.errors / samples,
            throughput=samples / window_sec,
            min=self.moments.minimum,
            max=self.moments.maximum,
            std_dev=self.moments.std_dev,
            error_count=self.errors,
            percentiles=percentiles(self.reservoir.values(), ranks),
            apdex=self.apdex,
            received_kb=self.bytes_received / 1024,
            sent_kb=self.bytes_sent / 1024,
            avg_bytes=self.bytes_received / samples,
            approximate=self.reservoir.approximate,
        )


@dataclass(slots=True)
class _ParsedBatch:
    lines: np.ndarray
    timestamps: np.ndarray
    elapsed: np.ndarray
    labels: pd.Series
    codes: np.ndarray
    failed: np.ndarray
    received: np.ndarray
    sent: np.ndarray
    threads: np.ndarray


def _numeric(column: pd.Series) -> pd.Series:
    return pd.to_numeric(column.str.strip(), errors="coerce")


def _finite(values: pd.Series, default: float) -> pd.Series:
    return values.where(np.isfinite(values), default)


def _counts(values: pd.Series, default: int) -> np.ndarray:
    """Non-negative integers; missing, non-finite or oversized entries take the default."""
    data = values.to_numpy(dtype=np.float64)
    usable = np.isfinite(data) & (data >= 0) & (data <= MAX_COUNT)
    return np.where(usable, data, default).astype(np.int64)


class _Scan:
    """State for a single aggregation pass; never reused across passes."""

    def __init__(self, config: AggregationConfig, log: DurableLog) -> None:
        self.config = config
        self.log = log
        self.started = time.perf_counter()
        self.rng = np.random.default_rng(config.random_seed)
        self.processed = 0
        self.skipped = 0
        self.warnings: list[str] = []
        self.suppressed = 0
        self.first_ts: float | None = None
        self.last_ts: float | None = None
        self.endpoints: dict[str, _Accumulator] = {}
        self.time_series = TimeSeriesBuilder(config.time_bucket_ms, config.max_time_series_points)
        self.error_summary = ErrorSummaryBuilder()
        self.endpoint_budget: int | None = None
        overall_capacity: int | None = None
        if config.max_memory_usage_mb is not None:
            total_slots = int(config.max_memory_usage_mb * MIB) // FLOAT_BYTES
            # the ceiling wins over min_reservoir_size when the two conflict
            overall_capacity = max(total_slots // 2, min(config.min_reservoir_size, total_slots))
            self.endpoint_budget = total_slots - overall_capacity
        self.overall = _Accumulator(OVERALL_LABEL, LatencyReservoir(overall_capacity, self.rng))

    def warn(self, message: str) -> None:
        limit = self.config.max_warnings
        if limit is not None and len(self.warnings) >= limit:
            self.suppressed += 1
            return
        self.warnings.append(message)

    def _accumulator(self, label: str) -> _Accumulator:
        acc = self.endpoints.get(label)
        if acc is not None:
            return acc
        capacity: int | None = None
        if self.endpoint_budget is not None:
            # equal shares keep the sum within the budget; a share may reach zero
            capacity = self.endpoint_budget // (len(self.endpoints) + 1)
            for existing in self.endpoints.values():
                existing.reservoir.shrink(capacity)
        acc = _Accumulator(label, LatencyReservoir(capacity, self.rng))
        self.endpoints[label] = acc
        return acc

    def consume(self, batch: list[LogRow]) -> None:
        parsed = self._parse(batch)
        if parsed is None:
            return
        self.processed += int(parsed.lines.size)
        ts_min = float(parsed.timestamps.min())
        ts_max = float(parsed.timestamps.max())
        self.first_ts = ts_min if self.first_ts is None else min(self.first_ts, ts_min)
        self.last_ts = ts_max if self.last_ts is None else max(self.last_ts, ts_max)

        threshold = self.config.apdex_threshold_ms
        self.overall.add(parsed.elapsed, parsed.failed, parsed.received, parsed.sent, threshold)
        groups = parsed.labels.groupby(parsed.labels, sort=False).indices
        for label, idx in groups.items():
            self._accumulator(label).add(
                parsed.elapsed[idx],
                parsed.failed[idx],
                parsed.received[idx],
                parsed.sent[idx],
                threshold,
            )
        self.time_series.add(parsed.timestamps, parsed.elapsed, parsed.failed, parsed.threads)
        self.error_summary.add(parsed.codes[parsed.failed])

    def _parse(self, batch: list[LogRow]) -> _ParsedBatch | None:
        verbatim = self.config.skip_data_validation
        width = len(LOG_COLUMNS)
        issues: list[tuple[int, str]] = []
        rows: list[list[str]] = []
        lines: list[int] = []
        for row in batch:
            if row.error is not None:
                self.skipped += 1
                issues.append((row.line_number, f"Line {row.line_number}: Unparseable row: {row.error}"))
                continue
            if len(row.fields) < width:
                if not verbatim:
                    self.skipped += 1
                    issues.append(
                        (row.line_number, f"Line {row.line_number}: Insufficient fields: {len(row.fields)} < {width}")
                    )
                    continue
                rows.append(row.fields + [""] * (width - len(row.fields)))
            else:
                rows.append(row.fields[:width])
            lines.append(row.line_number)
        if not rows:
            for _, message in sorted(issues, key=lambda item: item[0]):
                self.warn(message)
            return None

        frame = pd.DataFrame(rows, columns=list(LOG_COLUMNS), dtype=str)
        frame["line"] = lines
        timestamps = _numeric(frame["timestamp"])
        elapsed = _numeric(frame["elapsed"])
        codes = _numeric(frame["responseCode"])
        labels = frame["label"]

        if verbatim:
            timestamps = _finite(timestamps, 0.0)
            elapsed = _finite(elapsed, 0.0)
        else:
            bad_ts = ~np.isfinite(timestamps) | (timestamps <= 0)
            bad_elapsed = ~np.isfinite(elapsed)
            bad_label = labels.str.strip() == ""
            rejected = (bad_ts | bad_elapsed | bad_label).fillna(True)
            for pos in np.flatnonzero(rejected.to_numpy()):
                line = int(frame["line"].iat[pos])
                if bad_ts.iat[pos]:
                    reason = f"Invalid timestamp: {frame['timestamp'].iat[pos]!r}"
                elif bad_elapsed.iat[pos]:
                    reason = f"Invalid elapsed time: {frame['elapsed'].iat[pos]!r}"
                else:
                    reason = "Missing label"
                issues.append((line, f"Line {line}: {reason}"))
            self.skipped += int(rejected.sum())

            keep = ~rejected
            frame = frame[keep]
            timestamps = timestamps[keep]
            elapsed = elapsed[keep]
            codes = codes[keep]
            labels = labels[keep]
            issues.extend(self._flag(frame, elapsed, codes))

        for _, message in sorted(issues, key=lambda item: item[0]):
            self.warn(message)
        if frame.empty:
            return None

        success = frame["success"].str.strip().str.lower() == "true"
        return _ParsedBatch(
            lines=frame["line"].to_numpy(dtype=np.int64),
            timestamps=timestamps.to_numpy(dtype=np.float64),
            elapsed=elapsed.to_numpy(dtype=np.float64),
            labels=labels.reset_index(drop=True),
            codes=_counts(codes, 0),
            failed=~success.to_numpy(dtype=bool),
            received=_counts(_numeric(frame["bytes"]), 0),
            sent=_counts(_numeric(frame["sentBytes"]), 0),
            threads=_counts(_numeric(frame["allThreads"]), 1),
        )

    @staticmethod
    def _flag(frame: pd.DataFrame, elapsed: pd.Series, codes: pd.Series) -> list[tuple[int, str]]:
        """Odd values that are accepted but reported."""
        flagged: list[tuple[int, str]] = []
        lines = frame["line"].to_numpy()
        raw_codes = frame["responseCode"].to_numpy()
        elapsed_values = elapsed.to_numpy(dtype=np.float64)
        code_values = codes.to_numpy(dtype=np.float64)
        for pos in np.flatnonzero(elapsed_values < 0):
            flagged.append((int(lines[pos]), f"Line {lines[pos]}: Negative elapsed time: {elapsed_values[pos]:g}"))
        for pos in np.flatnonzero(elapsed_values > HIGH_ELAPSED_MS):
            flagged.append((int(lines[pos]), f"Line {lines[pos]}: Very high response time: {elapsed_values[pos]:g}ms"))
        for pos in np.flatnonzero(np.isnan(code_values)):
            flagged.append((int(lines[pos]), f"Line {lines[pos]}: Invalid response code: {raw_codes[pos]!r}"))
        out_of_range = ~np.isnan(code_values) & ((code_values < 100) | (code_values > 599))
        for pos in np.flatnonzero(out_of_range):
            flagged.append((int(lines[pos]), f"Line {lines[pos]}: Response code out of range: {code_values[pos]:g}"))
        return flagged

    def finish(self) -> AggregationResult:
        ranks = self.config.percentiles
        if self.processed and self.first_ts is not None and self.last_ts is not None:
            window_sec = max((self.last_ts - self.first_ts) / 1000.0, 1.0)
        else:
            window_sec = NAN
            self.warn(f"No valid records found in {self.log.path}")

        endpoints = {label: acc.finish(ranks, window_sec) for label, acc in self.endpoints.items()}
        overall = self.overall.finish(ranks, window_sec)

        approximate = overall.approximate or any(stats.approximate for stats in endpoints.values())
        if approximate:
            for acc in [self.overall, *self.endpoints.values()]:
                if not acc.reservoir.approximate:
                    continue
                if acc.reservoir.retained == 0:
                    self.warn(
                        f"Percentiles for {acc.label!r} unavailable: no latency slots left "
                        f"under the {self.config.max_memory_usage_mb} MB memory ceiling"
                    )
                else:
                    self.warn(
                        f"Percentiles for {acc.label!r} estimated from {acc.reservoir.retained} "
                        f"of {acc.reservoir.seen} samples "
                        f"(memory ceiling {self.config.max_memory_usage_mb} MB)"
                    )
            _log.info(
                "aggregation_approximated",
                path=str(self.log.path),
                max_memory_usage_mb=self.config.max_memory_usage_mb,
            )
        if self.suppressed:
            self.warnings.append(f"... {self.suppressed} further warnings suppressed")

        memory_bytes = self.overall.reservoir.nbytes + sum(
            acc.reservoir.nbytes for acc in self.endpoints.values()
        )
        stats = AggregationStats(
            records_processed=self.processed,
            records_skipped=self.skipped,
            processing_time_ms=(time.perf_counter() - self.started) * 1000.0,
            memory_used_mb=memory_bytes / MIB,
            approximate=approximate,
        )
        snapshot = SummarySnapshot(
            name=self.config.name,
            created_at=int(time.time() * 1000),
            overall=overall,
            endpoints=endpoints,
            started_at=None if self.first_ts is None else int(self.first_ts),
            ended_at=None if self.last_ts is None else int(self.last_ts),
        )
        _log.info(
            "aggregation_finished",
            path=str(self.log.path),
            processed=stats.records_processed,
            skipped=stats.records_skipped,
            endpoints=len(endpoints),
            warnings=len(self.warnings),
        )
        return AggregationResult(
            snapshot=snapshot,
            stats=stats,
            warnings=self.warnings,
            time_series=self.time_series.points(),
            error_summary=self.error_summary.summary(self.processed),
        )


class StreamAggregator:
    """
    Single-pass, read-only aggregation of a sample log into a SummarySnapshot.

    Rows are read in bounded batches. With ``max_memory_usage_mb`` set, the
    latencies retained for percentiles are capped and percentiles become
    estimates once the cap is exceeded (see ``perftrend.metrics.reservoir``);
    the result reports this in ``stats.approximate`` and in ``warnings``.
    """

    def __init__(self, config: AggregationConfig | None = None) -> None:
        self.config = config or AggregationConfig()

    def aggregate(self, path: Path) -> AggregationResult:
        scan = _Scan(self.config, DurableLog(Path(path)))
        for batch in scan.log.iter_batches(self.config.batch_size):
            scan.consume(batch)
        return scan.finish()

    async def aggregate_async(self, path: Path) -> AggregationResult:
        """Like aggregate(), yielding to the event loop between batches so it can be cancelled."""
        scan = _Scan(self.config, DurableLog(Path(path)))
        batches = scan.log.iter_batches(self.config.batch_size)
        try:
            for batch in batches:
                scan.consume(batch)
                await asyncio.sleep(0)
        finally:
            batches.close()
        return scan.finish()
