from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from numbers import Real
from typing import Any, Mapping

from perftrend.errors import InvalidSampleError

NAN = float("nan")
OVERALL_LABEL = "ALL"
SNAPSHOT_VERSION = 1
_TRUE_STRINGS = frozenset({"true", "1", "yes"})
_FALSE_STRINGS = frozenset({"false", "0", "no"})

# mapping keys accepted by SampleRecord.from_mapping, snake_case first
_FIELD_ALIASES: Mapping[str, tuple[str, ...]] = {
    "timestamp": ("timestamp",),
    "elapsed_ms": ("elapsed_ms", "elapsedMs", "elapsed", "responseTime"),
    "label": ("label", "endpoint"),
    "response_code": ("response_code", "responseCode", "statusCode"),
    "success": ("success",),
    "bytes_received": ("bytes_received", "bytesReceived", "bytes"),
    "bytes_sent": ("bytes_sent", "bytesSent", "sentBytes"),
    "threads_active": ("threads_active", "threadsActive", "grpThreads"),
    "threads_total": ("threads_total", "threadsTotal", "allThreads"),
    "source_label": ("source_label", "sourceLabel", "testName", "Filename"),
}


class Trend(str, Enum):
    IMPROVED = "improved"
    DEGRADED = "degraded"
    STABLE = "stable"


@dataclass(frozen=True, slots=True)
class SampleRecord:
    timestamp: int
    elapsed_ms: float
    label: str
    response_code: int = 200
    success: bool = True
    bytes_received: int = 0
    bytes_sent: int = 0
    threads_active: int = 1
    threads_total: int = 1
    source_label: str = "default"

    @classmethod
    def create(
        cls,
        timestamp: int,
        elapsed_ms: float,
        label: str,
        response_code: int = 200,
        success: bool | None = None,
        **extra: Any,
    ) -> SampleRecord:
        if success is None:
            success = _is_number(response_code) and response_code < 400
        return cls(
            timestamp=timestamp,
            elapsed_ms=elapsed_ms,
            label=label,
            response_code=response_code,
            success=success,
            **extra,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], source_label: str = "default") -> SampleRecord:
        values = {name: _lookup(data, aliases) for name, aliases in _FIELD_ALIASES.items()}
        for required in ("timestamp", "elapsed_ms", "label"):
            if values[required] is None:
                msg = f"Sample is missing required field {required!r}"
                raise InvalidSampleError(msg)
        params: dict[str, Any] = {
            "timestamp": values["timestamp"],
            "elapsed_ms": values["elapsed_ms"],
            "label": values["label"],
            "response_code": 200 if values["response_code"] is None else values["response_code"],
            "success": _parse_bool(values["success"]),
            "source_label": values["source_label"] or source_label,
        }
        for name in ("bytes_received", "bytes_sent", "threads_active", "threads_total"):
            if values[name] is not None:
                params[name] = values[name]
        record = cls.create(**params)
        validate_sample(record)
        return record


def _lookup(data: Mapping[str, Any], aliases: tuple[str, ...]) -> Any:
    for key in aliases:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _parse_bool(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS | _FALSE_STRINGS:
        return value.strip().lower() in _TRUE_STRINGS
    if _is_number(value) and value in (0, 1):
        return bool(value)
    msg = f"Invalid success flag: {value!r}"
    raise InvalidSampleError(msg)


def _check_text(name: str, value: Any) -> None:
    if not isinstance(value, str):
        msg = f"{name} must be a string, got {value!r}"
        raise InvalidSampleError(msg)
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        msg = f"{name} is not valid UTF-8 text: {value!r}"
        raise InvalidSampleError(msg) from exc


def validate_sample(sample: SampleRecord) -> list[str]:
    """Raise InvalidSampleError for unusable samples; return warnings for odd ones."""
    if not _is_number(sample.timestamp) or not math.isfinite(sample.timestamp) or sample.timestamp <= 0:
        msg = f"Invalid timestamp: {sample.timestamp!r}"
        raise InvalidSampleError(msg)
    if not _is_number(sample.elapsed_ms) or not math.isfinite(sample.elapsed_ms):
        msg = f"Invalid elapsed time: {sample.elapsed_ms!r}"
        raise InvalidSampleError(msg)
    if not isinstance(sample.label, str) or not sample.label.strip():
        msg = "Sample label must be a non-empty string"
        raise InvalidSampleError(msg)
    _check_text("label", sample.label)
    _check_text("source_label", sample.source_label)
    if not isinstance(sample.success, bool):
        msg = f"Invalid success flag: {sample.success!r}"
        raise InvalidSampleError(msg)
    if not _is_number(sample.response_code):
        msg = f"Invalid response code: {sample.response_code!r}"
        raise InvalidSampleError(msg)
    for name in ("bytes_received", "bytes_sent", "threads_active", "threads_total"):
        value = getattr(sample, name)
        if not _is_number(value) or value < 0:
            msg = f"{name} must be a non-negative integer, got {value!r}"
            raise InvalidSampleError(msg)
    warnings: list[str] = []
    if sample.elapsed_ms < 0:
        warnings.append(f"Negative elapsed time: {sample.elapsed_ms}")
    if not 100 <= sample.response_code <= 599:
        warnings.append(f"Response code out of range: {sample.response_code}")
    return warnings


@dataclass(frozen=True, slots=True)
class ApdexResult:
    label: str
    score: float
    samples: int
    satisfied: int
    tolerating: int
    frustrated: int

    def __add__(self, other: ApdexResult) -> ApdexResult:
        samples = self.samples + other.samples
        satisfied = self.satisfied + other.satisfied
        tolerating = self.tolerating + other.tolerating
        score = (satisfied + tolerating / 2) / samples if samples else NAN
        return ApdexResult(
            label=self.label,
            score=score,
            samples=samples,
            satisfied=satisfied,
            tolerating=tolerating,
            frustrated=self.frustrated + other.frustrated,
        )


@dataclass(frozen=True, slots=True)
class EndpointStats:
    label: str
    samples: int
    average: float
    error_rate: float
    throughput: float
    min: float = NAN
    max: float = NAN
    std_dev: float = NAN
    error_count: int = 0
    percentiles: Mapping[float, float] = field(default_factory=dict)
    apdex: ApdexResult | None = None
    received_kb: float = NAN
    sent_kb: float = NAN
    avg_bytes: float = NAN
    approximate: bool = False

    def percentile(self, p: float) -> float:
        return self.percentiles.get(float(p), NAN)

    def to_comparison(self) -> Mapping[str, Any]:
        return {
            "average": self.average,
            "samples": self.samples,
            "errorRate": self.error_rate,
            "throughput": self.throughput,
        }


@dataclass(frozen=True, slots=True)
class SummarySnapshot:
    name: str
    created_at: int
    overall: EndpointStats
    endpoints: Mapping[str, EndpointStats]
    build_number: str | None = None
    started_at: int | None = None
    ended_at: int | None = None
    version: int = SNAPSHOT_VERSION

    @property
    def duration_sec(self) -> float:
        if self.started_at is None or self.ended_at is None:
            return NAN
        return (self.ended_at - self.started_at) / 1000.0

    def to_json(self) -> Mapping[str, Any]:
        return {
            "buildNumber": self.build_number,
            "timestamp": self.created_at,
            "version": self.version,
            "name": self.name,
            "endpoints": {label: stats.to_comparison() for label, stats in self.endpoints.items()},
            "summary": {
                "totalRequests": self.overall.samples,
                "averageResponseTime": self.overall.average,
                "errorRate": self.overall.error_rate,
                "throughput": self.overall.throughput,
            },
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> SummarySnapshot:
        if not isinstance(data, Mapping):
            msg = "Snapshot document must be a JSON object"
            raise ValueError(msg)
        endpoints_raw = data.get("endpoints")
        if not isinstance(endpoints_raw, Mapping):
            msg = "Snapshot document has no 'endpoints' object"
            raise ValueError(msg)
        endpoints = {
            str(label): _stats_from_json(str(label), entry)
            for label, entry in endpoints_raw.items()
        }
        summary = data.get("summary")
        if isinstance(summary, Mapping):
            overall = EndpointStats(
                label=OVERALL_LABEL,
                samples=_int(summary.get("totalRequests"), 0.0),
                average=_float(summary.get("averageResponseTime")),
                error_rate=_float(summary.get("errorRate")),
                throughput=_float(summary.get("throughput")),
            )
        else:
            overall = EndpointStats(label=OVERALL_LABEL, samples=0, average=NAN, error_rate=NAN, throughput=NAN)
        build_number = data.get("buildNumber")
        return cls(
            name=str(data.get("name") or ""),
            created_at=_int(data.get("timestamp"), 0.0),
            overall=overall,
            endpoints=endpoints,
            build_number=None if build_number is None else str(build_number),
            version=_int(data.get("version"), SNAPSHOT_VERSION),
        )


def _float(value: Any, default: float = NAN) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return default


def _int(value: Any, default: float) -> int:
    number = _float(value, default)
    return int(number) if math.isfinite(number) else int(default)


def _stats_from_json(label: str, entry: Any) -> EndpointStats:
    if not isinstance(entry, Mapping):
        msg = f"Snapshot entry for {label!r} must be an object"
        raise ValueError(msg)
    return EndpointStats(
        label=label,
        samples=_int(entry.get("samples"), 0.0),
        average=_float(entry.get("average")),
        error_rate=_float(entry.get("errorRate")),
        throughput=_float(entry.get("throughput")),
    )


@dataclass(frozen=True, slots=True)
class TrendRecord:
    label: str
    current_average: float
    previous_average: float
    delta: float
    delta_pct: float
    trend: Trend


@dataclass(frozen=True, slots=True)
class TimeSeriesPoint:
    timestamp: int
    response_time: float
    throughput: float
    error_rate: float
    active_threads: int


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    response_code: int
    count: int
    percentage: float
    message: str


@dataclass(frozen=True, slots=True)
class AggregationStats:
    records_processed: int
    records_skipped: int
    processing_time_ms: float
    memory_used_mb: float
    approximate: bool


@dataclass(frozen=True, slots=True)
class AggregationResult:
    snapshot: SummarySnapshot
    stats: AggregationStats
    warnings: list[str]
    time_series: list[TimeSeriesPoint] = field(default_factory=list)
    error_summary: list[ErrorInfo] = field(default_factory=list)
