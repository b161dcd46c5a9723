from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from perftrend.errors import ConfigError

FlushCallback = Callable[[int], None]
ErrorCallback = Callable[[Exception], None]

DEFAULT_PERCENTILES: tuple[float, ...] = (50.0, 90.0, 95.0, 99.0)
BUILD_NUMBER_ENV_VARS: tuple[str, ...] = ("BUILD_NUMBER", "GITHUB_RUN_NUMBER")
TREND_EPSILON_ENV_VAR = "PERFTREND_TREND_EPSILON_MS"


@dataclass(frozen=True, slots=True)
class CollectorConfig:
    output_path: Path
    buffer_size: int = 1000
    flush_interval_ms: float = 5000.0  # 0 disables the periodic flush
    source_label: str = "default"
    on_flush: FlushCallback | None = None
    on_error: ErrorCallback | None = None

    def __post_init__(self) -> None:
        if not str(self.output_path):
            msg = "output_path must not be empty"
            raise ConfigError(msg)
        if self.buffer_size <= 0:
            msg = f"buffer_size must be positive, got {self.buffer_size}"
            raise ConfigError(msg)
        if self.flush_interval_ms < 0:
            msg = f"flush_interval_ms must not be negative, got {self.flush_interval_ms}"
            raise ConfigError(msg)


@dataclass(frozen=True, slots=True)
class AggregationConfig:
    percentiles: tuple[float, ...] = DEFAULT_PERCENTILES
    apdex_threshold_ms: float = 500.0
    max_memory_usage_mb: float | None = None
    skip_data_validation: bool = False
    batch_size: int = 5000
    min_reservoir_size: int = 100
    random_seed: int = 0
    time_bucket_ms: int = 1000
    max_time_series_points: int = 10000
    max_warnings: int | None = None
    name: str = "perftrend"

    def __post_init__(self) -> None:
        for p in self.percentiles:
            if not 0 < p <= 100:
                msg = f"Percentiles must be in (0, 100], got {p}"
                raise ConfigError(msg)
        if not self.apdex_threshold_ms > 0:
            msg = f"apdex_threshold_ms must be positive, got {self.apdex_threshold_ms}"
            raise ConfigError(msg)
        if self.max_memory_usage_mb is not None and not self.max_memory_usage_mb > 0:
            msg = f"max_memory_usage_mb must be positive, got {self.max_memory_usage_mb}"
            raise ConfigError(msg)
        if self.batch_size <= 0 or self.min_reservoir_size <= 0:
            msg = "batch_size and min_reservoir_size must be positive"
            raise ConfigError(msg)
        if self.time_bucket_ms <= 0 or self.max_time_series_points < 2:
            msg = "time_bucket_ms must be positive and max_time_series_points at least 2"
            raise ConfigError(msg)
        if self.max_warnings is not None and self.max_warnings < 0:
            msg = f"max_warnings must not be negative, got {self.max_warnings}"
            raise ConfigError(msg)

    @property
    def bounded(self) -> bool:
        return self.max_memory_usage_mb is not None


@dataclass(frozen=True, slots=True)
class ComparisonConfig:
    previous_snapshot_path: Path
    trend_epsilon_ms: float = 10.0
    output_snapshot_path: Path | None = None
    build_number: str | None = None

    def __post_init__(self) -> None:
        if math.isnan(self.trend_epsilon_ms) or self.trend_epsilon_ms < 0:
            msg = f"trend_epsilon_ms must be a non-negative number, got {self.trend_epsilon_ms}"
            raise ConfigError(msg)

    @property
    def snapshot_output(self) -> Path:
        return self.output_snapshot_path or self.previous_snapshot_path

    @classmethod
    def from_env(
        cls,
        previous_snapshot_path: Path,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> ComparisonConfig:
        env = os.environ if environ is None else environ
        params: dict[str, Any] = {}
        for name in BUILD_NUMBER_ENV_VARS:
            if env.get(name):
                params["build_number"] = env[name]
                break
        raw_epsilon = env.get(TREND_EPSILON_ENV_VAR)
        if raw_epsilon:
            try:
                params["trend_epsilon_ms"] = float(raw_epsilon)
            except ValueError as exc:
                msg = f"{TREND_EPSILON_ENV_VAR} must be a number, got {raw_epsilon!r}"
                raise ConfigError(msg) from exc
        params.update(overrides)
        return cls(previous_snapshot_path=Path(previous_snapshot_path), **params)


@dataclass(frozen=True, slots=True)
class PerformanceThresholds:
    warning_ms: float = 300.0
    error_ms: float = 1000.0
    error_rate: float = 0.05

    def __post_init__(self) -> None:
        if self.warning_ms > self.error_ms:
            msg = "warning_ms must not exceed error_ms"
            raise ConfigError(msg)
        if not 0 <= self.error_rate <= 1:
            msg = f"error_rate must be within [0, 1], got {self.error_rate}"
            raise ConfigError(msg)
