from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from perftrend.metrics.models import SampleRecord
from perftrend.storage.durable_log import LOG_COLUMNS

BASE_TS = 1_700_000_000_000


@pytest.fixture
def sample() -> Callable[..., SampleRecord]:
    def make(label: str = "GET /api/users", elapsed_ms: float = 120.0, offset_ms: int = 0, **extra: object) -> SampleRecord:
        return SampleRecord.create(BASE_TS + offset_ms, elapsed_ms, label, **extra)

    return make


@pytest.fixture
def raw_log(tmp_path: Path) -> Callable[[list[str]], Path]:
    """Write a log file from raw data lines, header included."""

    def write(lines: list[str]) -> Path:
        path = tmp_path / "samples.csv"
        path.write_text(",".join(LOG_COLUMNS) + "\n" + "".join(f"{line}\n" for line in lines), encoding="utf-8")
        return path

    return write
