from __future__ import annotations

import asyncio
import errno
import os
from pathlib import Path
from typing import Callable, Sequence

import pytest

from perftrend.collector import MetricBuffer
from perftrend.config import CollectorConfig
from perftrend.errors import CollectorClosedError, FlushError, InvalidSampleError
from perftrend.metrics.models import SampleRecord
from perftrend.storage.durable_log import DurableLog


class FlakyLog(DurableLog):
    """Fails the first ``failures`` appends with an OSError."""

    failures = 1

    def append(self, records: Sequence[SampleRecord]) -> int:
        if self.failures:
            self.failures -= 1
            raise OSError("No space left on device")
        return DurableLog.append(self, records)


def data_rows(path: Path) -> list[str]:
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("timestamp,")
    return lines[1:]


@pytest.mark.asyncio
async def test_size_trigger_flushes_in_background(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    flushed = asyncio.Event()
    counts: list[int] = []

    def on_flush(count: int) -> None:
        counts.append(count)
        flushed.set()

    config = CollectorConfig(tmp_path / "out.csv", buffer_size=3, flush_interval_ms=0, on_flush=on_flush)
    async with MetricBuffer(config) as buffer:
        for i in range(3):
            result = buffer.record(sample(offset_ms=i))
        assert result.pending == 3
        await asyncio.wait_for(flushed.wait(), timeout=5)
        assert counts == [3]
        assert buffer.pending == 0
    assert len(data_rows(config.output_path)) == 3


@pytest.mark.asyncio
async def test_periodic_flush(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    flushed = asyncio.Event()
    config = CollectorConfig(
        tmp_path / "out.csv",
        buffer_size=1000,
        flush_interval_ms=20,
        on_flush=lambda count: flushed.set(),
    )
    buffer = MetricBuffer(config)
    buffer.record(sample())
    await asyncio.wait_for(flushed.wait(), timeout=5)
    assert buffer.pending == 0
    await buffer.dispose()
    assert len(data_rows(config.output_path)) == 1


@pytest.mark.asyncio
async def test_explicit_flush_returns_count(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    config = CollectorConfig(tmp_path / "out.csv", buffer_size=100, flush_interval_ms=0)
    buffer = MetricBuffer(config)
    buffer.record(sample())
    buffer.record(sample(offset_ms=1))
    assert await buffer.flush() == 2
    assert await buffer.flush() == 0
    await buffer.dispose()
    stats = buffer.stats()
    assert stats.total_recorded == 2
    assert stats.total_flushed == 2
    assert stats.flush_count == 1
    assert not stats.active


@pytest.mark.asyncio
async def test_failed_flush_keeps_records_for_retry(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    errors: list[Exception] = []
    config = CollectorConfig(tmp_path / "out.csv", buffer_size=100, flush_interval_ms=0, on_error=errors.append)
    buffer = MetricBuffer(config, log=FlakyLog(config.output_path))
    buffer.record(sample())
    buffer.record(sample(offset_ms=1))

    with pytest.raises(FlushError) as excinfo:
        await buffer.flush()
    assert excinfo.value.pending == 2
    assert buffer.pending == 2
    assert len(errors) == 1
    assert isinstance(errors[0], FlushError)

    assert await buffer.flush() == 2
    assert buffer.pending == 0
    assert buffer.stats().error_count == 1
    await buffer.dispose()
    assert len(data_rows(config.output_path)) == 2


@pytest.mark.asyncio
async def test_record_after_dispose_raises(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    buffer = MetricBuffer(CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0))
    buffer.record(sample())
    await buffer.dispose()
    assert buffer.closed
    assert len(data_rows(tmp_path / "out.csv")) == 1
    with pytest.raises(CollectorClosedError):
        buffer.record(sample())


@pytest.mark.asyncio
async def test_concurrent_producers_lose_nothing(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    config = CollectorConfig(tmp_path / "out.csv", buffer_size=7, flush_interval_ms=1)
    buffer = MetricBuffer(config)

    async def produce(worker: int) -> None:
        for i in range(50):
            buffer.record(sample(label=f"GET /w{worker}", offset_ms=i))
            await asyncio.sleep(0)

    await asyncio.gather(*(produce(worker) for worker in range(10)))
    await buffer.dispose()

    rows = data_rows(config.output_path)
    assert len(rows) == 500
    stats = buffer.stats()
    assert stats.total_recorded == stats.total_flushed == 500
    assert stats.pending == 0


@pytest.mark.asyncio
async def test_mapping_samples(tmp_path: Path) -> None:
    buffer = MetricBuffer(CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0, source_label="smoke"))
    result = buffer.record({"timestamp": 1_700_000_000_000, "elapsedMs": 85, "label": "GET /", "responseCode": 999})
    assert result.warnings == ("Response code out of range: 999",)
    with pytest.raises(InvalidSampleError):
        buffer.record({"timestamp": 1_700_000_000_000, "elapsedMs": 85})
    assert buffer.pending == 1
    await buffer.dispose()
    row = data_rows(tmp_path / "out.csv")[0].split(",")
    assert row[3] == "999"
    assert row[4] == "false"
    assert row[9] == "smoke"


def test_oversized_buffer_is_clamped(tmp_path: Path) -> None:
    buffer = MetricBuffer(CollectorConfig(tmp_path / "out.csv", buffer_size=50_000))
    assert buffer.buffer_size == 10_000


def test_integrity_hash_tracks_recorded_samples(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    first = MetricBuffer(CollectorConfig(tmp_path / "a.csv", flush_interval_ms=0))
    second = MetricBuffer(CollectorConfig(tmp_path / "b.csv", flush_interval_ms=0))
    for buffer in (first, second):
        buffer.record(sample())
        buffer.record(sample(offset_ms=1))
    assert first.stats().integrity_hash == second.stats().integrity_hash
    assert len(first.stats().integrity_hash) == 16
    second.record(sample(offset_ms=2))
    assert first.stats().integrity_hash != second.stats().integrity_hash


@pytest.mark.asyncio
async def test_failed_dispose_can_be_retried(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    config = CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0)
    buffer = MetricBuffer(config, log=FlakyLog(config.output_path))
    buffer.record(sample())
    with pytest.raises(FlushError):
        await buffer.dispose()
    assert buffer.closed
    assert buffer.pending == 1
    await buffer.dispose()
    assert buffer.pending == 0
    assert len(data_rows(config.output_path)) == 1


class UnencodableLog(DurableLog):
    def append(self, records: Sequence[SampleRecord]) -> int:
        raise UnicodeEncodeError("utf-8", "\udcff", 0, 1, "surrogates not allowed")


@pytest.mark.asyncio
async def test_failed_sync_does_not_duplicate_rows(
    tmp_path: Path, sample: Callable[..., SampleRecord], monkeypatch: pytest.MonkeyPatch
) -> None:
    config = CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0)
    buffer = MetricBuffer(config)
    buffer.record(sample())
    buffer.record(sample(offset_ms=1))

    real_fsync = os.fsync
    calls: list[int] = []

    def fsync(fd: int) -> None:
        calls.append(fd)
        if len(calls) == 1:
            raise OSError(errno.EIO, "Input/output error")
        real_fsync(fd)

    monkeypatch.setattr(os, "fsync", fsync)
    with pytest.raises(FlushError):
        await buffer.flush()
    assert buffer.pending == 2

    await buffer.dispose()
    assert len(data_rows(config.output_path)) == 2


@pytest.mark.asyncio
async def test_encoding_failure_is_reported_as_flush_error(
    tmp_path: Path, sample: Callable[..., SampleRecord]
) -> None:
    errors: list[Exception] = []
    config = CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0, on_error=errors.append)
    buffer = MetricBuffer(config, log=UnencodableLog(config.output_path))
    buffer.record(sample())
    with pytest.raises(FlushError) as excinfo:
        await buffer.flush()
    assert isinstance(excinfo.value.__cause__, UnicodeEncodeError)
    assert len(errors) == 1
    assert buffer.stats().error_count == 1
    assert buffer.pending == 1


@pytest.mark.asyncio
async def test_periodic_flush_survives_write_errors(
    tmp_path: Path, sample: Callable[..., SampleRecord]
) -> None:
    errors: list[Exception] = []
    config = CollectorConfig(tmp_path / "out.csv", flush_interval_ms=5, on_error=errors.append)
    buffer = MetricBuffer(config, log=UnencodableLog(config.output_path))
    buffer.record(sample())

    async def repeated_failures() -> None:
        while len(errors) < 2:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(repeated_failures(), timeout=5)
    with pytest.raises(FlushError):
        await buffer.dispose()


def test_unencodable_label_rejected(tmp_path: Path, sample: Callable[..., SampleRecord]) -> None:
    buffer = MetricBuffer(CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0))
    with pytest.raises(InvalidSampleError):
        buffer.record(sample(label="GET /\udcff"))
    with pytest.raises(InvalidSampleError):
        buffer.record(sample(source_label="suite\ud800"))
    assert buffer.pending == 0


def test_blank_label_rejected(tmp_path: Path) -> None:
    buffer = MetricBuffer(CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0))
    with pytest.raises(InvalidSampleError):
        buffer.record({"timestamp": 1_700_000_000_000, "elapsedMs": 1, "label": "  "})
    assert buffer.pending == 0


@pytest.mark.asyncio
async def test_string_success_flags(tmp_path: Path) -> None:
    buffer = MetricBuffer(CollectorConfig(tmp_path / "out.csv", flush_interval_ms=0))
    base = {"timestamp": 1_700_000_000_000, "elapsedMs": 10, "label": "GET /"}
    buffer.record({**base, "responseCode": 500, "success": "false"})
    buffer.record({**base, "responseCode": 200, "success": "TRUE"})
    with pytest.raises(InvalidSampleError):
        buffer.record({**base, "success": "maybe"})
    await buffer.dispose()
    flags = [line.split(",")[4] for line in data_rows(tmp_path / "out.csv")]
    assert flags == ["false", "true"]
