from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Mapping

from perftrend.config import CollectorConfig
from perftrend.errors import CollectorClosedError, FlushError
from perftrend.logger import get_logger
from perftrend.metrics.models import SampleRecord, validate_sample
from perftrend.storage.durable_log import DurableLog

_log = get_logger(__name__)

MAX_BUFFER_SIZE = 10_000
MAX_PENDING = 100_000


@dataclass(frozen=True, slots=True)
class RecordResult:
    pending: int
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CollectorStats:
    total_recorded: int
    total_flushed: int
    pending: int
    flush_count: int
    error_count: int
    active: bool
    started_at: float
    integrity_hash: str


class MetricBuffer:
    """
    Collects samples in memory and appends them to a DurableLog.

    ``record()`` never waits on disk. Flushes are triggered by size, by a
    periodic task, or explicitly, and run one at a time; records leave the
    buffer only after the log write has returned. Always ``await dispose()``
    (or use ``async with``) before the loop shuts down.
    """

    def __init__(self, config: CollectorConfig, log: DurableLog | None = None) -> None:
        self.config = config
        self.log = log or DurableLog(config.output_path)
        self.buffer_size = config.buffer_size
        if self.buffer_size > MAX_BUFFER_SIZE:
            _log.warning("buffer_size_clamped", requested=self.buffer_size, limit=MAX_BUFFER_SIZE)
            self.buffer_size = MAX_BUFFER_SIZE
        self._pending: list[SampleRecord] = []
        self._flush_lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()
        self._timer: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._flush_scheduled = False
        self._disposed = False
        self._total_recorded = 0
        self._total_flushed = 0
        self._flush_count = 0
        self._error_count = 0
        self._started_at = time.time()
        self._integrity = ""

    async def __aenter__(self) -> MetricBuffer:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    @property
    def pending(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._disposed

    def start(self) -> None:
        """Start the periodic flush task on the running loop (idempotent)."""
        if self._disposed or self._timer is not None or self.config.flush_interval_ms <= 0:
            return
        self._timer = asyncio.get_running_loop().create_task(self._periodic_flush())

    def record(self, sample: SampleRecord | Mapping[str, Any]) -> RecordResult:
        if self._disposed:
            msg = "Cannot record sample: collector has been disposed"
            raise CollectorClosedError(msg)
        if isinstance(sample, SampleRecord):
            record = sample
        else:
            record = SampleRecord.from_mapping(sample, source_label=self.config.source_label)
        warnings = validate_sample(record)
        self._pending.append(record)
        self._total_recorded += 1
        self._update_integrity(record)
        if self._timer is None:
            self._start_if_running()
        if len(self._pending) >= self.buffer_size or len(self._pending) >= MAX_PENDING:
            self._schedule_flush()
        return RecordResult(pending=len(self._pending), warnings=tuple(warnings))

    def _start_if_running(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self.start()

    def _update_integrity(self, record: SampleRecord) -> None:
        token = f"{record.timestamp}:{record.elapsed_ms}:{record.response_code}"
        self._integrity = hashlib.sha256((self._integrity + token).encode()).hexdigest()[:16]

    def _schedule_flush(self) -> None:
        if self._flush_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: records wait for the next explicit flush
            return
        self._flush_scheduled = True
        task = loop.create_task(self._flush_quietly())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _flush_quietly(self) -> None:
        try:
            await self.flush()
        except FlushError:
            # already reported to on_error and the log; records stay pending
            pass

    async def _periodic_flush(self) -> None:
        interval = self.config.flush_interval_ms / 1000.0
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self._flush_quietly()

    async def flush(self) -> int:
        """Write pending records; returns how many were written by this call."""
        async with self._flush_lock:
            self._flush_scheduled = False
            if not self._pending:
                return 0
            batch = list(self._pending)
            try:
                written = await self._write(batch)
            except (OSError, ValueError) as exc:
                # ValueError covers text that cannot be encoded for the log
                self._error_count += 1
                msg = f"Failed to flush {len(batch)} samples to {self.log.path}: {exc}"
                error = FlushError(msg, pending=len(self._pending))
                _log.error("flush_failed", path=str(self.log.path), pending=len(self._pending), error=str(exc))
                self._notify_error(error)
                raise error from exc
            self._notify_flush(written)
            return written

    async def _write(self, batch: list[SampleRecord]) -> int:
        write = asyncio.ensure_future(asyncio.to_thread(self.log.append, batch))
        try:
            written = await asyncio.shield(write)
        except asyncio.CancelledError:
            # the worker thread keeps writing; settle the batch before honouring the cancel
            await asyncio.wait([write])
            if not write.cancelled() and write.exception() is None:
                self._settle(len(batch), write.result())
            raise
        self._settle(len(batch), written)
        return written

    def _settle(self, batch_len: int, written: int) -> None:
        # records appended during the write stay queued behind this batch
        del self._pending[:batch_len]
        self._total_flushed += written
        self._flush_count += 1
        _log.debug("flush_completed", path=str(self.log.path), count=written, total=self._total_flushed)

    def _notify_flush(self, count: int) -> None:
        if self.config.on_flush is None:
            return
        try:
            self.config.on_flush(count)
        except Exception as exc:
            _log.warning("on_flush_callback_failed", error=str(exc))

    def _notify_error(self, error: Exception) -> None:
        if self.config.on_error is None:
            return
        try:
            self.config.on_error(error)
        except Exception as exc:
            _log.warning("on_error_callback_failed", error=str(exc))

    async def dispose(self) -> None:
        """Stop accepting samples, stop the timer and write everything still pending."""
        self._disposed = True
        self._stopping.set()
        if self._timer is not None:
            await self._timer
            self._timer = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.flush()

    def stats(self) -> CollectorStats:
        return CollectorStats(
            total_recorded=self._total_recorded,
            total_flushed=self._total_flushed,
            pending=len(self._pending),
            flush_count=self._flush_count,
            error_count=self._error_count,
            active=not self._disposed,
            started_at=self._started_at,
            integrity_hash=self._integrity,
        )
