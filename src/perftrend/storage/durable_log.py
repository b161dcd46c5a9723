from __future__ import annotations

import csv
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

import pandas as pd

from perftrend.errors import LogUnavailableError
from perftrend.logger import get_logger
from perftrend.metrics.models import SampleRecord

_log = get_logger(__name__)

LOG_COLUMNS: tuple[str, ...] = (
    "timestamp",
    "elapsed",
    "label",
    "responseCode",
    "success",
    "bytes",
    "sentBytes",
    "grpThreads",
    "allThreads",
    "Filename",
)


@dataclass(frozen=True, slots=True)
class LogRow:
    line_number: int
    fields: list[str]
    error: str | None = None


@dataclass(slots=True)
class DurableLog:
    """Append-only, JMeter-compatible CSV sample log with a single writer."""

    path: Path

    def __post_init__(self) -> None:
        self.path = Path(self.path)

    def exists(self) -> bool:
        return self.path.is_file()

    def _needs_header(self) -> bool:
        return self._size() == 0

    def append(self, records: Sequence[SampleRecord]) -> int:
        if not records:
            return 0
        self.path.parent.mkdir(parents=True, exist_ok=True)
        frame = pd.DataFrame(
            [
                {
                    "timestamp": int(r.timestamp),
                    "elapsed": r.elapsed_ms,
                    "label": r.label,
                    "responseCode": int(r.response_code),
                    "success": "true" if r.success else "false",
                    "bytes": int(r.bytes_received),
                    "sentBytes": int(r.bytes_sent),
                    "grpThreads": int(r.threads_active),
                    "allThreads": int(r.threads_total),
                    "Filename": r.source_label,
                }
                for r in records
            ],
            columns=list(LOG_COLUMNS),
        )
        text = frame.to_csv(
            header=self._needs_header(),
            index=False,
            lineterminator="\n",
            quoting=csv.QUOTE_MINIMAL,
        )
        data = text.encode("utf-8")
        start = self._size()
        # one write per batch, forced to disk before the caller drops the records
        try:
            with self.path.open("ab") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError:
            # a batch is either fully in the log or not at all
            self._rollback(start)
            raise
        return len(records)

    def _size(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def _rollback(self, size: int) -> None:
        try:
            os.truncate(self.path, size)
        except OSError as exc:
            _log.error("log_rollback_failed", path=str(self.path), size=size, error=str(exc))

    def iter_rows(self) -> Iterator[LogRow]:
        try:
            fh = self.path.open("r", encoding="utf-8", errors="replace", newline="")
        except OSError as exc:
            msg = f"Cannot read sample log {self.path}: {exc}"
            raise LogUnavailableError(msg) from exc
        with fh:
            reader = csv.reader(fh)
            try:
                next(reader)
            except StopIteration:
                return
            row_start = reader.line_num + 1
            while True:
                line_number = row_start
                try:
                    fields = next(reader)
                except StopIteration:
                    return
                except csv.Error as exc:
                    row_start = reader.line_num + 1
                    yield LogRow(line_number=line_number, fields=[], error=str(exc))
                    continue
                row_start = reader.line_num + 1
                if not fields or not any(f.strip() for f in fields):
                    continue
                yield LogRow(line_number=line_number, fields=fields)

    def iter_batches(self, batch_size: int) -> Iterator[list[LogRow]]:
        batch: list[LogRow] = []
        for row in self.iter_rows():
            batch.append(row)
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch
