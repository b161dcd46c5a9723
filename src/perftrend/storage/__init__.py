from __future__ import annotations

from perftrend.storage.durable_log import LOG_COLUMNS, DurableLog, LogRow
from perftrend.storage.snapshots import load_snapshot, save_snapshot

__all__ = ["LOG_COLUMNS", "DurableLog", "LogRow", "load_snapshot", "save_snapshot"]
