from __future__ import annotations

import json
import math
import os
from pathlib import Path
from typing import Any

from perftrend.metrics.models import SummarySnapshot


def _clean(value: Any) -> Any:
    # JSON has no NaN; unknown statistics are written as null
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _clean(v) for k, v in value.items()}
    return value


def load_snapshot(path: Path) -> SummarySnapshot:
    """Read a snapshot file; raises OSError or ValueError when it is unusable."""
    with Path(path).open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    return SummarySnapshot.from_json(data)


def save_snapshot(path: Path, snapshot: SummarySnapshot) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(_clean(dict(snapshot.to_json())), indent=2)
    # write-then-rename so a crash never leaves a truncated history file
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        fh.write(payload)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp_path, path)
    return path
