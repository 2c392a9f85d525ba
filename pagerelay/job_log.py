"""Append finished-job outcomes to the ops JSONL log."""

from __future__ import annotations

from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Mapping

__all__ = ["append_job_event", "read_job_events"]


def append_job_event(
    log_path: Path,
    *,
    process_id: int,
    url: str,
    state: str,
    error: str | None = None,
    duration_ms: int | None = None,
    screenshot_bytes: int | None = None,
    extra: Mapping[str, Any] | None = None,
) -> None:
    """Write one JSON line describing how a job ended.

    ``error`` is only recorded for failed jobs; ``screenshot_bytes`` is omitted
    in text-only mode.
    """

    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "process_id": process_id,
        "url": url,
        "state": state,
    }
    if error:
        record["error"] = error
    if duration_ms is not None:
        record["duration_ms"] = duration_ms
    if screenshot_bytes is not None:
        record["screenshot_bytes"] = screenshot_bytes
    if extra:
        record.update(extra)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record))
        handle.write("\n")


def read_job_events(log_path: Path, *, limit: int | None = None) -> list[dict[str, Any]]:
    if not log_path.exists():
        return []
    events: list[dict[str, Any]] = []
    with log_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    if limit is not None:
        return events[-limit:]
    return events
