from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any

from algo_engine.observability.context import get_trace_id
from algo_engine.security import redact_payload
from algo_engine.storage.paths import RuntimePaths

_WRITE_LOCK = threading.Lock()


def write_structured_log(paths: RuntimePaths, event_type: str, payload: dict[str, Any]) -> None:
    paths.ensure()
    row = redact_payload(
        {
            "event_type": event_type,
            "trace_id": get_trace_id(),
            "logged_at": datetime.now(timezone.utc).isoformat(),
            **payload,
        }
    )
    with _WRITE_LOCK:
        with paths.structured_log_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(row, sort_keys=True, default=str) + "\n")


def read_structured_log(paths: RuntimePaths, event_type: str | None = None) -> list[dict[str, Any]]:
    log_path = paths.structured_log_path
    if not log_path.exists():
        return []
    rows: list[dict[str, Any]] = []
    with log_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event_type is None or row.get("event_type") == event_type:
                rows.append(row)
    return rows


def read_structured_log_stats(paths: RuntimePaths) -> dict[str, Any]:
    request_count = 0
    error_count = 0
    durations: list[float] = []
    for row in read_structured_log(paths):
        if row.get("event_type") == "request.end":
            request_count += 1
            durations.append(float(row.get("duration_ms", 0.0)))
        if str(row.get("event_type", "")).endswith("error"):
            error_count += 1
    avg = sum(durations) / len(durations) if durations else 0.0
    return {
        "request_count": request_count,
        "error_count": error_count,
        "avg_request_duration_ms": round(avg, 4),
    }
