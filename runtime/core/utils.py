"""Small utility helpers used across the core runtime."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

_STORAGE_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def format_storage_ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp; lexicographic order equals time order."""
    if dt.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    return dt.astimezone(timezone.utc).strftime(_STORAGE_TS_FORMAT)


def parse_storage_ts(raw: str) -> datetime:
    return datetime.strptime(raw, _STORAGE_TS_FORMAT).replace(tzinfo=timezone.utc)


def seconds(delta: timedelta) -> float:
    return float(delta.total_seconds())


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def deep_get(d: dict[str, Any], path: list[str]) -> Any:
    cur: Any = d
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            raise KeyError("missing path: " + ".".join(path))
        cur = cur[k]
    return cur
