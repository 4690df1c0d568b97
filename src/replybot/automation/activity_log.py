from __future__ import annotations

import json
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import normalize_str


ENTRY_TYPES = {"comment_detected", "reply_generated", "reply_posted", "error", "info"}

_write_lock = threading.Lock()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clip_text(value: Any, limit: int) -> str:
    text = normalize_str(value).strip()
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit].rstrip()


def _sanitize_details(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not isinstance(details, dict):
        return None
    out: Dict[str, Any] = {}
    for raw_key, raw_value in details.items():
        key = normalize_str(raw_key).strip()
        if not key or raw_value is None:
            continue
        if isinstance(raw_value, (bool, int, float)):
            out[key] = raw_value
            continue
        if isinstance(raw_value, datetime):
            out[key] = raw_value.isoformat()
            continue
        if isinstance(raw_value, dict):
            nested = _sanitize_details(raw_value)
            if nested:
                out[key] = nested
            continue
        if isinstance(raw_value, (list, tuple)):
            items = []
            for item in list(raw_value)[:10]:
                if isinstance(item, dict):
                    nested_item = _sanitize_details(item)
                    if nested_item:
                        items.append(nested_item)
                elif isinstance(item, (bool, int, float)):
                    items.append(item)
                else:
                    clipped = _clip_text(item, 400)
                    if clipped:
                        items.append(clipped)
            if items:
                out[key] = items
            continue
        limit = 2200 if key in {"text", "reply", "comment_text"} else 400
        clipped = _clip_text(raw_value, limit)
        if clipped:
            out[key] = clipped
    return out or None


def append_activity(
    path: Path,
    *,
    entry_type: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    entry_type = normalize_str(entry_type).strip().lower()
    if entry_type not in ENTRY_TYPES:
        raise ValueError(f"unknown activity entry type: {entry_type!r}")
    row: Dict[str, Any] = {
        "ts": _utc_now_iso(),
        "type": entry_type,
        "message": _clip_text(message, 400),
    }
    safe_details = _sanitize_details(details)
    if safe_details:
        row["details"] = safe_details
    path.parent.mkdir(parents=True, exist_ok=True)
    with _write_lock:
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=True) + "\n")
    return row


def read_recent_activity(path: Path, limit: int = 50, entry_type: Optional[str] = None) -> List[Dict[str, Any]]:
    if limit <= 0 or not path.exists():
        return []
    rows: deque = deque(maxlen=limit)
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                row = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(row, dict):
                continue
            if entry_type and row.get("type") != entry_type:
                continue
            rows.append(row)
    return list(rows)
