import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..models import Comment, ErrorRecord, ReplyAttempt, parse_timestamp


STAT_KEYS = ("comments_detected", "replies_generated", "replies_posted", "error_count")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def empty_stats() -> Dict[str, int]:
    return {key: 0 for key in STAT_KEYS}


@dataclass
class AutomationState:
    """Working state of one automation instance.

    Only ``running``, ``last_check_time`` and ``stats`` are durable; the queue,
    the error list and the current attempt live for a single cycle.
    """

    running: bool = False
    last_check_time: Optional[datetime] = None
    stats: Dict[str, int] = field(default_factory=empty_stats)
    pending_comments: List[Comment] = field(default_factory=list)
    processed_comments: Set[str] = field(default_factory=set)
    errors: List[ErrorRecord] = field(default_factory=list)
    current: Optional[ReplyAttempt] = None

    def bump(self, key: str, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("stats counters never decrease")
        self.stats[key] = int(self.stats.get(key, 0)) + amount

    def begin_cycle(self) -> None:
        self.pending_comments = []
        self.errors = []
        self.current = None

    def to_persisted(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "last_check_time": self.last_check_time.isoformat() if self.last_check_time else None,
            "stats": dict(self.stats),
        }

    def restore(self, saved: Dict[str, Any]) -> None:
        stats = saved.get("stats")
        if isinstance(stats, dict):
            restored = empty_stats()
            for key in STAT_KEYS:
                try:
                    restored[key] = max(0, int(stats.get(key, 0) or 0))
                except (TypeError, ValueError):
                    restored[key] = 0
            self.stats = restored
        last_check = parse_timestamp(saved.get("last_check_time"))
        if last_check is not None:
            self.last_check_time = last_check


def load_state(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as f:
        state = json.load(f)
    if not isinstance(state, dict):
        return None
    # Older files stored the flag as "isActive".
    if "running" not in state:
        state["running"] = bool(state.get("isActive", False))
    if "stats" not in state:
        state["stats"] = empty_stats()
    if "last_check_time" not in state:
        state["last_check_time"] = state.get("lastCheckTime")
    return state


def save_state(path: Path, state: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, sort_keys=True)
    os.replace(tmp_path, path)
