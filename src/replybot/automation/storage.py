"""Durable storage for the reply automation.

Three stores back the engine:

- processed-comment markers in SQLite (the authoritative dedup tier),
- the activity log as append-only JSONL,
- the automation state (running flag, last check time, counters) as JSON.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .activity_log import append_activity, read_recent_activity
from .state import load_state, save_state


PROCESSED_STATUSES = {"reply_posted", "failed", "skipped"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _connect(path: Path) -> sqlite3.Connection:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def init_processed_db(path: Path) -> None:
    conn = _connect(path)
    try:
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_comments (
                    comment_id TEXT PRIMARY KEY,
                    processed_at TEXT NOT NULL,
                    post_id TEXT,
                    username TEXT,
                    text TEXT,
                    reply TEXT,
                    reply_id TEXT,
                    delivery TEXT,
                    status TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_processed_at ON processed_comments(processed_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_processed_post ON processed_comments(post_id)")
    finally:
        conn.close()


class Storage:
    def __init__(self, state_path: Path, processed_db_path: Path, activity_log_path: Path):
        self.state_path = Path(state_path)
        self.processed_db_path = Path(processed_db_path)
        self.activity_log_path = Path(activity_log_path)
        self.stop_request_path = self.state_path.with_name(self.state_path.name + ".stop")
        self.reset_request_path = self.state_path.with_name(self.state_path.name + ".reset")
        self._state_lock = threading.Lock()
        init_processed_db(self.processed_db_path)

    def is_comment_processed(self, comment_id: str) -> bool:
        conn = _connect(self.processed_db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM processed_comments WHERE comment_id = ?",
                (str(comment_id),),
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    def mark_comment_processed(
        self,
        comment_id: str,
        *,
        post_id: Optional[str],
        username: Optional[str],
        text: Optional[str],
        reply: Optional[str],
        status: str,
        reply_id: Optional[str] = None,
        delivery: Optional[str] = None,
    ) -> bool:
        """Write the dedup marker. The first marker for a comment wins.

        Returns True when a new marker was written.
        """
        if status not in PROCESSED_STATUSES:
            raise ValueError(f"invalid processed status: {status!r}")
        conn = _connect(self.processed_db_path)
        try:
            with conn:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO processed_comments
                        (comment_id, processed_at, post_id, username, text, reply, reply_id, delivery, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(comment_id),
                        _utc_now_iso(),
                        post_id,
                        username,
                        text,
                        reply,
                        reply_id,
                        delivery,
                        status,
                    ),
                )
                inserted = cur.rowcount > 0
        finally:
            conn.close()
        return inserted

    def get_processed(self, comment_id: str) -> Optional[Dict[str, Any]]:
        conn = _connect(self.processed_db_path)
        try:
            row = conn.execute(
                "SELECT * FROM processed_comments WHERE comment_id = ?",
                (str(comment_id),),
            ).fetchone()
        finally:
            conn.close()
        return dict(row) if row is not None else None

    def processed_count(self) -> int:
        conn = _connect(self.processed_db_path)
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM processed_comments").fetchone()
        finally:
            conn.close()
        return int(row["n"])

    def recent_processed(self, limit: int = 20) -> List[Dict[str, Any]]:
        conn = _connect(self.processed_db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM processed_comments ORDER BY processed_at DESC LIMIT ?",
                (max(0, int(limit)),),
            ).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    def append_log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        return append_activity(
            self.activity_log_path,
            entry_type=entry.get("type", "info"),
            message=entry.get("message", ""),
            details=entry.get("details"),
        )

    def recent_logs(self, limit: int = 50, entry_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return read_recent_activity(self.activity_log_path, limit=limit, entry_type=entry_type)

    def save_automation_state(self, state: Dict[str, Any]) -> None:
        payload = dict(state)
        payload["saved_at"] = _utc_now_iso()
        with self._state_lock:
            save_state(self.state_path, payload)

    def load_automation_state(self) -> Optional[Dict[str, Any]]:
        return load_state(self.state_path)

    def request_stop(self) -> None:
        _touch(self.stop_request_path)

    def consume_stop_request(self) -> bool:
        return _consume(self.stop_request_path)

    def request_stats_reset(self) -> None:
        _touch(self.reset_request_path)

    def consume_stats_reset_request(self) -> bool:
        return _consume(self.reset_request_path)


# Request markers let the CLI signal a running `run` process.
def _touch(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_utc_now_iso() + "\n", encoding="utf-8")


def _consume(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
