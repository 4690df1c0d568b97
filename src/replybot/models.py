from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def normalize_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse Graph API timestamps such as ``2024-05-01T10:22:33+0000``."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = normalize_str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Python < 3.11 does not accept +0000 offsets.
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def extract_items(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, dict):
        return []
    for key in ("data", "items", "results"):
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


@dataclass(frozen=True)
class Post:
    id: str
    caption: str = ""
    type: str = ""
    timestamp: Optional[datetime] = None
    permalink: Optional[str] = None
    comment_count: int = 0

    @classmethod
    def from_graph(cls, item: Dict[str, Any]) -> "Post":
        return cls(
            id=normalize_str(item.get("id")),
            caption=normalize_str(item.get("caption")),
            type=normalize_str(item.get("media_type") or item.get("type")),
            timestamp=parse_timestamp(item.get("timestamp")),
            permalink=item.get("permalink"),
            comment_count=int(item.get("comments_count") or 0),
        )


@dataclass(frozen=True)
class Comment:
    id: str
    post_id: str
    username: str
    text: str
    timestamp: Optional[datetime] = None
    post_caption: str = ""
    post_type: str = ""
    author_id: Optional[str] = None
    like_count: int = 0

    @classmethod
    def from_graph(cls, item: Dict[str, Any], post_id: str) -> "Comment":
        author = item.get("from") if isinstance(item.get("from"), dict) else {}
        username = item.get("username") or author.get("username")
        author_id = author.get("id")
        return cls(
            id=normalize_str(item.get("id")),
            post_id=normalize_str(post_id),
            username=normalize_str(username),
            text=normalize_str(item.get("text")),
            timestamp=parse_timestamp(item.get("timestamp")),
            author_id=normalize_str(author_id) or None,
            like_count=int(item.get("like_count") or 0),
        )

    def with_post(self, post: Post) -> "Comment":
        return replace(self, post_caption=post.caption, post_type=post.type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "post_id": self.post_id,
            "username": self.username,
            "text": self.text,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "post_caption": self.post_caption,
            "post_type": self.post_type,
        }


@dataclass(frozen=True)
class AccountIdentity:
    id: Optional[str]
    username: Optional[str]


@dataclass
class ReplyAttempt:
    comment_id: str
    reply_text: Optional[str] = None
    attempt_count: int = 0
    last_error: Optional[str] = None


@dataclass(frozen=True)
class ErrorRecord:
    stage: str
    message: str
    action: str
    comment_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "message": self.message,
            "action": self.action,
            "comment_id": self.comment_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class DeliveryReceipt:
    reply_id: Optional[str]
    delivery: str  # "public" or "private"
