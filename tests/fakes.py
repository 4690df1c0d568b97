import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from replybot.automation.error_policy import RetryExecutor
from replybot.automation.storage import Storage
from replybot.models import Comment, Post


BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_post(post_id: str, minutes: int = 0, caption: str = "") -> Post:
    return Post(id=post_id, caption=caption or f"caption {post_id}", type="IMAGE", timestamp=BASE_TIME + timedelta(minutes=minutes))


def make_comment(comment_id: str, post_id: str, username: str = "fan", text: str = "love this", author_id: Optional[str] = None) -> Comment:
    return Comment(id=comment_id, post_id=post_id, username=username, text=text, author_id=author_id)


class FakeSource:
    """In-memory content source; errors are keyed by operation and id."""

    def __init__(self, posts: List[Post], comments: Dict[str, List[Comment]], account: Optional[Dict[str, Any]] = None):
        self.posts = posts
        self.comments = comments
        self.account = account if account is not None else {"id": "999", "username": "mybrand"}
        self.account_error: Optional[Exception] = None
        self.comment_errors: Dict[str, Exception] = {}
        self.public_errors: Dict[str, Exception] = {}
        self.private_errors: Dict[str, Exception] = {}
        self.post_limits: List[int] = []
        self.comment_calls: List[str] = []
        self.public_calls: List[tuple] = []
        self.private_calls: List[tuple] = []

    def get_account_info(self) -> Dict[str, Any]:
        if self.account_error is not None:
            raise self.account_error
        return dict(self.account)

    def get_account_posts(self, limit: int = 10) -> List[Post]:
        self.post_limits.append(limit)
        return list(self.posts)[:limit]

    def get_recent_comments(self, post_id: str) -> List[Comment]:
        self.comment_calls.append(post_id)
        if post_id in self.comment_errors:
            raise self.comment_errors[post_id]
        return list(self.comments.get(post_id, []))

    def reply_to_comment_public(self, comment_id: str, text: str) -> Dict[str, Any]:
        self.public_calls.append((comment_id, text))
        if comment_id in self.public_errors:
            raise self.public_errors[comment_id]
        return {"id": f"reply-{comment_id}"}

    def send_private_reply(self, comment_id: str, text: str) -> Dict[str, Any]:
        self.private_calls.append((comment_id, text))
        if comment_id in self.private_errors:
            raise self.private_errors[comment_id]
        return {"id": f"dm-{comment_id}"}

    def reply_calls_for(self, comment_id: str) -> int:
        return sum(1 for cid, _ in self.public_calls if cid == comment_id)


class FakeGenerator:
    def __init__(self, replies: Optional[Dict[str, Any]] = None, default: str = "Thanks so much!"):
        self.replies = replies or {}
        self.default = default
        self.calls: List[tuple] = []

    def generate_reply(self, comment_text: str, tone: str, context: Optional[Dict[str, Any]] = None) -> str:
        self.calls.append((comment_text, tone, dict(context or {})))
        value = self.replies.get(comment_text, self.default)
        if isinstance(value, Exception):
            raise value
        return value


class FakeTimer:
    created: List["FakeTimer"] = []

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function(*self.args, **self.kwargs)


class StorageTestCase:
    """Mixin giving each test a real Storage in a temporary directory."""

    def make_storage(self) -> Storage:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        return self.storage_at(Path(self._tmp.name))

    @staticmethod
    def storage_at(root: Path) -> Storage:
        return Storage(root / "automation-state.json", root / "processed.db", root / "activity.jsonl")

    @staticmethod
    def make_executor(max_attempts: int = 3) -> "RecordingExecutor":
        return RecordingExecutor(max_attempts=max_attempts)


class RecordingExecutor(RetryExecutor):
    def __init__(self, max_attempts: int = 3):
        self.sleeps: List[float] = []
        super().__init__(max_attempts=max_attempts, base_delay_seconds=1.0, max_delay_seconds=8.0, sleep=self.sleeps.append)
