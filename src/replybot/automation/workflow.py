"""One polling cycle of the reply automation.

A cycle walks a small state machine::

    DETECT_COMMENTS -> GENERATE_REPLY -> POST_REPLY -> ERROR_HANDLING
           ^                                 |               |
           +---------------------------------+---------------+

``DETECT_COMMENTS`` fetches candidates once per cycle. Re-entering it after a
post or a booked error continues draining the queue, and the cycle ends once
the queue is empty or the automation has been stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

from ..errors import AuthError, RateLimitError, ReplyDeliveryError
from ..models import AccountIdentity, Comment, DeliveryReceipt, ErrorRecord, Post, ReplyAttempt, normalize_str
from .config import DEFAULT_REPLY_TONE, normalize_tone
from .error_policy import (
    CATEGORY_NOT_FOUND,
    RETRY_WITH_BACKOFF,
    WAIT_AND_RETRY,
    ErrorResult,
    RetryExecutor,
)
from .state import AutomationState, utc_now
from .storage import Storage


class Stage(Enum):
    DETECT_COMMENTS = "detect_comments"
    GENERATE_REPLY = "generate_reply"
    POST_REPLY = "post_reply"
    ERROR_HANDLING = "error_handling"
    END = "end"


class ContentSource(Protocol):
    def get_account_info(self) -> Dict[str, Any]: ...

    def get_account_posts(self, limit: int = 10) -> List[Post]: ...

    def get_recent_comments(self, post_id: str) -> List[Comment]: ...

    def reply_to_comment_public(self, comment_id: str, text: str) -> Dict[str, Any]: ...

    def send_private_reply(self, comment_id: str, text: str) -> Dict[str, Any]: ...


class ReplySource(Protocol):
    def generate_reply(self, comment_text: str, tone: str, context: Optional[Dict[str, Any]] = None) -> str: ...


@dataclass
class CycleContext:
    detected: bool = False
    unhandled_error: Optional[ErrorRecord] = None


_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def identity_keys(author_id: Optional[str], username: Optional[str]) -> Set[str]:
    keys: Set[str] = set()
    raw_id = normalize_str(author_id).strip()
    if raw_id:
        keys.add(f"id:{raw_id}")
    name = normalize_str(username).strip().lstrip("@").casefold()
    if name:
        keys.add(f"name:{name}")
    return keys


def is_self_author(comment: Comment, self_keys: Set[str]) -> bool:
    if not self_keys:
        return False
    return bool(identity_keys(comment.author_id, comment.username) & self_keys)


def _reply_id(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    value = data.get("id") or data.get("message_id")
    return normalize_str(value) or None


def rejected_before_delivery(error: BaseException) -> bool:
    """True when the public reply call was refused outright, so nothing was posted."""
    return isinstance(error, ReplyDeliveryError) and isinstance(error.public_error, (RateLimitError, AuthError))


def truncate_text(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


class CommentWorkflow:
    def __init__(
        self,
        source: ContentSource,
        generator: ReplySource,
        storage: Storage,
        executor: RetryExecutor,
        *,
        tone: str = DEFAULT_REPLY_TONE,
        selected_post_ids: Optional[Iterable[str]] = None,
        monitor_all: bool = False,
        max_comments_per_check: int = 10,
        allowlist_fetch_limit: int = 100,
        monitor_all_fetch_limit: int = 25,
        recent_posts_fetch_limit: int = 5,
        private_reply_max_chars: int = 1000,
        account_username_hint: Optional[str] = None,
        on_fatal: Optional[Callable[[str], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.source = source
        self.generator = generator
        self.storage = storage
        self.executor = executor
        self.tone = normalize_tone(tone)
        self.selected_post_ids = [str(p) for p in (selected_post_ids or []) if str(p).strip()]
        self.monitor_all = bool(monitor_all)
        self.max_comments_per_check = max(1, int(max_comments_per_check))
        self.allowlist_fetch_limit = allowlist_fetch_limit
        self.monitor_all_fetch_limit = monitor_all_fetch_limit
        self.recent_posts_fetch_limit = recent_posts_fetch_limit
        self.private_reply_max_chars = private_reply_max_chars
        self.account_username_hint = account_username_hint
        self.on_fatal = on_fatal
        self.logger = logger or logging.getLogger("replybot.automation")
        self._handlers: Dict[Stage, Callable[[AutomationState, CycleContext], Stage]] = {
            Stage.DETECT_COMMENTS: self.detect_comments,
            Stage.GENERATE_REPLY: self.generate_reply,
            Stage.POST_REPLY: self.post_reply,
            Stage.ERROR_HANDLING: self.handle_errors,
        }

    def run_cycle(self, state: AutomationState) -> None:
        state.begin_cycle()
        cycle = CycleContext()
        stage = Stage.DETECT_COMMENTS
        while stage is not Stage.END:
            stage = self._handlers[stage](state, cycle)
        # Anything left was never attempted and is picked up again next cycle.
        state.pending_comments = []
        state.current = None

    # Detection

    def detect_comments(self, state: AutomationState, cycle: CycleContext) -> Stage:
        if not state.running:
            return Stage.END
        if cycle.detected:
            return Stage.GENERATE_REPLY if state.pending_comments else Stage.END

        cycle.detected = True
        state.last_check_time = utc_now()

        identity = self._resolve_identity(state)
        if identity is None:
            return Stage.END
        self_keys = identity_keys(identity.id, identity.username)

        context = {"operation": "get_account_posts", "stage": Stage.DETECT_COMMENTS.value}
        try:
            posts = self.executor.execute_with_retry(self._fetch_posts, context)
        except Exception as e:
            self._detection_failed(state, e, context)
            return Stage.END

        candidates: List[Comment] = []
        queued: Set[str] = set()
        fetched = 0
        for post in posts:
            context = {
                "operation": "get_recent_comments",
                "stage": Stage.DETECT_COMMENTS.value,
                "post_id": post.id,
            }
            try:
                comments = self.executor.execute_with_retry(
                    lambda post_id=post.id: self.source.get_recent_comments(post_id),
                    context,
                )
            except Exception as e:
                result = self._detection_failed(state, e, context)
                if result.should_stop:
                    return Stage.END
                continue

            fetched += len(comments)
            for comment in comments:
                if not comment.id or comment.id in queued:
                    continue
                if is_self_author(comment, self_keys):
                    self.logger.debug("Skipping own comment comment_id=%s", comment.id)
                    continue
                if comment.id in state.processed_comments:
                    continue
                if self.storage.is_comment_processed(comment.id):
                    state.processed_comments.add(comment.id)
                    continue
                queued.add(comment.id)
                candidates.append(comment.with_post(post))

        state.pending_comments = candidates[: self.max_comments_per_check]
        for comment in state.pending_comments:
            self.logger.info(
                "Comment detected comment_id=%s post_id=%s username=%s",
                comment.id,
                comment.post_id,
                comment.username,
            )
            self.storage.append_log(
                {
                    "type": "comment_detected",
                    "message": f"New comment from @{comment.username}",
                    "details": {
                        "comment_id": comment.id,
                        "post_id": comment.post_id,
                        "username": comment.username,
                        "text": comment.text,
                    },
                }
            )
        if state.pending_comments:
            state.bump("comments_detected", len(state.pending_comments))

        self.logger.info(
            "Detection finished posts=%s fetched=%s new=%s queued=%s",
            len(posts),
            fetched,
            len(candidates),
            len(state.pending_comments),
        )
        return Stage.GENERATE_REPLY if state.pending_comments else Stage.END

    def _fetch_posts(self) -> List[Post]:
        if self.selected_post_ids and not self.monitor_all:
            wanted = set(self.selected_post_ids)
            posts = [p for p in self.source.get_account_posts(self.allowlist_fetch_limit) if p.id in wanted]
        elif self.monitor_all:
            posts = self.source.get_account_posts(self.monitor_all_fetch_limit)
        else:
            posts = self.source.get_account_posts(self.recent_posts_fetch_limit)
        return sorted(posts, key=lambda p: p.timestamp or _OLDEST)

    def _resolve_identity(self, state: AutomationState) -> Optional[AccountIdentity]:
        hint = self.account_username_hint
        context = {"operation": "get_account_info", "stage": Stage.DETECT_COMMENTS.value}
        try:
            info = self.executor.execute_with_retry(self.source.get_account_info, context)
        except Exception as e:
            result = self._detection_failed(state, e, context)
            if result.should_stop or not hint:
                return None
            self.logger.warning("Account lookup failed; using configured username=%s", hint)
            return AccountIdentity(id=None, username=hint)

        info = info if isinstance(info, dict) else {}
        identity = AccountIdentity(
            id=normalize_str(info.get("id")) or None,
            username=normalize_str(info.get("username")) or hint,
        )
        if not identity.id and not identity.username:
            self.logger.warning("Account identity unknown; skipping detection")
            return None
        return identity

    def _detection_failed(self, state: AutomationState, error: Exception, context: Dict[str, Any]) -> ErrorResult:
        result = self.executor.handle_error(error, context)
        record = ErrorRecord(
            stage=Stage.DETECT_COMMENTS.value,
            message=str(error) or type(error).__name__,
            action=result.action,
        )
        state.errors.append(record)
        self._book_error(state, record)
        if result.should_stop:
            self._stop_automation(state, record)
        return result

    # Generation

    def generate_reply(self, state: AutomationState, cycle: CycleContext) -> Stage:
        if not state.pending_comments:
            return Stage.DETECT_COMMENTS
        comment = state.pending_comments[0]
        attempt = ReplyAttempt(comment_id=comment.id)
        state.current = attempt

        context = {
            "operation": "generate_reply",
            "stage": Stage.GENERATE_REPLY.value,
            "comment_id": comment.id,
        }
        reply_context = {
            "caption": comment.post_caption,
            "post_type": comment.post_type,
            "post_id": comment.post_id,
            "username": comment.username,
        }
        try:
            reply = self.executor.execute_with_retry(
                lambda: self.generator.generate_reply(comment.text, self.tone, reply_context),
                context,
            )
        except Exception as e:
            attempt.attempt_count = int(context.get("attempt", 1))
            attempt.last_error = str(e)
            self._settle_failure(state, cycle, Stage.GENERATE_REPLY, comment, e, context)
            return Stage.ERROR_HANDLING

        attempt.attempt_count = int(context.get("attempt", 1))
        reply = normalize_str(reply).strip()
        if not reply:
            self.logger.info("Empty reply; skipping comment_id=%s", comment.id)
            self._mark(state, comment, status="skipped")
            self.storage.append_log(
                {
                    "type": "info",
                    "message": f"No reply generated for @{comment.username}; comment skipped",
                    "details": {"comment_id": comment.id, "post_id": comment.post_id},
                }
            )
            state.pending_comments.pop(0)
            return Stage.ERROR_HANDLING

        attempt.reply_text = reply
        state.bump("replies_generated")
        self.logger.info("Reply generated comment_id=%s chars=%s tone=%s", comment.id, len(reply), self.tone)
        self.storage.append_log(
            {
                "type": "reply_generated",
                "message": f"Reply generated for @{comment.username}",
                "details": {
                    "comment_id": comment.id,
                    "post_id": comment.post_id,
                    "reply": reply,
                    "tone": self.tone,
                    "attempts": attempt.attempt_count,
                },
            }
        )
        return Stage.POST_REPLY

    # Posting

    def post_reply(self, state: AutomationState, cycle: CycleContext) -> Stage:
        attempt = state.current
        if not state.pending_comments or attempt is None or not attempt.reply_text:
            return Stage.ERROR_HANDLING
        comment = state.pending_comments[0]
        context = {
            "operation": "post_reply",
            "stage": Stage.POST_REPLY.value,
            "comment_id": comment.id,
        }
        try:
            receipt = self.deliver(comment.id, attempt.reply_text)
        except Exception as e:
            attempt.last_error = str(e)
            self._settle_failure(state, cycle, Stage.POST_REPLY, comment, e, context)
            return Stage.ERROR_HANDLING

        self._mark(
            state,
            comment,
            status="reply_posted",
            reply=attempt.reply_text,
            reply_id=receipt.reply_id,
            delivery=receipt.delivery,
        )
        state.bump("replies_posted")
        self.logger.info(
            "Reply posted comment_id=%s delivery=%s reply_id=%s",
            comment.id,
            receipt.delivery,
            receipt.reply_id,
        )
        self.storage.append_log(
            {
                "type": "reply_posted",
                "message": f"Replied to @{comment.username}",
                "details": {
                    "comment_id": comment.id,
                    "post_id": comment.post_id,
                    "reply": attempt.reply_text,
                    "reply_id": receipt.reply_id,
                    "delivery": receipt.delivery,
                },
            }
        )
        state.pending_comments.pop(0)
        state.current = None
        return Stage.DETECT_COMMENTS

    def deliver(self, comment_id: str, text: str) -> DeliveryReceipt:
        """Reply publicly, falling back to a private message to the commenter."""
        try:
            data = self.source.reply_to_comment_public(comment_id, text)
            return DeliveryReceipt(reply_id=_reply_id(data), delivery="public")
        except Exception as public_error:
            self.logger.warning(
                "Public reply failed comment_id=%s error=%s; trying private reply",
                comment_id,
                public_error,
            )
            private_text = truncate_text(text, self.private_reply_max_chars)
            try:
                data = self.source.send_private_reply(comment_id, private_text)
            except Exception as private_error:
                raise ReplyDeliveryError(public_error, private_error) from private_error
            return DeliveryReceipt(reply_id=_reply_id(data), delivery="private")

    # Error bookkeeping

    def handle_errors(self, state: AutomationState, cycle: CycleContext) -> Stage:
        record = cycle.unhandled_error
        if record is not None:
            self._book_error(state, record)
            cycle.unhandled_error = None
        state.current = None
        return Stage.DETECT_COMMENTS

    def _settle_failure(
        self,
        state: AutomationState,
        cycle: CycleContext,
        stage: Stage,
        comment: Comment,
        error: Exception,
        context: Dict[str, Any],
    ) -> ErrorResult:
        result = self.executor.handle_error(error, context)
        record = ErrorRecord(
            stage=stage.value,
            message=str(error) or type(error).__name__,
            action=result.action,
            comment_id=comment.id,
        )
        state.errors.append(record)
        cycle.unhandled_error = record

        possibly_posted = stage is Stage.POST_REPLY and not rejected_before_delivery(error)
        if possibly_posted:
            # The public call may have landed; never attempt this comment again.
            self._mark(state, comment, status="failed")

        if result.should_stop:
            state.pending_comments = []
            self._stop_automation(state, record)
        elif result.action == WAIT_AND_RETRY:
            self.logger.warning(
                "Rate limited; deferring comments count=%s to the next cycle",
                len(state.pending_comments),
            )
            state.pending_comments = []
        elif result.action == RETRY_WITH_BACKOFF and stage is Stage.GENERATE_REPLY:
            self.logger.info("Deferring comment_id=%s to the next cycle", comment.id)
            state.pending_comments.pop(0)
        else:
            # Final for this comment.
            if not possibly_posted:
                status = "skipped" if result.category == CATEGORY_NOT_FOUND else "failed"
                self._mark(state, comment, status=status)
            state.pending_comments.pop(0)
        return result

    def _book_error(self, state: AutomationState, record: ErrorRecord) -> None:
        state.bump("error_count")
        self.storage.append_log(
            {
                "type": "error",
                "message": f"Error in {record.stage}: {record.message}",
                "details": record.to_dict(),
            }
        )

    def _stop_automation(self, state: AutomationState, record: ErrorRecord) -> None:
        self.logger.error(
            "Stopping automation stage=%s comment_id=%s reason=%s",
            record.stage,
            record.comment_id,
            record.message,
        )
        if self.on_fatal is not None:
            self.on_fatal(record.message)
        else:
            state.running = False

    def _mark(
        self,
        state: AutomationState,
        comment: Comment,
        *,
        status: str,
        reply: Optional[str] = None,
        reply_id: Optional[str] = None,
        delivery: Optional[str] = None,
    ) -> None:
        state.processed_comments.add(comment.id)
        try:
            self.storage.mark_comment_processed(
                comment.id,
                post_id=comment.post_id,
                username=comment.username,
                text=comment.text,
                reply=reply,
                status=status,
                reply_id=reply_id,
                delivery=delivery,
            )
        except Exception:
            self.logger.exception("Failed to write processed marker comment_id=%s status=%s", comment.id, status)
