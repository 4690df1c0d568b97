"""Error classification and bounded retry for calls to external collaborators.

Every call to the content source or the reply generator goes through
``RetryExecutor.execute_with_retry``. Retryable failures (transient and
rate-limited) are retried with exponential backoff up to ``max_attempts``;
the last error is then re-raised and the calling stage asks ``handle_error``
what to do with the work item.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from requests import exceptions as requests_exceptions

from ..errors import (
    AuthError,
    NotFoundError,
    PermanentError,
    RateLimitError,
    ReplyDeliveryError,
    TransientError,
    error_from_response,
)


SKIP_AND_CONTINUE = "skip_and_continue"
WAIT_AND_RETRY = "wait_and_retry"
RETRY_WITH_BACKOFF = "retry_with_backoff"
STOP_AUTOMATION = "stop_automation"

CATEGORY_AUTH = "auth"
CATEGORY_RATE_LIMIT = "rate_limit"
CATEGORY_TRANSIENT = "transient"
CATEGORY_NOT_FOUND = "not_found"
CATEGORY_INVALID = "invalid"

CATEGORY_ACTIONS = {
    CATEGORY_AUTH: STOP_AUTOMATION,
    CATEGORY_RATE_LIMIT: WAIT_AND_RETRY,
    CATEGORY_TRANSIENT: RETRY_WITH_BACKOFF,
    CATEGORY_NOT_FOUND: SKIP_AND_CONTINUE,
    CATEGORY_INVALID: SKIP_AND_CONTINUE,
}
RETRYABLE_CATEGORIES = {CATEGORY_TRANSIENT, CATEGORY_RATE_LIMIT}

# Lower rank wins when two failures are combined.
_SEVERITY = {
    CATEGORY_AUTH: 0,
    CATEGORY_RATE_LIMIT: 1,
    CATEGORY_TRANSIENT: 2,
    CATEGORY_NOT_FOUND: 3,
    CATEGORY_INVALID: 4,
}

_MESSAGE_PATTERNS = (
    (CATEGORY_AUTH, re.compile(
        r"oauth|access token|unauthori[sz]ed|token (has )?expired|session has (expired|been invalidated)"
        r"|invalid api key|incorrect api key|\b401\b",
        re.IGNORECASE,
    )),
    (CATEGORY_RATE_LIMIT, re.compile(r"rate.?limit|too many (requests|calls)|quota|\b429\b", re.IGNORECASE)),
    (CATEGORY_TRANSIENT, re.compile(
        r"timed? ?out|timeout|econnreset|econnrefused|connection (reset|refused|aborted)"
        r"|temporar(il)?y|unavailable|\b50[0234]\b",
        re.IGNORECASE,
    )),
    (CATEGORY_NOT_FOUND, re.compile(r"not found|does not exist|no longer available|\b404\b", re.IGNORECASE)),
    (CATEGORY_INVALID, re.compile(
        r"invalid parameter|cannot be empty|exceeds|unsupported|malformed|permission denied",
        re.IGNORECASE,
    )),
)

T = TypeVar("T")


@dataclass(frozen=True)
class ErrorResult:
    action: str
    should_stop: bool
    category: str
    message: str


def classify_error(error: BaseException) -> str:
    if isinstance(error, ReplyDeliveryError):
        parts = [classify_error(error.public_error), classify_error(error.private_error)]
        return min(parts, key=lambda c: _SEVERITY[c])
    if isinstance(error, AuthError):
        return CATEGORY_AUTH
    if isinstance(error, RateLimitError):
        return CATEGORY_RATE_LIMIT
    if isinstance(error, TransientError):
        return CATEGORY_TRANSIENT
    if isinstance(error, NotFoundError):
        return CATEGORY_NOT_FOUND
    if isinstance(error, PermanentError):
        return CATEGORY_INVALID
    if isinstance(error, requests_exceptions.HTTPError) and error.response is not None:
        return classify_error(error_from_response(error.response.status_code, str(error)))
    if isinstance(error, (requests_exceptions.Timeout, requests_exceptions.ConnectionError)):
        return CATEGORY_TRANSIENT
    if isinstance(error, (TimeoutError, ConnectionError)):
        return CATEGORY_TRANSIENT

    message = str(error)
    for category, pattern in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return category
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return CATEGORY_INVALID
    return CATEGORY_TRANSIENT


def _describe(context: Optional[Dict[str, Any]]) -> str:
    if not context:
        return ""
    return " ".join(f"{k}={v}" for k, v in context.items() if v is not None and k != "attempt")


class RetryExecutor:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_seconds = max(0.0, float(base_delay_seconds))
        self.max_delay_seconds = max(self.base_delay_seconds, float(max_delay_seconds))
        self._sleep = sleep
        self.logger = logger or logging.getLogger("replybot.automation")

    def backoff_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        delay = min(self.base_delay_seconds * (2 ** max(0, attempt - 1)), self.max_delay_seconds)
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = min(max(delay, float(retry_after)), self.max_delay_seconds)
        return delay

    def execute_with_retry(self, call: Callable[[], T], context: Optional[Dict[str, Any]] = None) -> T:
        """Run ``call`` until it succeeds, fails permanently, or the attempt ceiling is hit.

        ``context["attempt"]`` is updated with the number of attempts made.
        """
        context = context if context is not None else {}
        previous_delay = 0.0
        attempt = 0
        while True:
            attempt += 1
            context["attempt"] = attempt
            try:
                return call()
            except Exception as e:
                category = classify_error(e)
                if category not in RETRYABLE_CATEGORIES or attempt >= self.max_attempts:
                    self.logger.debug(
                        "Giving up %s attempts=%s category=%s error=%s",
                        _describe(context),
                        attempt,
                        category,
                        e,
                    )
                    raise
                delay = max(self.backoff_delay(attempt, e), previous_delay)
                previous_delay = delay
                self.logger.warning(
                    "Retrying %s attempt=%s/%s category=%s delay_seconds=%.2f error=%s",
                    _describe(context),
                    attempt,
                    self.max_attempts,
                    category,
                    delay,
                    e,
                )
                self._sleep(delay)

    def handle_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> ErrorResult:
        category = classify_error(error)
        action = CATEGORY_ACTIONS[category]
        result = ErrorResult(
            action=action,
            should_stop=action == STOP_AUTOMATION,
            category=category,
            message=str(error),
        )
        log = self.logger.error if result.should_stop else self.logger.warning
        log(
            "Error classified %s category=%s action=%s error=%s",
            _describe(context),
            category,
            action,
            error,
        )
        return result
