from typing import Any, Dict, Optional


# Graph API error codes, see developers.facebook.com/docs/graph-api/guides/error-handling
AUTH_ERROR_CODES = {102, 190, 2500}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613} | set(range(80001, 80015))
TRANSIENT_ERROR_CODES = {1, 2}
PERMISSION_ERROR_CODES = {10} | set(range(200, 300))
NOT_FOUND_SUBCODES = {33}


class ReplybotError(Exception):
    """Base class for failures reported by the content source or reply generator."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.retry_after = retry_after


class AuthError(ReplybotError):
    """Credential expired, revoked or missing. Automation must stop."""


class RateLimitError(ReplybotError):
    pass


class TransientError(ReplybotError):
    pass


class PermanentError(ReplybotError):
    """The request can never succeed as sent (malformed input, rejected content)."""


class PermissionDeniedError(PermanentError):
    pass


class NotFoundError(PermanentError):
    pass


class ReplyDeliveryError(ReplybotError):
    """Both the public reply and the private-message fallback failed."""

    def __init__(self, public_error: BaseException, private_error: BaseException):
        super().__init__(
            "Failed to reply (tried both public and private): "
            f"Public: {public_error}; Private: {private_error}"
        )
        self.public_error = public_error
        self.private_error = private_error


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def error_from_response(
    status_code: int,
    message: str,
    *,
    code: Any = None,
    subcode: Any = None,
    retry_after: Any = None,
) -> ReplybotError:
    """Map an HTTP status plus optional Graph error code to a typed exception."""
    code_i = _as_int(code)
    subcode_i = _as_int(subcode)
    retry_after_f: Optional[float] = None
    if retry_after is not None:
        try:
            retry_after_f = max(0.0, float(retry_after))
        except (TypeError, ValueError):
            retry_after_f = None
    kwargs: Dict[str, Any] = {
        "status_code": status_code,
        "code": code_i,
        "subcode": subcode_i,
        "retry_after": retry_after_f,
    }

    if code_i in AUTH_ERROR_CODES or status_code == 401:
        return AuthError(message, **kwargs)
    if code_i in RATE_LIMIT_ERROR_CODES or status_code == 429:
        return RateLimitError(message, **kwargs)
    if code_i in TRANSIENT_ERROR_CODES or status_code >= 500 or status_code == 408:
        return TransientError(message, **kwargs)
    if status_code == 404 or (code_i == 100 and subcode_i in NOT_FOUND_SUBCODES):
        return NotFoundError(message, **kwargs)
    if code_i in PERMISSION_ERROR_CODES or status_code == 403:
        return PermissionDeniedError(message, **kwargs)
    if status_code >= 400:
        return PermanentError(message, **kwargs)
    return TransientError(message, **kwargs)
