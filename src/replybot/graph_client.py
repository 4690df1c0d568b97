import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from .errors import AuthError, PermanentError, TransientError, error_from_response
from .models import Comment, Post, extract_items


GRAPH_BASE_URL = "https://graph.instagram.com"
GRAPH_BASE_ENV = "INSTAGRAM_GRAPH_API_BASE"
CREDENTIALS_PATH = Path.home() / ".config" / "replybot" / "credentials.json"
_GRAPH_ALLOWED_PREFIXES = ("https://graph.instagram.com", "https://graph.facebook.com")

PUBLIC_REPLY_MAX_CHARS = 2200
PRIVATE_REPLY_MAX_CHARS = 1000

POST_FIELDS = "id,caption,media_type,permalink,timestamp,comments_count,like_count"
COMMENT_FIELDS = "id,text,username,timestamp,like_count,from"
ACCOUNT_FIELDS = "id,username,name,media_count,followers_count"

logger = logging.getLogger("replybot.graph")


def _sanitize_token(value: Any) -> str:
    return re.sub(r"\s+", "", str(value or ""))


@dataclass
class GraphCredentials:
    access_token: str
    account_id: str
    source: str = "unknown"

    @classmethod
    def load(cls) -> "GraphCredentials":
        """Load credentials from env or ~/.config/replybot/credentials.json.

        Priority:
        1. INSTAGRAM_ACCESS_TOKEN / INSTAGRAM_ACCOUNT_ID env vars
        2. credentials.json file
        """
        access_token = os.getenv("INSTAGRAM_ACCESS_TOKEN")
        account_id = os.getenv("INSTAGRAM_ACCOUNT_ID")
        source = "env:INSTAGRAM_ACCESS_TOKEN"

        if not access_token and CREDENTIALS_PATH.exists():
            with CREDENTIALS_PATH.open("r", encoding="utf-8") as f:
                data = json.load(f)
            access_token = data.get("access_token")
            account_id = account_id or data.get("account_id")
            source = f"file:{CREDENTIALS_PATH}"

        access_token = _sanitize_token(access_token)
        account_id = str(account_id or "").strip()

        if not access_token:
            raise AuthError(
                "Missing Instagram access token. Set INSTAGRAM_ACCESS_TOKEN or create "
                f"{CREDENTIALS_PATH} with an 'access_token' field."
            )
        if not account_id:
            raise AuthError(
                "Missing Instagram account id. Set INSTAGRAM_ACCOUNT_ID or add 'account_id' to "
                f"{CREDENTIALS_PATH}."
            )
        return cls(access_token=access_token, account_id=account_id, source=source)


class GraphClient:
    """Instagram Graph API client covering the calls the reply automation needs.

    SECURITY: the access token is only ever sent to the official Graph API hosts.
    """

    def __init__(
        self,
        credentials: Optional[GraphCredentials] = None,
        *,
        timeout: float = 10.0,
        public_reply_max_chars: int = PUBLIC_REPLY_MAX_CHARS,
        private_reply_max_chars: int = PRIVATE_REPLY_MAX_CHARS,
    ):
        self.credentials = credentials or GraphCredentials.load()
        env_base = os.getenv(GRAPH_BASE_ENV)
        self.base_url = self._normalize_base_url(env_base or GRAPH_BASE_URL)
        self.timeout = timeout
        self.public_reply_max_chars = public_reply_max_chars
        self.private_reply_max_chars = private_reply_max_chars

    def _normalize_base_url(self, raw: str) -> str:
        candidate = str(raw).strip().rstrip("/")
        if candidate.startswith(_GRAPH_ALLOWED_PREFIXES):
            return candidate
        return GRAPH_BASE_URL

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    def _params(self, **extra: Any) -> Dict[str, Any]:
        params: Dict[str, Any] = {"access_token": self.credentials.access_token}
        params.update({k: v for k, v in extra.items() if v is not None})
        return params

    def _raise_for_graph_error(self, resp: Any, operation: str) -> None:
        if resp.status_code < 400:
            return
        try:
            data = resp.json()
        except Exception:
            data = {}
        error = data.get("error") if isinstance(data, dict) else None
        if not isinstance(error, dict):
            error = {}
        message = error.get("message") or getattr(resp, "text", "") or "Unknown error"
        headers = getattr(resp, "headers", None) or {}
        raise error_from_response(
            resp.status_code,
            f"Graph API {operation} error {resp.status_code}: {message}",
            code=error.get("code"),
            subcode=error.get("error_subcode"),
            retry_after=headers.get("Retry-After"),
        )

    def _request(self, method: str, path: str, operation: str, **params: Any) -> Dict[str, Any]:
        call = requests.get if method == "GET" else requests.post
        try:
            resp = call(self._url(path), params=self._params(**params), timeout=self.timeout)
        except requests_exceptions.Timeout as e:
            raise TransientError(f"Timed out while contacting the Graph API for {operation}.") from e
        except requests_exceptions.ConnectionError as e:
            raise TransientError(f"Could not reach the Graph API for {operation}: {e}") from e
        self._raise_for_graph_error(resp, operation)
        try:
            data = resp.json()
        except ValueError as e:
            raise TransientError(f"Graph API {operation} returned a non-JSON body.") from e
        return data if isinstance(data, dict) else {"data": data}

    def get_account_info(self) -> Dict[str, Any]:
        return self._request(
            "GET",
            self.credentials.account_id,
            "get_account_info",
            fields=ACCOUNT_FIELDS,
        )

    def get_account_posts(self, limit: int = 10) -> List[Post]:
        data = self._request(
            "GET",
            f"{self.credentials.account_id}/media",
            "get_account_posts",
            fields=POST_FIELDS,
            limit=max(1, int(limit)),
        )
        posts = [Post.from_graph(item) for item in extract_items(data)]
        logger.debug("Fetched posts count=%s limit=%s", len(posts), limit)
        return [p for p in posts if p.id]

    def get_recent_comments(self, post_id: str) -> List[Comment]:
        if not str(post_id or "").strip():
            raise PermanentError("post_id must be provided")
        data = self._request("GET", f"{post_id}/comments", "get_recent_comments", fields=COMMENT_FIELDS)
        comments = [Comment.from_graph(item, post_id) for item in extract_items(data)]
        return [c for c in comments if c.id]

    def reply_to_comment_public(self, comment_id: str, text: str) -> Dict[str, Any]:
        text = str(text or "").strip()
        if not text:
            raise PermanentError("Reply text cannot be empty")
        if len(text) > self.public_reply_max_chars:
            raise PermanentError(
                f"Reply text exceeds the public reply limit ({self.public_reply_max_chars})"
            )
        data = self._request("POST", f"{comment_id}/replies", "reply_to_comment_public", message=text)
        logger.debug("Public reply sent comment_id=%s reply_id=%s", comment_id, data.get("id"))
        return data

    def send_private_reply(self, comment_id: str, text: str) -> Dict[str, Any]:
        text = str(text or "").strip()
        if not text:
            raise PermanentError("Private reply text cannot be empty")
        if len(text) > self.private_reply_max_chars:
            raise PermanentError(
                f"Private reply text exceeds the private reply limit ({self.private_reply_max_chars})"
            )
        data = self._request("POST", f"{comment_id}/private_replies", "send_private_reply", message=text)
        reply_id = data.get("id") or data.get("message_id")
        logger.debug("Private reply sent comment_id=%s reply_id=%s", comment_id, reply_id)
        return {"id": reply_id, **data}
