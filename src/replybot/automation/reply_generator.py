from __future__ import annotations

import json
import logging
import random
import re
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from ..errors import AuthError, PermanentError, TransientError, error_from_response
from ..models import normalize_str
from .config import DEFAULT_REPLY_TONE, Config


MAX_COMMENT_CHARS = 1500
MAX_CAPTION_CHARS = 600
MAX_REPLY_CHARS = 2200

TONE_HINTS = {
    "friendly": "warm, positive and approachable",
    "professional": "polite, concise and professional",
    "casual": "relaxed and conversational",
    "enthusiastic": "upbeat and excited",
    "grateful": "thankful and appreciative",
    "witty": "light, playful and clever without being snarky",
    "engaging_friendly_curious": "super friendly, engaging and curious",
}

FALLBACK_REPLIES = [
    "Thank you so much! Really means a lot. What made you comment this?",
    "You're so sweet! Appreciate it! Which part did you vibe with the most?",
    "Thanks a ton! Love hearing from you! Anything specific you liked?",
    "That's so kind! What caught your attention here?",
    "You made my day! Tell me, what stood out the most to you?",
]

_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s*(.+?)\s*$")

logger = logging.getLogger("replybot.automation")


def build_reply_messages(comment_text: str, tone: str, context: Optional[Dict[str, Any]] = None) -> List[Dict[str, str]]:
    context = context or {}
    tone_key = normalize_str(tone).strip().lower() or DEFAULT_REPLY_TONE
    tone_hint = TONE_HINTS.get(tone_key, tone_key.replace("_", " "))
    caption = normalize_str(context.get("caption")).strip()[:MAX_CAPTION_CHARS]
    post_type = normalize_str(context.get("post_type")).strip()

    system = (
        "You are an Instagram creator replying to comments on your own posts. "
        f"Your tone is {tone_hint}. Replies must sound human, use at most two emojis, "
        "avoid hashtags and links, and may end with a short curious question. "
        "Never output JSON or code."
    )
    lines = [
        "Write 5 different replies to this comment.",
        f'Comment: "{normalize_str(comment_text).strip()[:MAX_COMMENT_CHARS]}"',
    ]
    if caption:
        lines.append(f'Post caption: "{caption}"')
    if post_type:
        lines.append(f"Post type: {post_type}")
    lines.append("Output format, exactly one reply per numbered line:\n1. reply\n2. reply\n3. reply\n4. reply\n5. reply")
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": "\n".join(lines)},
    ]


def looks_unusable(text: str) -> bool:
    value = normalize_str(text).strip()
    if not value:
        return True
    return value.startswith(("{", "[", "```")) or '"lc":' in value or "constructor" in value


def parse_numbered_replies(text: str) -> List[str]:
    replies: List[str] = []
    for line in normalize_str(text).splitlines():
        match = _NUMBERED_LINE.match(line)
        if not match:
            continue
        reply = match.group(1).strip().strip('"').strip()
        if len(reply) > 2:
            replies.append(reply[:MAX_REPLY_CHARS])
    return replies


class ReplyGenerator:
    def __init__(self, cfg: Config, rng: Optional[random.Random] = None):
        self.cfg = cfg
        self._rng = rng or random.Random()

    def _call_chat(self, messages: List[Dict[str, str]]) -> str:
        if not self.cfg.openai_api_key:
            raise AuthError("OPENAI_API_KEY not set")

        url = f"{self.cfg.openai_base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.cfg.openai_api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.cfg.openai_model,
            "messages": messages,
            "temperature": self.cfg.openai_temperature,
            "max_tokens": 300,
        }
        try:
            resp = requests.post(
                url,
                headers=headers,
                data=json.dumps(payload),
                timeout=self.cfg.openai_timeout_seconds,
            )
        except requests_exceptions.Timeout as e:
            raise TransientError("Timed out waiting for the reply model.") from e
        except requests_exceptions.ConnectionError as e:
            raise TransientError(f"Could not reach the reply model: {e}") from e

        if resp.status_code >= 400:
            retry_after = (getattr(resp, "headers", None) or {}).get("Retry-After")
            raise error_from_response(
                resp.status_code,
                f"OpenAI error {resp.status_code}: {resp.text}",
                retry_after=retry_after,
            )

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise TransientError(f"Malformed response from the reply model: {e}") from e
        return normalize_str(content)

    def generate_reply(self, comment_text: str, tone: str, context: Optional[Dict[str, Any]] = None) -> str:
        """Return one reply for ``comment_text``, or ``""`` when the model gave nothing usable."""
        if not normalize_str(comment_text).strip():
            raise PermanentError("Comment text is required")

        messages = build_reply_messages(comment_text, tone, context)
        logger.debug("LLM request model=%s tone=%s chars=%s", self.cfg.openai_model, tone, len(comment_text))
        raw = self._call_chat(messages)

        replies = [] if looks_unusable(raw) else parse_numbered_replies(raw)
        if not replies and raw.strip() and not looks_unusable(raw) and "\n" not in raw.strip():
            replies = [raw.strip()[:MAX_REPLY_CHARS]]
        if replies:
            logger.debug("LLM response candidates=%s", len(replies))
            return replies[0]

        if self.cfg.reply_fallback_enabled:
            logger.info("Reply model output unusable; using fallback template")
            return self._rng.choice(FALLBACK_REPLIES)
        logger.info("Reply model output unusable; returning empty reply")
        return ""
