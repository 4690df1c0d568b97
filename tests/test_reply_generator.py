import json
import random
import unittest
from dataclasses import replace
from unittest.mock import patch

from replybot.automation.config import load_config
from replybot.automation.reply_generator import (
    FALLBACK_REPLIES,
    ReplyGenerator,
    build_reply_messages,
    looks_unusable,
    parse_numbered_replies,
)
from replybot.errors import AuthError, PermanentError, RateLimitError, TransientError


class _Resp:
    def __init__(self, status_code=200, payload=None, text="", headers=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self.text = text
        self.headers = headers or {}

    def json(self):
        return self._payload


def _chat(content):
    return _Resp(payload={"choices": [{"message": {"content": content}}]})


def _cfg(**overrides):
    with patch.dict("os.environ", {"OPENAI_API_KEY": "sk-test"}):
        cfg = load_config()
    return replace(cfg, **overrides)


class ParsingTests(unittest.TestCase):
    def test_parse_numbered_replies(self):
        text = 'Here you go:\n1. "Thank you!"\n2) So glad you like it\n3. ok\n\n4. Means a lot'
        self.assertEqual(
            parse_numbered_replies(text),
            ["Thank you!", "So glad you like it", "Means a lot"],
        )

    def test_looks_unusable(self):
        self.assertTrue(looks_unusable(""))
        self.assertTrue(looks_unusable('{"reply": "hi"}'))
        self.assertTrue(looks_unusable("[1, 2]"))
        self.assertFalse(looks_unusable("1. Thanks!"))

    def test_prompt_carries_tone_and_caption(self):
        messages = build_reply_messages("love it", "grateful", {"caption": "New drop", "post_type": "REELS"})
        self.assertIn("thankful", messages[0]["content"])
        self.assertIn('"love it"', messages[1]["content"])
        self.assertIn('Post caption: "New drop"', messages[1]["content"])
        self.assertIn("Post type: REELS", messages[1]["content"])


class ReplyGeneratorTests(unittest.TestCase):
    @patch("replybot.automation.reply_generator.requests.post")
    def test_returns_first_numbered_reply(self, mock_post):
        mock_post.return_value = _chat("1. Thanks so much!\n2. Appreciate you!\n3. You rock")

        reply = ReplyGenerator(_cfg()).generate_reply("love this", "friendly", {"caption": "Beach"})

        self.assertEqual(reply, "Thanks so much!")
        url = mock_post.call_args.args[0]
        self.assertTrue(url.endswith("/chat/completions"))
        self.assertEqual(mock_post.call_args.kwargs["headers"]["Authorization"], "Bearer sk-test")
        payload = json.loads(mock_post.call_args.kwargs["data"])
        self.assertEqual(payload["model"], "gpt-4o-mini")

    @patch("replybot.automation.reply_generator.requests.post")
    def test_single_line_answer_is_used_as_is(self, mock_post):
        mock_post.return_value = _chat("Thank you, that means a lot!")
        self.assertEqual(ReplyGenerator(_cfg()).generate_reply("nice", "casual"), "Thank you, that means a lot!")

    @patch("replybot.automation.reply_generator.requests.post")
    def test_unusable_output_returns_empty_string(self, mock_post):
        mock_post.return_value = _chat('{"lc": 1, "type": "constructor"}')
        self.assertEqual(ReplyGenerator(_cfg()).generate_reply("nice", "casual"), "")

    @patch("replybot.automation.reply_generator.requests.post")
    def test_unusable_output_uses_fallback_when_enabled(self, mock_post):
        mock_post.return_value = _chat("")
        generator = ReplyGenerator(_cfg(reply_fallback_enabled=True), rng=random.Random(3))
        self.assertIn(generator.generate_reply("nice", "casual"), FALLBACK_REPLIES)

    @patch("replybot.automation.reply_generator.requests.post")
    def test_http_errors_are_typed(self, mock_post):
        generator = ReplyGenerator(_cfg())
        mock_post.return_value = _Resp(401, text="invalid api key")
        with self.assertRaises(AuthError):
            generator.generate_reply("nice", "casual")
        mock_post.return_value = _Resp(429, text="rate limited", headers={"Retry-After": "2"})
        with self.assertRaises(RateLimitError):
            generator.generate_reply("nice", "casual")
        mock_post.return_value = _Resp(500, text="oops")
        with self.assertRaises(TransientError):
            generator.generate_reply("nice", "casual")
        mock_post.return_value = _Resp(200, payload={"choices": []})
        with self.assertRaises(TransientError):
            generator.generate_reply("nice", "casual")

    def test_missing_api_key_is_an_auth_error(self):
        with self.assertRaises(AuthError):
            ReplyGenerator(_cfg(openai_api_key=None)).generate_reply("nice", "casual")

    def test_blank_comment_is_rejected(self):
        with self.assertRaises(PermanentError):
            ReplyGenerator(_cfg()).generate_reply("   ", "casual")


if __name__ == "__main__":
    unittest.main()
