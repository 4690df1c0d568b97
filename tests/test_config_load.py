import unittest
from pathlib import Path
from unittest.mock import patch

from replybot.automation.config import load_config, normalize_tone


class ConfigLoadTests(unittest.TestCase):
    def test_load_config_returns_config(self) -> None:
        cfg = load_config()
        self.assertIsNotNone(cfg)
        self.assertGreater(cfg.poll_seconds, 0)

    def test_env_overrides(self) -> None:
        env = {
            "REPLYBOT_POLL_SECONDS": "45",
            "REPLYBOT_MAX_COMMENTS_PER_CHECK": "3",
            "REPLYBOT_REPLY_TONE": "Very Friendly",
            "REPLYBOT_SELECTED_POST_IDS": " 111, 222 ,,",
            "REPLYBOT_MONITOR_ALL": "yes",
            "REPLYBOT_ACCOUNT_USERNAME": "@mybrand",
            "REPLYBOT_STATE_PATH": "/tmp/replybot/state.json",
            "REPLYBOT_LOG_PATH": "",
        }
        with patch.dict("os.environ", env):
            cfg = load_config()

        self.assertEqual(cfg.poll_seconds, 45)
        self.assertEqual(cfg.max_comments_per_check, 3)
        self.assertEqual(cfg.reply_tone, "very_friendly")
        self.assertEqual(cfg.selected_post_ids, ["111", "222"])
        self.assertTrue(cfg.monitor_all)
        self.assertEqual(cfg.account_username_hint, "mybrand")
        self.assertEqual(cfg.state_path, Path("/tmp/replybot/state.json"))
        self.assertIsNone(cfg.log_path)

    def test_normalize_tone_defaults_to_friendly(self) -> None:
        self.assertEqual(normalize_tone(None), "friendly")
        self.assertEqual(normalize_tone("  "), "friendly")
        self.assertEqual(normalize_tone("Professional"), "professional")


if __name__ == "__main__":
    unittest.main()
