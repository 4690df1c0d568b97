from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import os


DEFAULT_REPLY_TONE = "friendly"


@dataclass
class Config:
    poll_seconds: int
    max_comments_per_check: int
    reply_tone: str
    selected_post_ids: List[str]
    monitor_all: bool
    allowlist_fetch_limit: int
    monitor_all_fetch_limit: int
    recent_posts_fetch_limit: int
    retry_max_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    public_reply_max_chars: int
    private_reply_max_chars: int
    state_path: Path
    processed_db_path: Path
    activity_log_path: Path
    account_username_hint: Optional[str]
    graph_timeout_seconds: float
    openai_api_key: Optional[str]
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    openai_timeout_seconds: float
    reply_fallback_enabled: bool
    log_level: str
    log_path: Optional[Path]


def _parse_csv_env(env_key: str) -> List[str]:
    value = os.getenv(env_key, "")
    if not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool_env(env_key: str, default: str) -> bool:
    return os.getenv(env_key, default).strip().lower() in {"1", "true", "yes"}


def normalize_tone(value: Optional[str]) -> str:
    tone = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    return tone or DEFAULT_REPLY_TONE


def load_config() -> Config:
    poll_seconds = int(os.getenv("REPLYBOT_POLL_SECONDS", "30"))
    max_comments_per_check = int(os.getenv("REPLYBOT_MAX_COMMENTS_PER_CHECK", "10"))
    reply_tone = normalize_tone(os.getenv("REPLYBOT_REPLY_TONE", DEFAULT_REPLY_TONE))
    selected_post_ids = _parse_csv_env("REPLYBOT_SELECTED_POST_IDS")
    monitor_all = _parse_bool_env("REPLYBOT_MONITOR_ALL", "0")
    allowlist_fetch_limit = int(os.getenv("REPLYBOT_ALLOWLIST_FETCH_LIMIT", "100"))
    monitor_all_fetch_limit = int(os.getenv("REPLYBOT_MONITOR_ALL_FETCH_LIMIT", "25"))
    recent_posts_fetch_limit = int(os.getenv("REPLYBOT_RECENT_POSTS_FETCH_LIMIT", "5"))

    retry_max_attempts = int(os.getenv("REPLYBOT_RETRY_MAX_ATTEMPTS", "3"))
    retry_base_delay_seconds = float(os.getenv("REPLYBOT_RETRY_BASE_DELAY_SECONDS", "1.0"))
    retry_max_delay_seconds = float(os.getenv("REPLYBOT_RETRY_MAX_DELAY_SECONDS", "30"))

    public_reply_max_chars = int(os.getenv("REPLYBOT_PUBLIC_REPLY_MAX_CHARS", "2200"))
    private_reply_max_chars = int(os.getenv("REPLYBOT_PRIVATE_REPLY_MAX_CHARS", "1000"))

    state_path = Path(os.getenv("REPLYBOT_STATE_PATH", "memory/automation-state.json"))
    processed_db_path = Path(os.getenv("REPLYBOT_PROCESSED_DB_PATH", "memory/processed-comments.db"))
    activity_log_path = Path(os.getenv("REPLYBOT_ACTIVITY_LOG_PATH", "memory/activity-log.jsonl"))

    account_username_hint = os.getenv("REPLYBOT_ACCOUNT_USERNAME", "").strip().lstrip("@") or None
    graph_timeout_seconds = float(os.getenv("REPLYBOT_GRAPH_TIMEOUT_SECONDS", "10"))

    openai_api_key = os.getenv("OPENAI_API_KEY")
    openai_base_url = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
    openai_model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    openai_temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.9"))
    openai_timeout_seconds = float(os.getenv("OPENAI_TIMEOUT_SECONDS", "60"))
    reply_fallback_enabled = _parse_bool_env("REPLYBOT_REPLY_FALLBACK_ENABLED", "0")

    log_level = os.getenv("REPLYBOT_LOG_LEVEL", "INFO").strip().upper()
    log_path_str = os.getenv("REPLYBOT_LOG_PATH", "").strip()
    log_path = Path(log_path_str) if log_path_str else None

    return Config(
        poll_seconds=poll_seconds,
        max_comments_per_check=max_comments_per_check,
        reply_tone=reply_tone,
        selected_post_ids=selected_post_ids,
        monitor_all=monitor_all,
        allowlist_fetch_limit=allowlist_fetch_limit,
        monitor_all_fetch_limit=monitor_all_fetch_limit,
        recent_posts_fetch_limit=recent_posts_fetch_limit,
        retry_max_attempts=retry_max_attempts,
        retry_base_delay_seconds=retry_base_delay_seconds,
        retry_max_delay_seconds=retry_max_delay_seconds,
        public_reply_max_chars=public_reply_max_chars,
        private_reply_max_chars=private_reply_max_chars,
        state_path=state_path,
        processed_db_path=processed_db_path,
        activity_log_path=activity_log_path,
        account_username_hint=account_username_hint,
        graph_timeout_seconds=graph_timeout_seconds,
        openai_api_key=openai_api_key,
        openai_base_url=openai_base_url,
        openai_model=openai_model,
        openai_temperature=openai_temperature,
        openai_timeout_seconds=openai_timeout_seconds,
        reply_fallback_enabled=reply_fallback_enabled,
        log_level=log_level,
        log_path=log_path,
    )
