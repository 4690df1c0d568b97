from __future__ import annotations

import logging
from typing import Optional

from ..graph_client import GraphClient
from .config import Config, load_config
from .error_policy import RetryExecutor
from .logging_utils import setup_logging
from .reply_generator import ReplyGenerator
from .scheduler import PollScheduler
from .storage import Storage
from .workflow import CommentWorkflow


def build_storage(cfg: Config) -> Storage:
    return Storage(cfg.state_path, cfg.processed_db_path, cfg.activity_log_path)


def build_scheduler(
    cfg: Config,
    client: Optional[GraphClient] = None,
    generator: Optional[ReplyGenerator] = None,
    storage: Optional[Storage] = None,
) -> PollScheduler:
    logger = logging.getLogger("replybot.automation")
    client = client or GraphClient(
        timeout=cfg.graph_timeout_seconds,
        public_reply_max_chars=cfg.public_reply_max_chars,
        private_reply_max_chars=cfg.private_reply_max_chars,
    )
    storage = storage or build_storage(cfg)
    executor = RetryExecutor(
        max_attempts=cfg.retry_max_attempts,
        base_delay_seconds=cfg.retry_base_delay_seconds,
        max_delay_seconds=cfg.retry_max_delay_seconds,
        logger=logger,
    )
    workflow = CommentWorkflow(
        client,
        generator or ReplyGenerator(cfg),
        storage,
        executor,
        tone=cfg.reply_tone,
        selected_post_ids=cfg.selected_post_ids,
        monitor_all=cfg.monitor_all,
        max_comments_per_check=cfg.max_comments_per_check,
        allowlist_fetch_limit=cfg.allowlist_fetch_limit,
        monitor_all_fetch_limit=cfg.monitor_all_fetch_limit,
        recent_posts_fetch_limit=cfg.recent_posts_fetch_limit,
        private_reply_max_chars=cfg.private_reply_max_chars,
        account_username_hint=cfg.account_username_hint,
        logger=logger,
    )
    return PollScheduler(workflow, storage, poll_seconds=cfg.poll_seconds, logger=logger)


def process_requests(scheduler: PollScheduler) -> None:
    """Apply stop and stats-reset requests left by the command line."""
    storage = scheduler.storage
    if storage.consume_stats_reset_request():
        scheduler.reset_stats()
    if storage.consume_stop_request():
        scheduler.stop(reason="stop requested from the command line")


def run_forever(cfg: Optional[Config] = None) -> None:
    cfg = cfg or load_config()
    logger = setup_logging(cfg)
    logger.info(
        (
            "Reply automation starting poll_seconds=%s tone=%s selected_posts=%s monitor_all=%s "
            "max_comments_per_check=%s retry_max_attempts=%s openai_configured=%s "
            "fallback_replies=%s state_path=%s processed_db_path=%s"
        ),
        cfg.poll_seconds,
        cfg.reply_tone,
        len(cfg.selected_post_ids),
        cfg.monitor_all,
        cfg.max_comments_per_check,
        cfg.retry_max_attempts,
        bool(cfg.openai_api_key),
        cfg.reply_fallback_enabled,
        cfg.state_path,
        cfg.processed_db_path,
    )
    if cfg.log_path:
        logger.info("File logging enabled path=%s", cfg.log_path)

    scheduler = build_scheduler(cfg)
    if scheduler.storage.consume_stop_request():
        logger.info("Cleared stale stop request path=%s", scheduler.storage.stop_request_path)
    if scheduler.storage.consume_stats_reset_request():
        logger.info("Cleared stale stats reset request path=%s", scheduler.storage.reset_request_path)
    if not scheduler.restore_state(resume=True):
        scheduler.start()

    try:
        while not scheduler.wait(timeout=1.0):
            process_requests(scheduler)
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down without clearing the running flag")
        scheduler.shutdown()
        return

    state = scheduler.get_state()
    logger.info(
        "Reply automation stopped replies_posted=%s error_count=%s",
        state["stats"].get("replies_posted", 0),
        state["error_count"],
    )
