import logging
import os
import sys
from .config import Config


_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_CYAN = "\033[36m"
_MAGENTA = "\033[35m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    force = os.getenv("FORCE_COLOR", "").strip().lower()
    if force in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        level_name = record.levelname.upper()
        color = _COLORS.get(level_name, "")
        if not color:
            return message

        # Highlight the workflow stages so operators can scan a cycle quickly.
        if "Comment detected" in message:
            painted = f"{_BOLD}{_CYAN}[DETECT] {message}{_RESET}"
        elif "Reply generated" in message:
            painted = f"{_BOLD}{_MAGENTA}[GENERATE] {message}{_RESET}"
        elif "Reply posted" in message:
            painted = f"{_BOLD}{_GREEN}[POSTED] {message}{_RESET}"
        elif "Retrying operation=" in message:
            painted = f"{_BOLD}{_YELLOW}[RETRY] {message}{_RESET}"
        elif "Stopping automation" in message:
            painted = f"{_BOLD}{_RED}[STOP] {message}{_RESET}"
        elif "Cycle skipped" in message or "Next poll in" in message:
            painted = f"{_DIM}{color}{message}{_RESET}"
        else:
            painted = f"{color}{message}{_RESET}"
        return painted


LOG_FORMAT = "%(asctime)sZ %(levelname)s %(name)s %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(cfg: Config) -> logging.Logger:
    level = getattr(logging, cfg.log_level, logging.INFO)
    logger = logging.getLogger("replybot")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    stream_handler = logging.StreamHandler()
    if _stream_supports_color():
        stream_handler.setFormatter(ColorFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    else:
        stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
