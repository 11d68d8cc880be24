"""
Unified logging setup - console + rotating file, no duplicate handlers.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Dict, Optional

LOG_DIR = Path("logs")
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(category)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_LOG_SIZE_MB = 10
BACKUP_COUNT = 5

_loggers: Dict[str, logging.Logger] = {}
_file_handler_added = False


class CategoryFilter(logging.Filter):
    """Filter that adds the feed category to log records."""
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "category"):
            record.category = "-"
        return True


_category_filter = CategoryFilter()


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get or create a logger."""
    if name in _loggers:
        return _loggers[name]
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    _loggers[name] = logger
    return logger


def category_extra(category) -> dict:
    """``extra=`` payload tagging a log line with its feed category."""
    return {"category": getattr(category, "value", category)}


def parse_level(level) -> int:
    """Accept ``"debug"``, ``"INFO"``, ``20`` ... and return a logging level."""
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO


def setup_console_logging(level: int = logging.INFO) -> None:
    """Set up console logging."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Check if already exists
    for handler in root_logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            handler.setLevel(level)
            return

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(_category_filter)
    root_logger.addHandler(console_handler)


def setup_file_logging(
    filename: str = "whalefeed.log",
    level: int = logging.INFO,
    use_rotation: bool = True
) -> None:
    """Set up file logging - PREVENTS DUPLICATES."""
    global _file_handler_added

    if _file_handler_added:
        return

    LOG_DIR.mkdir(exist_ok=True)

    log_path = Path(filename)
    if not str(log_path).startswith(str(LOG_DIR)):
        log_path = LOG_DIR / log_path.name

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if use_rotation:
        file_handler = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=MAX_LOG_SIZE_MB * 1024 * 1024,
            backupCount=BACKUP_COUNT,
            encoding="utf-8"
        )
    else:
        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")

    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_category_filter)
    logging.getLogger().addHandler(file_handler)

    _file_handler_added = True


def quiet_noisy_loggers() -> None:
    """aiohttp access logs and websockets frames are too chatty at INFO."""
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
