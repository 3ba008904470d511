"""Small-business bookkeeping core: sales, inventory, income and expenses.

Importing the package configures the ``bizbooks`` logger. Two environment
variables tune it without touching code:

``BIZBOOKS_LOG_LEVEL``
    Level name for both handlers (default ``INFO``).
``BIZBOOKS_LOG_DIR``
    Directory for ``bizbooks.log`` (default ``.logs`` under the project root).
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("BIZBOOKS_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "bizbooks.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _resolve_log_level() -> int:
    name = os.environ.get("BIZBOOKS_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        print(f"Warning: unknown BIZBOOKS_LOG_LEVEL '{name}', using INFO", file=sys.stderr)
        return logging.INFO
    return level


def _build_file_handler(formatter: logging.Formatter, level: int) -> logging.Handler | None:
    """Return a rotating file handler, or ``None`` when the log file is unwritable."""

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach file and console handlers to the package logger once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_log_level()
    logger.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _build_file_handler(formatter, level)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the 'bizbooks' package.")
