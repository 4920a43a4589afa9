"""Central logging configuration for mailprowl.

Provides a single configure_logging function to avoid duplicate logic across
modules. Safe to call multiple times; only configures root handlers once.
"""
from __future__ import annotations

import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, MutableMapping, Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_NAME = "mailprowl.log"


def _base_level() -> int:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def configure_logging(verbose: bool | None = None, log_dir: Optional[str] = None) -> None:
    """Configure the root logger once and optionally adjust level.

    The first call installs a stream handler (and a daily-rotated file
    handler under ``log_dir`` when given). Subsequent calls only adjust the
    level when ``verbose`` is explicitly provided.

    Args:
        verbose: If True force DEBUG level. If False, set level from ``LOG_LEVEL``
            environment variable (default INFO). If None, only configure the
            logger on the first call and leave existing level unchanged.
        log_dir: Directory for ``mailprowl.log``; created if missing.
    """
    root = logging.getLogger()
    if not root.handlers:
        level = logging.DEBUG if verbose is True else _base_level()
        logging.basicConfig(level=level, format=DEFAULT_FORMAT, datefmt=DATE_FORMAT)
        if log_dir:
            directory = Path(log_dir)
            directory.mkdir(parents=True, exist_ok=True)
            handler = TimedRotatingFileHandler(directory / LOG_FILE_NAME, when="midnight", encoding="utf-8")
            handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, datefmt=DATE_FORMAT))
            root.addHandler(handler)
            logging.getLogger(__name__).info("All logs will be written into %s", directory / LOG_FILE_NAME)
    elif verbose is True:
        root.setLevel(logging.DEBUG)
    elif verbose is False:
        root.setLevel(_base_level())


class AccountLogger(logging.LoggerAdapter):
    """Prefix every message with the account label, e.g. ``[work] Entering IDLE.``"""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['account']}] {msg}", kwargs


def account_logger(name: str, label: str) -> AccountLogger:
    return AccountLogger(logging.getLogger(name), {"account": label})
