from __future__ import annotations

import logging
import sys

from finance_tracker.config import settings

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_NOISY_LOGGERS = ("sqlalchemy", "httpx", "httpcore", "urllib3", "yfinance")

_handler: logging.Handler | None = None


def setup_logging(level: str | None = None) -> logging.Handler:
    """Configure root logging to stdout; repeated calls only adjust the level."""
    global _handler
    root_logger = logging.getLogger()
    if _handler is None:
        _handler = logging.StreamHandler(sys.stdout)
        _handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    if _handler not in root_logger.handlers:
        root_logger.addHandler(_handler)

    root_logger.setLevel((level or settings.log_level).upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return _handler
