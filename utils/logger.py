"""Shared application logger"""

import logging
import sys

from config import settings

LOGGER_NAME = "lunanul"


def setup_logger(level: str = settings.LOG_LEVEL) -> logging.Logger:
    """Configure and return the shared logger"""
    log = logging.getLogger(LOGGER_NAME)

    if not log.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(module)s:%(lineno)d - %(message)s"
            )
        )
        log.addHandler(handler)

    log.setLevel(getattr(logging, level.upper(), logging.INFO))
    return log


logger = setup_logger()
