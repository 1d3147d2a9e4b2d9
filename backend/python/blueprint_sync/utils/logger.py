import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"

# Third-party loggers that flood INFO with per-request lines
_NOISY_LOGGERS = ("httpx", "httpcore", "aiolimiter")


def create_logger(service_name: str, level: Optional[str] = None) -> logging.Logger:
    """Create (or fetch) a named logger with a single stream handler.

    The level is the given one, else LOG_LEVEL, else INFO. Calling this twice
    with the same name returns the same logger without stacking handlers.
    """
    logger = logging.getLogger(service_name)
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
