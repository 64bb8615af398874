"""Logging setup for the service process."""

import logging
from typing import Optional

PACKAGE_LOGGER = "gains_sandbox"


def setup_logging(level: str = "INFO", fmt: Optional[str] = None) -> logging.Logger:
    """Configure the package logger from the `logging` config section.

    Only the package logger is touched, so uvicorn's and the test runner's
    handlers stay as they are.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt or "%(asctime)s %(levelname)s [%(name)s] %(message)s"))
        logger.addHandler(handler)

    return logger
