"""Loguru sink setup for the broker process."""

import sys

from loguru import logger


def setup_logging(level: str = "INFO", serialize: bool = False) -> None:
    """Replace loguru's default sink with one at ``level``.

    ``serialize=True`` emits one JSON object per line for log shippers.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), serialize=serialize, backtrace=False)
