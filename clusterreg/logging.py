"""Logging configuration for the clusterreg package."""
import logging
import sys
from typing import Optional

from clusterreg.config import Config

# Third-party loggers that are chatty at INFO/DEBUG
NOISY_LOGGERS = ("kubernetes", "urllib3")

def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get a module logger that writes to stdout.

    Loggers inside the package propagate to the ``clusterreg`` logger, which
    owns the only handler, so a record is never printed twice.

    Args:
        name: The name of the logger, usually ``__name__``
        level: The logging level (default: Config.LOG_LEVEL)
    """
    root = logging.getLogger("clusterreg")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(Config.LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        root.addHandler(handler)
        root.setLevel(Config.LOG_LEVEL)
        root.propagate = False

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger

def quiet_noisy_loggers(level: int = logging.WARNING) -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)
