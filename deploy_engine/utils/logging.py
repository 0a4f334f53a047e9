"""Logging helpers."""

import logging
from typing import Optional

_LOGGING_CONFIGURED = False

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once; later calls only adjust the level."""
    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
        _LOGGING_CONFIGURED = True
    else:
        logging.getLogger().setLevel(level.upper())


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)
