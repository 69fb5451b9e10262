"""Logging helpers for the WhatsApp gateway."""

import logging
from typing import Optional, Union

def get_logger(name: str = "AsyncWhatsAppService", level: Optional[Union[int, str]] = None) -> logging.Logger:
    """Return the named gateway logger, optionally forcing its level.

    Handlers and format are configured once with logging.basicConfig()
    in main.py; this helper never attaches handlers itself.
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level.upper() if isinstance(level, str) else level)
    return logger
