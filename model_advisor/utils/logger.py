"""
Logging setup for Model Advisor.

Every module logs through the shared ``log`` instance:

    from model_advisor.utils.logger import log
    log.info("Loaded 42 models")
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_LEVEL_ENV = "MODEL_ADVISOR_LOG_LEVEL"


def setup_logger(name: str = "model_advisor", level: Optional[str] = None) -> logging.Logger:
    """
    Create (or fetch) the package logger.

    Args:
        name: Logger name
        level: Level name; falls back to $MODEL_ADVISOR_LOG_LEVEL, then INFO

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    logger.setLevel((level or os.environ.get(LOG_LEVEL_ENV, "INFO")).upper())
    return logger


log = setup_logger()
