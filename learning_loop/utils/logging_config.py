"""
Centralized logging configuration for the application.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config: AppConfig) -> None:
    """
    Setup centralized logging configuration.

    Args:
        config: AppConfig instance carrying the log level
    """
    logging.basicConfig(level=getattr(logging, config.log_level.upper()),
                        format=LOG_FORMAT,
                        handlers=[logging.StreamHandler(sys.stdout)])


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a module logger.

    Args:
        name: Logger name (usually __name__)
        config: Optional AppConfig; when given, the logger level follows it

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if config is not None:
        logger.setLevel(getattr(logging, config.log_level.upper()))
    return logger
