"""Logging configuration"""
import logging
import os
import sys
from typing import Optional


def _level_from_env() -> int:
    """Resolve LOG_LEVEL (name or number) to a logging level"""
    raw = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.INFO


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Set up and return a logger for a pingpong_matcher module"""
    logger = logging.getLogger(name)

    if level is None:
        level = _level_from_env()

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(level)

    return logger
