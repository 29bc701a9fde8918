"""Logging configuration for the Nelo WhatsApp assistant."""

import sys
import os
from typing import Optional
from loguru import logger
from .config import settings


def setup_logger():
    """Setup application logging with loguru."""

    # Remove default logger
    logger.remove()

    # Console logging
    logger.add(
        sys.stdout,
        level=settings.log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        colorize=True,
    )

    # File logging (skip on serverless, read-only file systems)
    if settings.log_to_file and not os.getenv("VERCEL"):
        try:
            logger.add(
                settings.log_file,
                level="DEBUG",
                format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} - {message} | {extra}",
                rotation=settings.log_rotation,
                retention=settings.log_retention,
                compression="zip",
            )

            # Error file logging
            logger.add(
                "logs/error.log",
                level="ERROR",
                format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} - {message} | {extra}",
                rotation="1 day",
                retention="7 days",
                compression="zip",
            )
        except Exception as e:
            # If file logging fails, continue with console only
            logger.warning(f"File logging not available: {e}")

    return logger


# Every record carries a name, even from an unbound logger
logger.configure(extra={"name": "nelo"})

# Initialize logger
app_logger = setup_logger()


def get_logger(name: Optional[str] = None):
    """Get a logger instance for a specific module."""
    if name:
        return logger.bind(name=name)
    return logger
