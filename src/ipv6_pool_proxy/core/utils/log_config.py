"""Logging configuration for the proxy server.

This module provides centralized logging configuration using Loguru.
It sets up logging to both file and console with proper formatting
and log rotation.
"""

import sys
from pathlib import Path

from loguru import logger

# Logs directory in user's home directory
LOG_DIR = Path.home() / ".ipv6-pool-proxy" / "logs"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(debug: bool = False, log_dir: Path | None = LOG_DIR) -> None:
    """Replace loguru's default handler with the proxy's console and file sinks.

    Args:
        debug: Log DEBUG and above to the console instead of INFO
        log_dir: Directory for the rotating log file, or None for console only
    """
    logger.remove()  # Remove default handler

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level="DEBUG" if debug else "INFO",
        backtrace=True,
        diagnose=debug,
    )

    if log_dir is None:
        return

    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "proxy.log",
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=FILE_FORMAT,
        level="DEBUG",
        backtrace=True,
        diagnose=False,
        enqueue=True,
    )


__all__ = ["logger", "LOG_DIR", "setup_logging"]
