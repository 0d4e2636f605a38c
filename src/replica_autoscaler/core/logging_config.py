#!/usr/bin/env python3
"""
Logging setup shared by the service, the CLI and the control loops
"""

import logging
import sys
from pathlib import Path
from typing import IO, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s"

# Client libraries that log every HTTP round trip at INFO/DEBUG
NOISY_LOGGERS = ("requests", "urllib3", "kubernetes", "uvicorn.access")

LEVEL_COLORS = {
    logging.DEBUG: '\033[36m',
    logging.INFO: '\033[32m',
    logging.WARNING: '\033[33m',
    logging.ERROR: '\033[31m',
    logging.CRITICAL: '\033[35m',
}
RESET = '\033[0m'


class ColoredFormatter(logging.Formatter):
    """Colors the level name by severity"""

    def format(self, record):
        color = LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)
        # File handlers format the same record, so color a copy
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{RESET}"
        return super().format(colored)


def _stream_handler(stream: IO, level: int, fmt: str, enable_colors: bool) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    use_colors = enable_colors and getattr(stream, "isatty", lambda: False)()
    handler.setFormatter(ColoredFormatter(fmt) if use_colors else logging.Formatter(fmt))
    return handler


def _file_handler(log_file: str, level: int) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    enable_colors: bool = True,
    console_format: Optional[str] = None
) -> None:
    """
    Configure the root logger

    Replaces any handlers already installed, so calling it twice is safe.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Also write to this file when set
        enable_colors: Color level names when stdout is a terminal
        console_format: Record format for the console handler
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(
        _stream_handler(sys.stdout, numeric_level, console_format or DEFAULT_FORMAT, enable_colors)
    )
    if log_file:
        root_logger.addHandler(_file_handler(log_file, numeric_level))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured at {level.upper()} level")
    if log_file:
        logger.info(f"Log file: {log_file}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_separator(logger: logging.Logger, title: str = "", width: int = 60) -> None:
    """Log a banner line, optionally with a centered title"""
    if title:
        logger.info(f" {title} ".center(width, "="))
    else:
        logger.info("=" * width)


def log_section(logger: logging.Logger, title: str) -> None:
    """Log a short section header inside a cycle"""
    logger.debug(f"--- {title} ---")
