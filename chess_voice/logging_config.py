"""
Logging configuration for chess-voice.

All package loggers live under "chess_voice"; setup_logging() attaches the
console and rotating-file handlers there. The WebRTC stack logs every STUN
transaction, so its loggers are held at WARNING unless DEBUG is asked for.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union
from logging.handlers import RotatingFileHandler


LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

LOGGER_NAMES = [
    "chess_voice.app",
    "chess_voice.ui",
    "chess_voice.config",
    "chess_voice.identity",
    "chess_voice.core.channel",
    "chess_voice.core.controller",
    "chess_voice.core.media",
    "chess_voice.core.peer",
    "chess_voice.core.reticulum",
    "chess_voice.core.session",
    "chess_voice.core.supervisor",
    "chess_voice.core.transport",
]

WEBRTC_LOGGER_NAMES = ["aiortc", "aioice", "libav"]


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Union[Path, str]] = None,
    console: bool = True,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to a rotating log file (optional)
        console: Whether to log to stdout (default: True)
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    package_logger = logging.getLogger("chess_voice")
    package_logger.setLevel(numeric_level)
    package_logger.handlers.clear()

    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=LOG_FILE_MAX_BYTES,
                backupCount=LOG_FILE_BACKUPS,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    for logger_name in LOGGER_NAMES:
        logging.getLogger(logger_name).setLevel(numeric_level)

    if numeric_level <= logging.DEBUG:
        webrtc_level = numeric_level
    else:
        webrtc_level = max(numeric_level, logging.WARNING)
    for logger_name in WEBRTC_LOGGER_NAMES:
        logging.getLogger(logger_name).setLevel(webrtc_level)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific component.

    Args:
        name: Component name ('core.session' or 'chess_voice.core.session')
    """
    if not name.startswith("chess_voice."):
        name = f"chess_voice.{name}"
    return logging.getLogger(name)


def get_log_directory() -> Path:
    """Get the default log directory."""
    return Path.home() / ".chess_voice" / "logs"


def get_default_log_file() -> Path:
    """Get the default log file path."""
    return get_log_directory() / "chess_voice.log"
