"""
Logging for the live-state synchronizer.

Every module logs through a child of the `livesync` logger named after its
component (`livesync.coalescer`, `livesync.twitch_api`, ...). Per-channel
lines go through `get_channel_logger`, which tags them with the channel id.
Console output is colored when attached to a terminal; the optional log
file is plain text and rotated by size.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional, TextIO


ROOT_LOGGER = 'livesync'


class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def _component(record: logging.LogRecord) -> str:
    """`livesync.coalescer` -> `coalescer`; the root logger shows as `app`."""
    prefix = ROOT_LOGGER + '.'
    if record.name.startswith(prefix):
        return record.name[len(prefix):]
    if record.name == ROOT_LOGGER:
        return 'app'
    return record.name


class ConsoleFormatter(logging.Formatter):
    """`HH:MM:SS LEVEL component [channel] message`, optionally colored."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{Colors.RESET}" if self.use_color else text

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = self._paint(f"{record.levelname:8}", self.LEVEL_COLORS.get(record.levelno, Colors.RESET))
        component = self._paint(f"{_component(record):12}", Colors.GRAY)

        channel = getattr(record, 'channel', None)
        channel_str = self._paint(f"[{channel}]", Colors.CYAN) + " " if channel else ""

        message = f"{self._paint(timestamp, Colors.GRAY)} {level} {component} {channel_str}{record.getMessage()}"
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class FileFormatter(logging.Formatter):
    """Pipe-separated lines for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        channel = getattr(record, 'channel', None) or '-'

        message = (
            f"{timestamp} | {record.levelname:8} | {_component(record):12} | "
            f"{channel:16} | {record.getMessage()}"
        )
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class ChannelLoggerAdapter(logging.LoggerAdapter):
    """Adds the `channel` field read by both formatters."""

    def __init__(self, logger: logging.Logger, channel: str):
        super().__init__(logger, {'channel': channel})

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {})
        kwargs['extra']['channel'] = self.extra['channel']
        return msg, kwargs


def _level(name: str, default: int = logging.INFO) -> int:
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else default


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    component_levels: Optional[Dict[str, str]] = None,
    stream: Optional[TextIO] = None
) -> logging.Logger:
    """
    Configure the `livesync` logger tree.

    Args:
        level: Level of the root `livesync` logger.
        log_file: Rotating log file path. None logs to the console only.
        max_size_mb: Size at which the log file rotates.
        backup_count: Rotated files to keep.
        component_levels: Per-component overrides, e.g. {'coalescer': 'DEBUG'}.
        stream: Console stream, stdout by default. Colors are used only
            when it is a terminal.

    Returns:
        The root `livesync` logger.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(_level(level))
    logger.handlers.clear()
    logger.propagate = False

    stream = stream or sys.stdout
    console_handler = logging.StreamHandler(stream)
    console_handler.setFormatter(ConsoleFormatter(use_color=stream.isatty()))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(FileFormatter())
        logger.addHandler(file_handler)

    for component, component_level in (component_levels or {}).items():
        get_logger(component).setLevel(_level(component_level))

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """The `livesync` logger, or its child for one component."""
    if name:
        return logging.getLogger(f'{ROOT_LOGGER}.{name}')
    return logging.getLogger(ROOT_LOGGER)


def get_channel_logger(channel: str, name: Optional[str] = None) -> ChannelLoggerAdapter:
    """Component logger whose lines are tagged with `channel`."""
    return ChannelLoggerAdapter(get_logger(name), channel)
