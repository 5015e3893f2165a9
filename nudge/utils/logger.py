"""Logging utility with a [LOG] prefix and per-component tags."""

import logging
import sys
from datetime import datetime
from typing import Optional
from enum import Enum


class LogLevel(Enum):
    """Log levels for the engine."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name and prefixes every line with [LOG]."""

    COLORS = {
        'DEBUG': '\033[36m',      # Cyan
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33m',    # Yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[35m',   # Magenta
        'RESET': '\033[0m',
        'BOLD': '\033[1m',
    }

    def __init__(self, show_timestamps: bool = False, use_colors: bool = True):
        super().__init__()
        self.show_timestamps = show_timestamps
        self.use_colors = use_colors

    def _paint(self, key: str, text: str) -> str:
        if not self.use_colors:
            return text
        return f"{self.COLORS[key]}{text}{self.COLORS['RESET']}"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with colors and the LOG prefix."""
        parts = [self._paint('BOLD', "[LOG]")]

        if self.show_timestamps:
            parts.append(datetime.fromtimestamp(record.created).strftime("%H:%M:%S"))

        component = getattr(record, "component", None)
        if component:
            parts.append(f"[{component}]")

        # INFO lines stay clean, everything else carries its level
        if record.levelname != 'INFO':
            parts.append(self._paint(record.levelname, f"[{record.levelname}]"))

        parts.append(record.getMessage())
        message = " ".join(parts)

        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


class AppLogger:
    """Engine-wide logger (singleton)."""

    _instance: Optional['AppLogger'] = None
    _logger: Optional[logging.Logger] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._logger is None:
            self._setup_logger()

    def _setup_logger(self, level: str = "INFO", show_timestamps: bool = False):
        """Attach a single stdout handler to the ``nudge`` logger."""
        self._logger = logging.getLogger("nudge")
        self._logger.setLevel(getattr(logging, level))
        self._logger.handlers.clear()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, level))
        console_handler.setFormatter(ColoredFormatter(
            show_timestamps=show_timestamps,
            use_colors=sys.stdout.isatty(),
        ))
        self._logger.addHandler(console_handler)

        # Keep uvicorn/root configuration from duplicating our lines
        self._logger.propagate = False

    @property
    def raw(self) -> logging.Logger:
        """The underlying stdlib logger (handy for pytest's caplog)."""
        return self._logger

    def configure(self, level: str = "INFO", show_timestamps: bool = False):
        """Re-create the handler with a new level and timestamp setting."""
        self._setup_logger(level.upper(), show_timestamps)

    def set_level(self, level: str):
        """Set the logging level."""
        if self._logger:
            self._logger.setLevel(getattr(logging, level.upper()))
            for handler in self._logger.handlers:
                handler.setLevel(getattr(logging, level.upper()))

    def log(self, message: str, level: LogLevel = LogLevel.INFO,
            component: Optional[str] = None, exc_info: bool = False):
        """Log a message with the specified level."""
        if self._logger:
            log_func = getattr(self._logger, level.value.lower())
            extra = {"component": component} if component else None
            log_func(message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, component: Optional[str] = None):
        self.log(message, LogLevel.DEBUG, component)

    def info(self, message: str, component: Optional[str] = None):
        self.log(message, LogLevel.INFO, component)

    def warning(self, message: str, component: Optional[str] = None):
        self.log(message, LogLevel.WARNING, component)

    def error(self, message: str, component: Optional[str] = None, exc_info: bool = False):
        self.log(message, LogLevel.ERROR, component, exc_info)

    def critical(self, message: str, component: Optional[str] = None):
        self.log(message, LogLevel.CRITICAL, component)


# Global logger instance
logger = AppLogger()


def setup_logging(level: str = "INFO", show_timestamps: bool = False):
    """Set up logging for the engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        show_timestamps: Prefix each line with HH:MM:SS
    """
    logger.configure(level, show_timestamps)
    logger.debug("Logger initialized")


# Convenience functions
def log_info(message: str, component: Optional[str] = None):
    logger.info(message, component)


def log_debug(message: str, component: Optional[str] = None):
    logger.debug(message, component)


def log_warning(message: str, component: Optional[str] = None):
    logger.warning(message, component)


def log_error(message: str, component: Optional[str] = None, exc_info: bool = False):
    logger.error(message, component, exc_info)
