"""
Logger wiring for chatrelay.

Everything logs under the "chatrelay" namespace. Console records get a
colored level name; when a log file is configured, a second handler writes
plain records that also carry the emitting function and line.
"""

import logging
import sys
from pathlib import Path

from chatrelay.config.settings import Settings

LOGGER_NAME = "chatrelay"

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s %(funcName)s:%(lineno)d: %(message)s"


def _ansi(code: int) -> str:
    return f"\033[{code}m"


class ColoredFormatter(logging.Formatter):
    """Wraps the level name in an ANSI color for terminals."""

    LEVEL_COLORS = {
        logging.DEBUG: _ansi(36),
        logging.INFO: _ansi(32),
        logging.WARNING: _ansi(33),
        logging.ERROR: _ansi(31),
        logging.CRITICAL: _ansi(35),
    }
    RESET = _ansi(0)

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        if not color:
            return super().format(record)

        # The record is shared with the file handler, so only a copy is tinted
        tinted = logging.makeLogRecord(record.__dict__)
        tinted.levelname = color + record.levelname + self.RESET
        return super().format(tinted)


def _attach(logger: logging.Logger, handler: logging.Handler, formatter: logging.Formatter, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def setup_logging(settings: Settings) -> None:
    """
    Install console and optional file handlers on the chatrelay logger.

    Calling this again replaces the previous handlers.

    Args:
        settings: Loaded settings; log_level and log_file are read
    """
    level = logging.getLevelName(settings.log_level)
    root = logging.getLogger(LOGGER_NAME)
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    _attach(root, logging.StreamHandler(sys.stderr), ColoredFormatter(CONSOLE_FORMAT, DATE_FORMAT), level)

    log_file = settings.log_file
    if log_file is not None:
        target = Path(log_file)
        target.parent.mkdir(parents=True, exist_ok=True)
        _attach(root, logging.FileHandler(target), logging.Formatter(FILE_FORMAT, DATE_FORMAT), level)
        root.info("Writing log records to %s", target)

    root.debug("Log level set to %s", settings.log_level)


def get_logger(name: str) -> logging.Logger:
    """Return a child of the chatrelay logger; names already inside the namespace pass through."""
    if name == LOGGER_NAME or name.startswith(LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
