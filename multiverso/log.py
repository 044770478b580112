"""Leveled logging to standard output and an optional log file."""

from __future__ import annotations

import enum
import sys
import threading
import time
from typing import IO

__all__ = [
    "LogLevel",
    "FatalError",
    "Logger",
    "level_name",
    "reset_log_file",
    "reset_log_level",
    "reset_kill_fatal",
    "debug",
    "info",
    "error",
    "fatal",
]


class LogLevel(enum.IntEnum):
    """Severity of a log message; messages below the logger level are dropped."""

    DEBUG = 0
    INFO = 1
    ERROR = 2
    FATAL = 3


class FatalError(RuntimeError):
    """Raised after a fatal message is logged while kill-on-fatal is enabled."""


_LEVEL_NAMES = {
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.ERROR: "ERROR",
    LogLevel.FATAL: "FATAL",
}


def level_name(level) -> str:
    """Return the printable name of a level, or "UNKNOW" for anything else."""
    try:
        return _LEVEL_NAMES[LogLevel(level)]
    except (ValueError, KeyError):
        return "UNKNOW"


def _system_time() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())


class Logger:
    """Writes formatted messages to stdout and, if opened, to a log file."""

    def __init__(self, level=LogLevel.INFO, filename=None):
        self._level = LogLevel(level)
        self._file: IO[str] | None = None
        self._kill_fatal = True
        self._lock = threading.Lock()
        if filename:
            self.reset_log_file(filename)

    @property
    def level(self) -> LogLevel:
        return self._level

    def reset_log_file(self, filename) -> None:
        """Close the current log file and open ``filename`` for writing.

        An empty or missing name only closes the current file.
        """
        self.close()
        if not filename:
            return
        try:
            self._file = open(filename, "w", encoding="utf-8")
        except OSError:
            self.error("Cannot create log file %s\n", filename)
            raise

    def reset_log_level(self, level) -> None:
        self._level = LogLevel(level)

    def reset_kill_fatal(self, is_kill_fatal) -> None:
        self._kill_fatal = bool(is_kill_fatal)

    def write(self, level, fmt, *args) -> None:
        """Write a printf-style message if ``level`` is not below the logger's."""
        if level < self._level:
            return
        message = fmt % args if args else fmt
        line = f"[{level_name(level)}] [{_system_time()}] {message}"
        with self._lock:
            out = sys.stdout
            out.write(line)
            out.flush()
            if self._file is not None:
                self._file.write(line)
                self._file.flush()
        if self._kill_fatal and level == LogLevel.FATAL:
            self.close()
            raise FatalError(message.rstrip("\n"))

    def debug(self, fmt, *args) -> None:
        self.write(LogLevel.DEBUG, fmt, *args)

    def info(self, fmt, *args) -> None:
        self.write(LogLevel.INFO, fmt, *args)

    def error(self, fmt, *args) -> None:
        self.write(LogLevel.ERROR, fmt, *args)

    def fatal(self, fmt, *args) -> None:
        self.write(LogLevel.FATAL, fmt, *args)

    def close(self) -> None:
        """Close the log file if one is open."""
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


_logger = Logger()


def reset_log_file(filename) -> None:
    _logger.reset_log_file(filename)


def reset_log_level(level) -> None:
    _logger.reset_log_level(level)


def reset_kill_fatal(is_kill_fatal) -> None:
    _logger.reset_kill_fatal(is_kill_fatal)


def debug(fmt, *args) -> None:
    _logger.debug(fmt, *args)


def info(fmt, *args) -> None:
    _logger.info(fmt, *args)


def error(fmt, *args) -> None:
    _logger.error(fmt, *args)


def fatal(fmt, *args) -> None:
    _logger.fatal(fmt, *args)