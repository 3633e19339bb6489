"""Logging utilities for foundrylink.

Console output goes to stderr at `FOUNDRYLINK_LOG_LEVEL`. The CLI also keeps a
daily debug log under `~/.foundrylink/logs` so failed startup runs can be
inspected after the fact.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


_LOG_RECORD_FIELDS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime", "stacklevel"}

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class StructuredFormatter(logging.Formatter):
    """Formatter with UTC ISO timestamps; `extra` fields are appended as JSON."""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return timestamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _LOG_RECORD_FIELDS and not key.startswith("_")
        }
        if not extras:
            return message
        try:
            serialized = json.dumps(extras, sort_keys=True, ensure_ascii=True, default=str)
        except (TypeError, ValueError):
            serialized = str(extras)
        return f"{message} | {serialized}"


class FoundrylinkLogger:
    """Process-wide logger: stderr console handler plus an optional log file."""

    def __init__(self, name: str = "foundrylink"):
        self.logger = logging.getLogger(name)
        level_name = os.getenv("FOUNDRYLINK_LOG_LEVEL", "WARNING").upper()
        # The file handler records debug output; the console keeps the configured level.
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        if not self.logger.handlers:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, level_name, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
            self.logger.addHandler(console_handler)
        self._console_handler = self.logger.handlers[0]
        self._file_handler: Optional[logging.FileHandler] = None

    @property
    def log_file(self) -> Optional[Path]:
        if self._file_handler is None:
            return None
        return Path(self._file_handler.baseFilename)

    def set_console_level(self, level: int) -> None:
        self._console_handler.setLevel(level)

    def attach_file_handler(self, log_file: Path) -> Path:
        """Log to `log_file`, replacing any file handler attached earlier."""
        log_file = log_file.resolve()
        if self.log_file == log_file:
            return log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if self._file_handler is not None:
            self.logger.removeHandler(self._file_handler)
            self._file_handler.close()

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(StructuredFormatter(FILE_FORMAT))
        self.logger.addHandler(file_handler)
        self._file_handler = file_handler
        return log_file

    def debug(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args: Any, **kwargs: Any) -> None:
        self.logger.warning(message, *args, **kwargs)


# Global logger instance
_logger: Optional[FoundrylinkLogger] = None


def get_logger() -> FoundrylinkLogger:
    """Get the global logger instance."""
    global _logger
    if _logger is None:
        _logger = FoundrylinkLogger()
    return _logger


def default_log_dir() -> Path:
    return Path.home() / ".foundrylink" / "logs"


def daily_log_path(log_dir: Path, when: Optional[datetime] = None) -> Path:
    return log_dir / f"foundrylink_{(when or datetime.now()).strftime('%Y%m%d')}.log"


def enable_file_logging(log_dir: Optional[Path] = None) -> Path:
    """Make the global logger also write to today's log file."""
    logger = get_logger()
    log_file = logger.attach_file_handler(daily_log_path(log_dir or default_log_dir()))
    logger.debug("[logging] File logging enabled", extra={"log_file": str(log_file)})
    return log_file
