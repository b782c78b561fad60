"""Process-wide logging setup.

A LoggingContext is constructed once at process start. It attaches handlers
to the `solresearch` root logger:

  - a console handler with a short human-readable format
  - a size-rotating file handler writing one JSON object per line

Modules keep using `logging.getLogger(__name__)`; their records propagate to
the root logger configured here. Closing the context flushes and detaches
every handler it installed.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

ROOT_LOGGER_NAME = "solresearch"

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_STANDARD_ATTRS = {
    "name",
    "msg",
    "args",
    "created",
    "relativeCreated",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "pathname",
    "filename",
    "module",
    "levelno",
    "levelname",
    "processName",
    "process",
    "threadName",
    "thread",
    "message",
    "msecs",
    "taskName",
}


class JsonFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Fields passed through `extra=` are merged into the object.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class LoggingContext:
    """Explicitly constructed logging context.

    Usage:
        with LoggingContext(log_dir=Path("./logs")) as log:
            log.info("started")
    """

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        level: str = "INFO",
        file_name: str = "solresearch.log",
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 10,
        install_excepthook: bool = True,
    ):
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.level = level.upper()
        self.file_name = file_name
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.install_excepthook = install_excepthook
        self.logger = logging.getLogger(ROOT_LOGGER_NAME)
        self._handlers: List[logging.Handler] = []
        self._previous_excepthook = None
        self._previous_level = logging.NOTSET

    @property
    def log_file(self) -> Optional[Path]:
        if self.log_dir is None:
            return None
        return self.log_dir / self.file_name

    def init(self) -> logging.Logger:
        """Attach handlers and return the root harness logger."""
        if self.level not in _VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level '{self.level}'")

        self._previous_level = self.logger.level
        self.logger.setLevel(self.level)
        self.logger.propagate = False

        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(message)s", "%H:%M:%S")
        )
        self._attach(console)

        if self.log_file is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                self.log_file,
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(JsonFormatter())
            self._attach(file_handler)

        if self.install_excepthook:
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self._log_uncaught

        return self.logger

    def close(self) -> None:
        """Flush and detach every handler installed by this context."""
        for handler in self._handlers:
            handler.flush()
            self.logger.removeHandler(handler)
            handler.close()
        self._handlers = []
        self.logger.propagate = True
        self.logger.setLevel(self._previous_level)
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def __enter__(self) -> logging.Logger:
        return self.init()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None and not issubclass(exc_type, KeyboardInterrupt):
            self.logger.critical(
                "Fatal error, stopping", exc_info=(exc_type, exc_val, exc_tb)
            )
        self.close()

    def _attach(self, handler: logging.Handler) -> None:
        self.logger.addHandler(handler)
        self._handlers.append(handler)

    def _log_uncaught(self, exc_type, exc_val, exc_tb) -> None:
        self.logger.critical(
            "Uncaught exception", exc_info=(exc_type, exc_val, exc_tb)
        )
        for handler in self._handlers:
            handler.flush()
        if self._previous_excepthook is not None:
            self._previous_excepthook(exc_type, exc_val, exc_tb)
