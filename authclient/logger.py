"""
Structured JSON Logging Module.

Provides a ``StructuredLogger`` wrapper whose records are rendered as
one JSON object per line, so request diagnostics (method, URL, elapsed
time, status, body size) can be grepped and parsed off a device log.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO, Union


class JSONFormatter(logging.Formatter):
    """Formats log records as structured JSON objects.

    Each log entry contains:
        - timestamp  (ISO-8601, UTC)
        - level
        - logger_name
        - message
        - extra      (structured fields passed via the ``extra`` kwarg)
        - exception  (formatted traceback, when present)
    """

    _STANDARD_ATTRS: frozenset[str] = frozenset(
        logging.LogRecord(
            name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
        ).__dict__.keys()
    ) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Union[str, dict[str, str]]] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra_fields: dict[str, str] = {
            key: str(value)
            for key, value in record.__dict__.items()
            if key not in self._STANDARD_ATTRS
        }
        if extra_fields:
            entry["extra"] = extra_fields

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


class StructuredLogger:
    """Injectable logger.

    Pass an instance wherever a logger is needed::

        class SomeService:
            def __init__(self, logger: StructuredLogger) -> None:
                self._log = logger

    Handlers are attached once per logger *name*; constructing a second
    ``StructuredLogger`` with the same name reuses the first one's
    handlers.  ``log_file=""`` disables the rotating file handler, which
    is what tests and read-only sandboxes want.
    """

    def __init__(
        self,
        name: str = "authclient",
        level: Optional[Union[int, str]] = None,
        stream: Union[TextIO, None] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        # Lazy import to avoid circular dependency at module level
        from authclient.config import get_config
        _cfg = get_config()

        resolved_level: Union[int, str] = level if level is not None else _cfg.LOG_LEVEL
        if isinstance(resolved_level, str):
            resolved_level = logging.getLevelName(resolved_level.upper())
            if not isinstance(resolved_level, int):
                resolved_level = logging.INFO

        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(resolved_level)
        self._logger.propagate = False

        if self._logger.handlers:
            return

        formatter = JSONFormatter()

        stream_handler = logging.StreamHandler(stream or sys.stdout)
        stream_handler.setLevel(resolved_level)
        stream_handler.setFormatter(formatter)
        self._logger.addHandler(stream_handler)

        resolved_log_file: str = _cfg.LOG_FILE if log_file is None else log_file
        if not resolved_log_file:
            return

        try:
            log_path = Path(resolved_log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                filename=str(log_path),
                maxBytes=max_bytes if max_bytes is not None else _cfg.LOG_MAX_BYTES,
                backupCount=backup_count if backup_count is not None else _cfg.LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(resolved_level)
            file_handler.setFormatter(formatter)
            self._logger.addHandler(file_handler)
        except OSError as exc:
            self._logger.warning(
                "Could not create log file '%s': %s. "
                "Continuing with console logging only.",
                resolved_log_file,
                exc,
            )

    @property
    def logger(self) -> logging.Logger:
        """Access the underlying ``logging.Logger`` directly."""
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args: object, **kwargs: object) -> None:
        self._logger.exception(msg, *args, **kwargs)


def get_logger(name: str = "authclient") -> StructuredLogger:
    """Create and return a ``StructuredLogger`` with the given *name*."""
    return StructuredLogger(name=name)
