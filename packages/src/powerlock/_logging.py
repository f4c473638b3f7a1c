"""Structured JSON log formatter, logging setup and per-lock verbosity.

The process-wide setup follows the container convention: one JSON
object per line on stderr (optionally mirrored to a rotating file),
carrying ``service`` and ``version`` correlation fields.

Each lock additionally has its own verbosity (``debug``, ``normal``
or ``minimal``).  :class:`LockLogger` applies it on top of the root
level and tags every record with the lock name, which the JSON
formatter emits as a ``lock`` field.

See Also:
    - `The Twelve-Factor App — XI. Logs <https://12factor.net/logs>`_
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from powerlock._settings import LoggingSettings, Verbosity

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

VERBOSITY_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "normal": logging.INFO,
    "minimal": logging.ERROR,
}
"""Lowest record level each lock verbosity lets through."""


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects (NDJSON).

    Each record produces a JSON object with these fields:

    - ``timestamp`` — ISO 8601, always UTC
    - ``level`` — Python log level name
    - ``logger`` — dotted logger name
    - ``message`` — the formatted log message
    - ``service`` — application name for log correlation
    - ``version`` — application version (omitted when empty)
    - ``lock`` — lock name (only for records from a :class:`LockLogger`)
    - ``exception`` — formatted traceback (only when present)
    - ``stack_info`` — stack trace (only when ``stack_info=True``)

    Args:
        service: Application name included in every log line.
        version: Application version string.  Omitted from
            output when empty.
    """

    def __init__(
        self,
        *,
        service: str = "",
        version: str = "",
    ) -> None:
        super().__init__()
        self._service = service
        self._version = version

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self._service,
        }

        if self._version:
            entry["version"] = self._version

        lock = getattr(record, "lock", None)
        if lock is not None:
            entry["lock"] = lock

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(entry, default=str)


class LockLogger(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Logger adapter scoped to one lock.

    Records below the lock's verbosity threshold are dropped before
    they reach the underlying logger; the rest are prefixed with
    ``[lock name]`` and carry ``lock`` in ``extra``.

    - ``debug`` — everything
    - ``normal`` — info and above
    - ``minimal`` — errors only
    """

    def __init__(
        self,
        logger: logging.Logger,
        lock_name: str,
        verbosity: Verbosity = "normal",
    ) -> None:
        super().__init__(logger, {"lock": lock_name})
        self.lock_name = lock_name
        self.verbosity = verbosity
        self._threshold = VERBOSITY_LEVELS[verbosity]

    def isEnabledFor(self, level: int) -> bool:  # noqa: N802
        return level >= self._threshold and self.logger.isEnabledFor(level)

    def process(
        self,
        msg: Any,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), "lock": self.lock_name}
        return f"[{self.lock_name}] {msg}", kwargs


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Configure the root logger from settings.

    Clears any existing handlers on the root logger, then installs a
    stderr :class:`logging.StreamHandler` and, when ``settings.file``
    is set, a :class:`~logging.handlers.RotatingFileHandler` sized by
    ``settings.max_file_size_mb``.

    Args:
        settings: Logging configuration (level, format, file).
        service: Application name passed to :class:`JsonFormatter`.
        version: Application version passed to :class:`JsonFormatter`.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    if settings.format == "json":
        formatter: logging.Formatter = JsonFormatter(service=service, version=version)
    else:
        formatter = logging.Formatter(_TEXT_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if settings.file is not None:
        file_handler = RotatingFileHandler(
            settings.file,
            maxBytes=settings.max_file_size_mb * 1024 * 1024,
            backupCount=settings.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(settings.level)
