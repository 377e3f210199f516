"""Logging setup for Smart Worker.

Every line of a repair run carries a correlation id (the failed job's id)
so one run can be followed through the extractor, memory, model and
sandbox logs. Stdout gets a compact colored line or JSON; the optional
log file always gets JSON.
"""

import json
import logging
import os
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar(
    "smart_worker_correlation_id", default=None
)

# Attributes every LogRecord has; anything else was passed via ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.makeLogRecord({})).keys()
) | {"message", "asctime", "taskName", "correlation_id", "level_tag"}

_QUIET_LOGGERS = ("urllib3", "docker", "openai", "httpx", "chromadb")


def get_correlation_id() -> str:
    """Return the current run's correlation id, minting one if unset."""
    cid = _correlation_id.get()
    if cid is None:
        cid = uuid.uuid4().hex[:8]
        _correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    _correlation_id.set(cid)


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    extras = {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            value = repr(value)
        extras[key] = value
    return extras


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers and the log file."""

    def __init__(self, include_extras: bool = True):
        """Initialize formatter.

        Args:
            include_extras: Copy ``extra=`` fields onto the JSON object.
        """
        super().__init__()
        self.include_extras = include_extras

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }
        if record.levelno >= logging.ERROR:
            entry["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if self.include_extras:
            entry.update(_record_extras(record))
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS L [cid] logger: message`` with the level letter colored."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self):
        super().__init__(
            "%(asctime)s %(level_tag)s [%(correlation_id)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        record.level_tag = f"{color}{record.levelname[:1]}{self.RESET}"
        record.correlation_id = get_correlation_id()
        return super().format(record)


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Replace the root logger's handlers.

    Args:
        level: Root log level name.
        json_output: Emit JSON instead of console lines on stdout.
        log_file: Also append JSON lines to this file.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    resolved = logging.getLevelName(level.upper())
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(stdout)

    if log_file:
        to_file = logging.FileHandler(log_file, encoding="utf-8")
        to_file.setFormatter(JSONFormatter())
        root.addHandler(to_file)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_from_env() -> None:
    """Configure logging from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    configure_logging(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
        log_file=os.environ.get("LOG_FILE") or None,
    )


class LogContext:
    """Stamp fields onto every record created inside a ``with`` block.

    Swaps the process-wide record factory, so it is meant for the CLI's
    single run rather than concurrent pipeline tasks.
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._previous = None

    def __enter__(self) -> "LogContext":
        previous = logging.getLogRecordFactory()
        fields = self.fields

        def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = previous(*args, **kwargs)
            record.__dict__.update(fields)
            return record

        self._previous = previous
        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._previous is not None:
            logging.setLogRecordFactory(self._previous)
            self._previous = None


def log_event(
    logger: logging.Logger,
    component: str,
    action: str,
    level: int = logging.INFO,
    **details: Any,
) -> None:
    """Log a pipeline step as ``Component: action`` with structured fields.

    Args:
        logger: Logger to emit on.
        component: Pipeline component (sandbox, memory, ai, notify).
        action: Short action identifier, e.g. ``image_built``.
        level: Log level.
        **details: Extra fields, kept on the record for JSON output.
    """
    logger.log(
        level,
        "%s: %s",
        component.capitalize(),
        action,
        extra={"component": component, "action": action, **details},
    )
