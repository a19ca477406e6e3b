"""
Structured JSON logging for the health financing kernel.

Every record is one JSON object per line: an envelope (``ts``, ``level``,
``logger``, ``message``), the scope bound through :class:`LogContext`
(facility, fiscal year, project, quarter, statement), then the
record's ``extra`` fields.  Money is written as a string so that no
amount passes through a float on its way to the log.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------

_EMPTY: dict[str, str] = {}

_scope: ContextVar[dict[str, str]] = ContextVar("healthfin_log_scope", default=_EMPTY)


class LogContext:
    """
    Request-scoped log fields, safe across threads and tasks.

    The scope is a single ContextVar holding a dict that is replaced,
    never mutated, so a worker thread started with ``copy_context()``
    cannot leak fields back into its parent.
    """

    FIELDS = (
        "correlation_id",
        "actor_id",
        "facility_id",
        "reporting_period_id",
        "project_type",
        "quarter",
        "statement_code",
    )

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Set context fields. Only non-None values are updated."""
        _scope.set(cls._merged(fields))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_scope.get())

    @classmethod
    def clear(cls) -> None:
        _scope.set(_EMPTY)

    @classmethod
    def bind(cls, **fields: Any) -> "_BoundScope":
        """Context manager that sets fields on entry and restores on exit."""
        return _BoundScope(cls._merged(fields))

    @classmethod
    def _merged(cls, fields: dict[str, Any]) -> dict[str, str]:
        unknown = set(fields) - set(cls.FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context field(s): {sorted(unknown)}")
        merged = dict(_scope.get())
        merged.update({k: _as_text(v) for k, v in fields.items() if v is not None})
        return merged


class _BoundScope:
    def __init__(self, scope: dict[str, str]):
        self._scope = scope
        self._token = None

    def __enter__(self) -> type[LogContext]:
        self._token = _scope.set(self._scope)
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        _scope.reset(self._token)


def _as_text(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    """UUIDs, dates, enums and Decimals in log payloads."""
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record))

        return json.dumps(payload, default=_json_default)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # HealthFinError subclasses keep their details as attributes
        for k, v in vars(exc).items():
            if not k.startswith("_") and k not in ("args", "code"):
                fields[f"exc_{k}"] = v
        fields["traceback"] = self.formatException(record.exc_info)
        return fields


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "healthfin"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the healthfin namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``healthfin`` logger (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler or logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Reset logging configuration. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
