"""
Structured JSON logging for the permit kernel.

Every ``permit_kernel.*`` logger writes one JSON object per line.  A line
carries the fixed keys ``ts``, ``level``, ``logger`` and ``message``, the
request-scoped fields currently bound in ``LogContext`` (correlation id,
acting principal, permit), and whatever the call site passed in ``extra``.

Usage::

    logger = get_logger("services.lifecycle")
    with LogContext.bind(correlation_id=request_id, actor_id=str(actor.id)):
        logger.info("permit_transitioned", extra={"to_status": "REVOKED"})
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
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

_LOGGER_PREFIX = "permit_kernel"

# ---------------------------------------------------------------------------
# Request-scoped fields
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = frozenset({
    "correlation_id",
    "actor_id",
    "permit_id",
    "permit_number",
    "trace_id",
})

_context: ContextVar[dict[str, str]] = ContextVar("permit_log_context", default={})


def _merged(fields: dict[str, Any]) -> dict[str, str]:
    unknown = set(fields) - _CONTEXT_FIELDS
    if unknown:
        raise TypeError(f"unknown log context fields: {', '.join(sorted(unknown))}")
    merged = dict(_context.get())
    merged.update({k: str(v) for k, v in fields.items() if v is not None})
    return merged


class LogContext:
    """
    Request-scoped log fields, safe across threads and asyncio tasks.

    Fields are stored in a single ContextVar, so each thread or task sees
    its own values.  ``None`` never overwrites a bound value.
    """

    @staticmethod
    def set(
        *,
        correlation_id: str | None = None,
        actor_id: str | None = None,
        permit_id: str | None = None,
        permit_number: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        _context.set(_merged({
            "correlation_id": correlation_id,
            "actor_id": actor_id,
            "permit_id": permit_id,
            "permit_number": permit_number,
            "trace_id": trace_id,
        }))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Bind fields for the duration of the block, then restore."""
        token = _context.set(_merged(fields))
        try:
            yield
        finally:
            _context.reset(token)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

_RESERVED: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # PermitKernelError subclasses carry their data as public attributes
    for name, value in vars(exc).items():
        if not name.startswith("_"):
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Render a log record as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED and key not in payload
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_to_json)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``permit_kernel`` namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``permit_kernel`` logger.

    Only the first call has an effect until ``reset_logging()``.  Records
    do not propagate to the root logger.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.setLevel(level)
    kernel_logger.propagate = False

    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())
    kernel_logger.addHandler(handler)


def reset_logging() -> None:
    """Drop handlers and allow ``configure_logging`` again. Tests only."""
    global _configured
    with _lock:
        _configured = False
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.handlers.clear()
    kernel_logger.setLevel(logging.WARNING)
