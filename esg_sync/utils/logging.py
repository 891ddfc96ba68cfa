"""Structured logging for esg_sync.

Every line carries the connector, correlation id and operation it belongs to,
so a single run can be followed with ``grep correlation_id=<id>``.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from threading import Lock
from typing import Any, Final

from .config import get_settings

LOG_FORMAT: Final[str] = (
    "%(asctime)s | %(levelname)s | %(name)s | "
    "connector_id=%(connector_id)s | component=%(component)s | "
    "correlation_id=%(correlation_id)s | operation=%(operation)s | status=%(status)s | "
    "attempt=%(attempt)s | duration_ms=%(duration_ms)s | %(message)s"
)

DEFAULT_CONTEXT: Final[dict[str, str]] = dict.fromkeys(
    (
        "connector_id",
        "component",
        "correlation_id",
        "operation",
        "status",
        "attempt",
        "duration_ms",
    ),
    "-",
)

_SUCCESS_STATUSES: Final = frozenset({"success", "succeeded"})

_configured = False
_configure_lock: Final = Lock()


class ContextualFormatter(logging.Formatter):
    """Formatter that fills structured fields a record was logged without."""

    def __init__(self, fmt: str, defaults: Mapping[str, Any] | None = None) -> None:
        super().__init__(fmt)
        self._defaults = dict(defaults or {})

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        missing = {key: value for key, value in self._defaults.items() if key not in record.__dict__}
        record.__dict__.update(missing)
        return super().format(record)


def _resolve_level(level: str | None) -> int:
    value = logging.getLevelName((level or get_settings().log_level).upper())
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: str | None = None) -> None:
    """Install the contextual formatter on the root logger once per process."""

    global _configured
    with _configure_lock:
        if _configured:
            return

        resolved = _resolve_level(level)
        formatter = ContextualFormatter(LOG_FORMAT, DEFAULT_CONTEXT)
        root = logging.getLogger()
        root.setLevel(resolved)
        if not root.handlers:
            root.addHandler(logging.StreamHandler(sys.stdout))
        for handler in root.handlers:
            handler.setFormatter(formatter)
        _configured = True


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Adapter merging its bound context with per-call ``extra`` (call wins)."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:  # type: ignore[override]
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def setup_logger(
    name: str,
    *,
    level: str | None = None,
    context: dict[str, Any] | None = None,
) -> StructuredLoggerAdapter:
    """Return an adapter for ``name`` bound to ``context``.

    Args:
        name: Logger name, usually ``__name__``.
        level: Optional level for this logger only; otherwise it inherits the root level.
        context: Fields added to every entry, e.g. ``{"component": "prober"}``.
    """

    configure_logging()
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level) if level is not None else logging.NOTSET)
    return StructuredLoggerAdapter(logger, {**DEFAULT_CONTEXT, **(context or {})})


def log_sync_outcome(
    logger: logging.Logger | logging.LoggerAdapter,
    connector_id: int | str,
    operation: str,
    status: str,
    duration_ms: int | None = None,
    **extra_context: Any,
) -> None:
    """
    Log how a probe or sync step ended.

    Successful outcomes go to INFO, everything else to WARNING. ``counts`` is
    rendered as sorted JSON in the message; other keyword arguments become
    record attributes and are echoed in the message.
    """
    counts = extra_context.pop("counts", None)
    fields: dict[str, Any] = {
        "connector_id": connector_id,
        "operation": operation,
        "status": status,
        "duration_ms": "-" if duration_ms is None else duration_ms,
        "correlation_id": extra_context.pop("correlation_id", None) or "-",
    }
    additional = {key: value for key, value in extra_context.items() if key not in fields}

    message = f"{operation} {status or 'unknown'}"
    if counts:
        message += f" | counts={json.dumps(counts, default=str, sort_keys=True)}"
    if additional:
        message += f" | context={additional}"

    succeeded = (status or "").lower() in _SUCCESS_STATUSES
    log = logger.info if succeeded else logger.warning
    log(message, extra={**fields, **additional})
