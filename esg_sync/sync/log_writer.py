"""Append-only integration log writer."""

from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any, Protocol

from ..models.base import session_scope
from ..models.repository import IntegrationLogCreate, IntegrationLogRepository
from ..schemas.results import IntegrationLogView
from ..utils.audit import get_audit_logger
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "integration_log"})


class AuditSink(Protocol):
    """Long-term retention target for integration log entries."""

    def record(self, entry: Any) -> None:
        ...


class IntegrationLogWriter:
    """Persist integration log entries and forward them to the audit sink.

    Entries are never updated or deleted once written.
    """

    def __init__(self, audit_sink: AuditSink | None = None):
        self._audit_sink = audit_sink or get_audit_logger()

    def write(self, entry: IntegrationLogCreate) -> IntegrationLogView:
        with session_scope() as session:
            stored = IntegrationLogRepository(session).append(entry)
            view = IntegrationLogView.model_validate(stored)

        self._audit_sink.record(asdict(entry))
        log_method = logger.warning if entry.status == "failure" else logger.debug
        log_method(
            entry.error_message or f"{entry.operation_type} {entry.status}",
            extra={
                "connector_id": entry.connector_id,
                "correlation_id": entry.correlation_id,
                "operation": entry.operation_type,
                "status": entry.status,
                "attempt": entry.attempt,
                "duration_ms": entry.duration_ms,
            },
        )
        return view

    async def awrite(self, entry: IntegrationLogCreate) -> IntegrationLogView:
        """Write ``entry`` from a worker thread."""

        return await asyncio.to_thread(self.write, entry)

    def by_correlation(self, correlation_id: str) -> list[IntegrationLogView]:
        with session_scope() as session:
            rows = IntegrationLogRepository(session).by_correlation(correlation_id)
            return [IntegrationLogView.model_validate(row) for row in rows]

    def by_connector(self, connector_id: int, limit: int) -> list[IntegrationLogView]:
        with session_scope() as session:
            rows = IntegrationLogRepository(session).by_connector(connector_id, limit)
            return [IntegrationLogView.model_validate(row) for row in rows]
