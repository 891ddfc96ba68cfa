"""Audit trail for connector changes, sync runs and approved overrides.

Audit events go to the ``esg_sync.audit`` logger so retention handlers can be
attached to it alone. Secrets and personal identifiers are redacted before an
event is written.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .logging import setup_logger

audit_logger = setup_logger("esg_sync.audit", context={"component": "audit"})

REDACTED = "***REDACTED***"


class AuditAction(str, Enum):
    """Enumeration of auditable actions."""

    CONNECTOR_CREATED = "connector.created"
    CONNECTOR_UPDATED = "connector.updated"
    CONNECTOR_ENABLED = "connector.enabled"
    CONNECTOR_DISABLED = "connector.disabled"

    PROBE_EXECUTED = "sync.probe"
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    SYNC_CANCELLED = "sync.cancelled"
    SYNC_REJECTED = "sync.rejected"
    OVERRIDE_APPLIED = "sync.override.applied"

    INTEGRATION_LOG = "integration.log"


class AuditOutcome(str, Enum):
    """Audit event outcome."""

    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    DENIED = "denied"


class AuditEvent(BaseModel):
    """One audited action on a connector, run or internal entity."""

    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    action: AuditAction
    outcome: AuditOutcome
    actor: str = Field(..., description="Platform user, or 'system' for scheduled work")
    actor_type: str = Field(default="user", description="user, service or system")
    resource: str | None = Field(default=None, description="e.g. 'connector:4' or 'entity:12'")
    resource_type: str | None = None
    correlation_id: str | None = Field(
        default=None, description="Correlation id of the sync run or probe"
    )
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None


def _last_four(label: str) -> Callable[[re.Match[str]], str]:
    return lambda match: f"{label}{match.group()[-4:]}"


class SensitiveFieldRedactor:
    """Masks credentials and personal identifiers in strings and nested data."""

    # (pattern, replacement) applied in order to every string value.
    PATTERNS: list[tuple[re.Pattern[str], str | Callable[[re.Match[str]], str]]] = [
        (
            re.compile(r"(api[_-]?key|apikey)[\"']?\s*[:=]\s*[\"']?([a-zA-Z0-9_\-]+)", re.IGNORECASE),
            rf"\1={REDACTED}",
        ),
        (
            re.compile(r"(password|passwd|pwd)[\"']?\s*[:=]\s*[\"']?([^\s\"']+)", re.IGNORECASE),
            rf"\1={REDACTED}",
        ),
        (
            re.compile(r"(token|bearer)[\"']?\s*[:=]\s*[\"']?([a-zA-Z0-9_.\-]+)", re.IGNORECASE),
            rf"\1={REDACTED}",
        ),
        # HR payloads may carry social security numbers.
        (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), _last_four("***-**-")),
    ]

    SENSITIVE_FIELD_NAMES = frozenset(
        {
            "password",
            "passwd",
            "pwd",
            "secret",
            "api_key",
            "apikey",
            "token",
            "bearer",
            "authorization",
            "credentials",
            "credential",
            "client_secret",
            "private_key",
            "database_url",
            "connection_string",
        }
    )

    @classmethod
    def redact_string(cls, text: str) -> str:
        if not isinstance(text, str):
            return text
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    @classmethod
    def _redact_value(cls, value: Any, depth: int) -> Any:
        if isinstance(value, dict):
            return cls.redact_dict(value, depth - 1)
        if isinstance(value, list):
            return [
                cls.redact_dict(item, depth - 1) if isinstance(item, dict) else cls.redact_string(str(item))
                for item in value
            ]
        if isinstance(value, str):
            return cls.redact_string(value)
        return value

    @classmethod
    def redact_dict(cls, data: dict[str, Any], max_depth: int = 10) -> dict[str, Any]:
        """Copy ``data`` with sensitive keys masked and string values scrubbed."""
        if max_depth <= 0:
            return data
        return {
            key: REDACTED
            if str(key).lower() in cls.SENSITIVE_FIELD_NAMES
            else cls._redact_value(value, max_depth)
            for key, value in data.items()
        }

    @classmethod
    def redact_object(cls, obj: Any) -> Any:
        """Redact dicts, strings, lists, dataclasses and pydantic models."""
        if isinstance(obj, BaseModel):
            obj = obj.model_dump(mode="json")
        elif is_dataclass(obj) and not isinstance(obj, type):
            obj = asdict(obj)

        if isinstance(obj, dict):
            return cls.redact_dict(obj)
        if isinstance(obj, list):
            return [cls.redact_object(item) for item in obj]
        if isinstance(obj, str):
            return cls.redact_string(obj)
        return obj


class AuditLogger:
    """Writes redacted audit events; also the default integration log sink."""

    def __init__(self, redact_sensitive: bool = True):
        self.redact_sensitive = redact_sensitive
        self.redactor = SensitiveFieldRedactor()

    def log_event(self, event: AuditEvent) -> None:
        event_dict = event.model_dump(exclude_none=True, mode="json")
        if self.redact_sensitive:
            event_dict = self.redactor.redact_dict(event_dict)

        audit_logger.info(
            f"AUDIT: {event.action.value}",
            extra={
                "audit_event": event_dict,
                "actor": event.actor,
                "action": event.action.value,
                "outcome": event.outcome.value,
                "resource": event.resource,
                "correlation_id": event.correlation_id or "-",
            },
        )

    def record(self, entry: Any) -> None:
        """Retain one integration log entry."""

        payload = self.redactor.redact_object(entry) if self.redact_sensitive else entry
        if not isinstance(payload, dict):
            payload = {"entry": str(payload)}

        succeeded = str(payload.get("status", "")) == "success"
        self.log_event(
            AuditEvent(
                action=AuditAction.INTEGRATION_LOG,
                outcome=AuditOutcome.SUCCESS if succeeded else AuditOutcome.FAILURE,
                actor=str(payload.get("initiated_by") or "system"),
                actor_type="service",
                resource=f"connector:{payload.get('connector_id')}",
                resource_type="integration_log",
                correlation_id=payload.get("correlation_id"),
                details=payload,
                error_message=payload.get("error_message"),
            )
        )

    def log_connector_change(
        self,
        actor: str,
        connector_id: int,
        action: AuditAction,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        error_message: str | None = None,
        **details: Any,
    ) -> None:
        self.log_event(
            AuditEvent(
                action=action,
                outcome=outcome,
                actor=actor,
                resource=f"connector:{connector_id}",
                resource_type="connector",
                error_message=error_message,
                details=details,
            )
        )

    def log_sync_run(
        self,
        actor: str,
        connector_id: int,
        action: AuditAction,
        outcome: AuditOutcome,
        correlation_id: str | None = None,
        actor_type: str = "user",
        error_message: str | None = None,
        **details: Any,
    ) -> None:
        """Log a run transition: started, completed, failed, cancelled or rejected."""
        self.log_event(
            AuditEvent(
                action=action,
                outcome=outcome,
                actor=actor,
                actor_type=actor_type,
                resource=f"connector:{connector_id}",
                resource_type="sync_run",
                correlation_id=correlation_id,
                error_message=error_message,
                details=details,
            )
        )

    def log_override(
        self,
        approver: str,
        connector_id: int,
        external_id: str,
        correlation_id: str,
        entity_id: int | None = None,
    ) -> None:
        """Log an approved overwrite of manually edited data."""
        resource = f"entity:{entity_id}" if entity_id is not None else f"external:{external_id}"
        self.log_event(
            AuditEvent(
                action=AuditAction.OVERRIDE_APPLIED,
                outcome=AuditOutcome.SUCCESS,
                actor=approver,
                resource=resource,
                resource_type="internal_entity",
                correlation_id=correlation_id,
                details={"connector_id": connector_id, "external_id": external_id},
            )
        )


_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get or create the process-wide audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(redact_sensitive=True)
    return _audit_logger
