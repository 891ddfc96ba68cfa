"""Non-mutating connection probe for connectors."""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..connectors import build_source_client
from ..connectors.base import CallResult, OutcomeKind
from ..exceptions import CredentialResolutionError
from ..models.repository import IntegrationLogCreate
from ..monitoring.metrics import record_outbound_attempt, record_probe, record_sync_rejection
from ..schemas.connector import AuthType, ConnectorView
from ..schemas.results import ProbeResult
from ..utils.audit import AuditAction, AuditOutcome, AuditLogger, get_audit_logger
from ..utils.logging import log_sync_outcome, setup_logger
from .credentials import Credential, CredentialResolver
from .log_writer import IntegrationLogWriter
from .rate_limiter import RateLimiterRegistry
from .registry import ConnectorRegistry

logger = setup_logger(__name__, context={"component": "prober"})

PROBE_OPERATION = "probe"

_FAILURE_MESSAGES = {
    OutcomeKind.AUTHENTICATION: "Invalid credentials",
    OutcomeKind.PERMISSION: "Missing permission",
    OutcomeKind.PERMANENT: "Connection test failed",
}


def granted_permissions(payload: Any) -> set[str] | None:
    """Return the permissions or scopes listed by a health response, if any."""

    if not isinstance(payload, dict):
        return None
    for key in ("permissions", "scopes"):
        value = payload.get(key)
        if isinstance(value, str):
            return {item.strip().lower() for item in value.replace(",", " ").split() if item}
        if isinstance(value, list):
            return {str(item).strip().lower() for item in value}
    return None


async def resolve_credential(
    connector: ConnectorView,
    resolver: CredentialResolver,
) -> Credential | None:
    """Resolve the connector's credential from a worker thread."""

    if connector.auth_type is AuthType.NONE:
        return None
    return await asyncio.to_thread(resolver.resolve, connector.auth_secret_ref)


class ConnectionProber:
    """Confirm credentials and capability grants with one authenticated call."""

    def __init__(
        self,
        registry: ConnectorRegistry,
        *,
        credential_resolver: CredentialResolver,
        log_writer: IntegrationLogWriter,
        rate_limiters: RateLimiterRegistry,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        self._registry = registry
        self._credentials = credential_resolver
        self._log_writer = log_writer
        self._rate_limiters = rate_limiters
        self._timeout = timeout
        self._transport = transport
        self._audit = audit_logger or get_audit_logger()

    async def probe(self, connector_id: int, initiated_by: str) -> ProbeResult:
        """Probe the connector; failures are reported in the result, never raised."""

        correlation_id = str(uuid.uuid4())
        try:
            return await self._probe(connector_id, initiated_by, correlation_id)
        except Exception as exc:
            logger.exception(
                "Connection test failed unexpectedly",
                extra={
                    "connector_id": connector_id,
                    "correlation_id": correlation_id,
                    "operation": PROBE_OPERATION,
                    "status": "failure",
                },
            )
            return ProbeResult(
                success=False,
                message="Connection test failed unexpectedly",
                correlation_id=correlation_id,
                error_details={"category": "internal_error", "exception": type(exc).__name__},
            )

    async def _probe(self, connector_id: int, initiated_by: str, correlation_id: str) -> ProbeResult:
        connector = await asyncio.to_thread(self._registry.find, connector_id)
        if connector is None:
            record_sync_rejection("not found")
            return ProbeResult(
                success=False,
                message=f"Connector with ID {connector_id} not found",
                correlation_id=correlation_id,
                error_details={"category": "not_found"},
            )
        if not connector.is_enabled:
            record_sync_rejection("disabled")
            return await self._finish(
                connector,
                initiated_by,
                correlation_id,
                ProbeResult(
                    success=False,
                    message="Connector is disabled",
                    correlation_id=correlation_id,
                    duration_ms=0,
                    error_details={"category": "disabled"},
                ),
            )

        try:
            credential = await resolve_credential(connector, self._credentials)
            client = build_source_client(
                connector, credential, timeout=self._timeout, transport=self._transport
            )
        except CredentialResolutionError as exc:
            return await self._finish(
                connector,
                initiated_by,
                correlation_id,
                ProbeResult(
                    success=False,
                    message="Credentials could not be resolved",
                    correlation_id=correlation_id,
                    duration_ms=0,
                    error_details={"category": "credentials", "detail": str(exc)},
                ),
            )

        await self._rate_limiters.acquire(connector.id, connector.rate_limit_per_minute)
        call = await client.check_health()
        record_outbound_attempt(PROBE_OPERATION, call.kind.value)
        return await self._finish(
            connector,
            initiated_by,
            correlation_id,
            self._evaluate(connector, call, correlation_id),
            call,
        )

    @staticmethod
    def _evaluate(connector: ConnectorView, call: CallResult, correlation_id: str) -> ProbeResult:
        if call.ok:
            granted = granted_permissions(call.payload)
            if granted is not None:
                missing = sorted(cap for cap in connector.capabilities if cap not in granted)
                if missing:
                    return ProbeResult(
                        success=False,
                        message=f"Missing permission for: {', '.join(missing)}",
                        correlation_id=correlation_id,
                        duration_ms=call.duration_ms,
                        error_details={
                            "category": "permission",
                            "missing_capabilities": missing,
                            "status_code": call.status_code,
                        },
                    )
            return ProbeResult(
                success=True,
                message="Connection successful",
                correlation_id=correlation_id,
                duration_ms=call.duration_ms,
            )

        if call.kind is OutcomeKind.TRANSIENT:
            category = call.error_details.get("category")
            if category == "timeout":
                message = "Connection timed out"
            elif category == "unreachable":
                message = "Endpoint unreachable"
            else:
                message = "Source system temporarily unavailable"
        else:
            message = _FAILURE_MESSAGES[call.kind]
        details = dict(call.error_details)
        details.setdefault("category", call.kind.value)
        if call.status_code is not None:
            details["status_code"] = call.status_code
        return ProbeResult(
            success=False,
            message=message,
            correlation_id=correlation_id,
            duration_ms=call.duration_ms,
            error_details=details,
        )

    async def _finish(
        self,
        connector: ConnectorView,
        initiated_by: str,
        correlation_id: str,
        result: ProbeResult,
        call: CallResult | None = None,
    ) -> ProbeResult:
        started_at = datetime.now(timezone.utc)
        duration_ms = result.duration_ms or 0
        await self._log_writer.awrite(
            IntegrationLogCreate(
                connector_id=connector.id,
                correlation_id=correlation_id,
                operation_type=PROBE_OPERATION,
                status="success" if result.success else "failure",
                initiated_by=initiated_by,
                http_method=call.method if call else None,
                endpoint=call.endpoint if call else None,
                http_status_code=call.status_code if call else None,
                error_message=None if result.success else result.message,
                error_details=(
                    json.dumps(result.error_details, default=str) if result.error_details else None
                ),
                duration_ms=duration_ms,
                started_at=started_at,
                completed_at=started_at + timedelta(milliseconds=duration_ms),
            )
        )
        record_probe(connector.connector_type.value, result.success)
        self._audit.log_sync_run(
            initiated_by,
            connector.id,
            AuditAction.PROBE_EXECUTED,
            AuditOutcome.SUCCESS if result.success else AuditOutcome.FAILURE,
            correlation_id=correlation_id,
            error_message=None if result.success else result.message,
        )
        log_sync_outcome(
            logger,
            connector.id,
            PROBE_OPERATION,
            "success" if result.success else "failure",
            duration_ms,
            correlation_id=correlation_id,
        )
        return result
