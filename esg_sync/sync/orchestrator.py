"""Sync orchestration: fetch, map, reconcile, persist and summarize one run."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..connectors import build_source_client
from ..connectors.base import CallResult, SourceClient
from ..exceptions import (
    ConfigurationError,
    ConnectorAuthenticationError,
    EsgSyncError,
    MappingError,
    MissingCapabilityError,
    OverrideNotAuthorizedError,
    SyncAlreadyRunningError,
)
from ..models.base import session_scope
from ..models.repository import (
    IntegrationLogCreate,
    SyncRecordCreate,
    SyncRecordRepository,
    SyncRunRepository,
)
from ..monitoring.metrics import (
    decrement_active_runs,
    increment_active_runs,
    observe_sync_duration,
    record_record_outcome,
    record_sync_rejection,
    record_sync_run,
)
from ..schemas.connector import ConnectorView, mapping_for
from ..schemas.results import RunState, RunSummary
from ..utils.audit import AuditAction, AuditOutcome, AuditLogger, get_audit_logger
from ..utils.logging import log_sync_outcome, setup_logger
from .conflicts import ConflictResolver
from .credentials import CredentialResolver
from .entity_store import EntityStore, InternalEntity
from .log_writer import IntegrationLogWriter
from .mapping import FieldMapper, MappedRecord, serialize_payload
from .prober import resolve_credential
from .rate_limiter import RateLimiterRegistry
from .registry import ConnectorRegistry, RunHandle
from .retry import AttemptContext, RetryPolicyExecutor

logger = setup_logger(__name__, context={"component": "orchestrator"})

SYSTEM_ACTOR = "system"
PULL_CAPABILITY = "pull"
FETCH_OPERATION = "sync-fetch"
PERSIST_OPERATION = "sync-persist"

OverrideAuthorizer = Callable[[str], bool]

_COUNTER_FOR_STATUS = {
    "imported": "imported_count",
    "updated": "updated_count",
    "unchanged": "unchanged_count",
    "rejected": "rejected_count",
    "failed": "failed_count",
    "skipped": "skipped_count",
}


@dataclass(slots=True)
class _RunContext:
    connector: ConnectorView
    handle: RunHandle
    summary: RunSummary
    mapper: FieldMapper
    approved_override_by: str | None
    key_locks: defaultdict[str, asyncio.Lock] = field(
        default_factory=lambda: defaultdict(asyncio.Lock)
    )

    @property
    def correlation_id(self) -> str:
        return self.summary.correlation_id

    @property
    def actor(self) -> str:
        return self.summary.initiated_by


class SyncOrchestrator:
    """Drive sync runs for connectors.

    At most one run per connector is in flight; records within a run are
    processed by a bounded worker pool with writes serialized per external id.
    """

    def __init__(
        self,
        registry: ConnectorRegistry,
        *,
        entity_store: EntityStore,
        credential_resolver: CredentialResolver,
        log_writer: IntegrationLogWriter,
        rate_limiters: RateLimiterRegistry,
        retry_executor: RetryPolicyExecutor,
        conflict_resolver: ConflictResolver | None = None,
        override_authorizer: OverrideAuthorizer | None = None,
        record_workers: int = 4,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        self._registry = registry
        self._store = entity_store
        self._credentials = credential_resolver
        self._log_writer = log_writer
        self._rate_limiters = rate_limiters
        self._retry = retry_executor
        self._resolver = conflict_resolver or ConflictResolver()
        self._authorize_override = override_authorizer or (lambda approver: True)
        self._record_workers = max(record_workers, 1)
        self._timeout = timeout
        self._transport = transport
        self._audit = audit_logger or get_audit_logger()

    async def execute_sync(
        self,
        connector_id: int,
        initiated_by: str,
        is_scheduled: bool = False,
        approved_override_by: str | None = None,
    ) -> RunSummary:
        """Run one sync to completion and return its summary.

        Raises:
            ConnectorNotFoundError: If the connector does not exist
            ConnectorDisabledError: If the connector is disabled
            SyncAlreadyRunningError: If a run is already in flight for the connector
            MissingCapabilityError: If the connector does not declare ``pull``
            OverrideNotAuthorizedError: If ``approved_override_by`` may not approve overrides
            CredentialResolutionError: If the connector's secret cannot be resolved
            ConnectorAuthenticationError: If the source rejects the credentials
        """

        correlation_id = str(uuid.uuid4())
        actor = SYSTEM_ACTOR if is_scheduled else initiated_by

        # Must run before the first await so back-to-back requests see the guard.
        try:
            connector, handle = self._registry.begin_run(connector_id, correlation_id, actor)
        except (ConfigurationError, SyncAlreadyRunningError) as exc:
            self._reject(connector_id, actor, correlation_id, exc)
            raise

        connector_type = connector.connector_type.value
        increment_active_runs(connector_type)
        try:
            try:
                mapper = FieldMapper(mapping_for(connector_type, connector.mapping_config))
                client = await self._prepare(connector, approved_override_by)
            except ConfigurationError as exc:
                self._reject(connector_id, actor, correlation_id, exc)
                raise
            context = _RunContext(
                connector=connector,
                handle=handle,
                summary=RunSummary(
                    connector_id=connector.id,
                    correlation_id=correlation_id,
                    initiated_by=actor,
                    is_scheduled=is_scheduled,
                    started_at=datetime.now(timezone.utc),
                ),
                mapper=mapper,
                approved_override_by=approved_override_by,
            )
            return await self._run(context, client)
        finally:
            decrement_active_runs(connector_type)
            self._registry.end_run(handle)

    async def _prepare(
        self,
        connector: ConnectorView,
        approved_override_by: str | None,
    ) -> SourceClient:
        if PULL_CAPABILITY not in connector.capabilities:
            raise MissingCapabilityError(connector.id, PULL_CAPABILITY)
        if approved_override_by is not None and (
            not approved_override_by.strip() or not self._authorize_override(approved_override_by)
        ):
            raise OverrideNotAuthorizedError(approved_override_by)
        credential = await resolve_credential(connector, self._credentials)
        return build_source_client(
            connector, credential, timeout=self._timeout, transport=self._transport
        )

    def _reject(
        self,
        connector_id: int,
        actor: str,
        correlation_id: str,
        exc: EsgSyncError,
    ) -> None:
        reason = getattr(exc, "reason", type(exc).__name__)
        record_sync_rejection(reason)
        self._audit.log_sync_run(
            actor,
            connector_id,
            AuditAction.SYNC_REJECTED,
            AuditOutcome.DENIED,
            correlation_id=correlation_id,
            error_message=str(exc),
            reason=reason,
        )
        logger.warning(
            f"Sync rejected: {exc}",
            extra={
                "connector_id": connector_id,
                "correlation_id": correlation_id,
                "operation": "sync-run",
                "status": "rejected",
            },
        )

    async def _run(self, context: _RunContext, client: SourceClient) -> RunSummary:
        connector = context.connector
        summary = context.summary
        started = time.perf_counter()
        self._audit.log_sync_run(
            context.actor,
            connector.id,
            AuditAction.SYNC_STARTED,
            AuditOutcome.SUCCESS,
            correlation_id=context.correlation_id,
            actor_type="system" if summary.is_scheduled else "user",
            approved_override_by=context.approved_override_by,
        )

        if context.handle.cancelled:
            return await self._finalize(
                context, started, "Sync cancelled before fetch", stopped_early=True
            )

        fetch = await self._fetch(context, client)
        if fetch.is_auth_failure:
            message = fetch.error_message or "Source system rejected the connector credentials"
            await self._finalize(context, started, message, fetch_failed=True)
            raise ConnectorAuthenticationError(
                connector.id,
                message,
                correlation_id=context.correlation_id,
                status_code=fetch.status_code,
            )
        if not fetch.ok:
            summary.failed_count = 1
            return await self._finalize(
                context,
                started,
                f"Fetch failed: {fetch.error_message or fetch.kind.value}",
                fetch_failed=True,
            )

        records: list[Any] = fetch.payload or []
        summary.total_records = len(records)
        await self._process_all(context, records)
        return await self._finalize(context, started)

    async def _fetch(self, context: _RunContext, client: SourceClient) -> CallResult:
        connector = context.connector

        async def _fetch_once() -> CallResult:
            await self._rate_limiters.acquire(connector.id, connector.rate_limit_per_minute)
            return await client.fetch_records()

        return await self._retry.execute(
            _fetch_once,
            connector.retry_policy,
            AttemptContext(
                connector_id=connector.id,
                correlation_id=context.correlation_id,
                operation_type=FETCH_OPERATION,
                initiated_by=context.actor,
            ),
        )

    async def _process_all(self, context: _RunContext, records: list[Any]) -> None:
        semaphore = asyncio.Semaphore(self._record_workers)

        async def _worker(record: Any) -> None:
            async with semaphore:
                if context.handle.cancelled:
                    self._count(context, "skipped")
                    return
                status = await self._process_record(context, record)
                self._count(context, status)

        # The task group returns only once every worker has finished, so no
        # write outlives the run guard released by execute_sync.
        async with asyncio.TaskGroup() as group:
            for record in records:
                group.create_task(_worker(record))

    def _count(self, context: _RunContext, status: str) -> None:
        summary = context.summary
        if status == "conflict_preserved":
            summary.conflicts_preserved_count += 1
        elif status == "conflict_overridden":
            summary.conflicts_overridden_count += 1
        else:
            counter = _COUNTER_FOR_STATUS[status]
            setattr(summary, counter, getattr(summary, counter) + 1)
        if status != "skipped":
            record_record_outcome(context.connector.connector_type.value, status)

    async def _process_record(self, context: _RunContext, raw: Any) -> str:
        """Process one record and return its outcome bucket.

        Any error raised while handling the record, including a failed write
        of its own sync record or log entry, counts the record as ``failed``.
        """

        started_at = datetime.now(timezone.utc)
        try:
            return await self._handle_record(context, raw, started_at)
        except Exception as exc:
            external_id = FieldMapper.external_id_of(raw)
            log_extra = {
                "connector_id": context.connector.id,
                "correlation_id": context.correlation_id,
                "operation": PERSIST_OPERATION,
                "status": "failure",
            }
            logger.exception(
                f"Unexpected error processing external record '{external_id}'", extra=log_extra
            )
            try:
                await self._persist(
                    context,
                    SyncRecordCreate(
                        connector_id=context.connector.id,
                        correlation_id=context.correlation_id,
                        status="failed",
                        initiated_by=context.actor,
                        external_id=external_id,
                        raw_payload=serialize_payload(raw),
                        rejection_reason=f"{type(exc).__name__}: {exc}",
                    ),
                    started_at,
                )
            except Exception:
                logger.exception(
                    f"Could not record failure of external record '{external_id}'", extra=log_extra
                )
            return "failed"

    async def _handle_record(self, context: _RunContext, raw: Any, started_at: datetime) -> str:
        try:
            mapped = context.mapper.map_record(raw)
        except MappingError as exc:
            await self._persist(
                context,
                SyncRecordCreate(
                    connector_id=context.connector.id,
                    correlation_id=context.correlation_id,
                    status="rejected",
                    initiated_by=context.actor,
                    external_id=FieldMapper.external_id_of(raw),
                    raw_payload=serialize_payload(raw),
                    rejection_reason=str(exc),
                ),
                started_at,
            )
            return "rejected"

        async with context.key_locks[mapped.external_id]:
            return await self._reconcile(context, mapped, started_at)

    async def _reconcile(
        self,
        context: _RunContext,
        mapped: MappedRecord,
        started_at: datetime,
    ) -> str:
        connector = context.connector
        existing = await asyncio.to_thread(
            self._store.find_by_external_key, connector.id, mapped.external_id
        )
        resolution = self._resolver.resolve(existing, mapped.values, context.approved_override_by)

        entity_id = existing.id if existing is not None else None
        if resolution.writes:
            synced_at = datetime.now(timezone.utc)
            entity = InternalEntity(
                id=entity_id,
                connector_id=connector.id,
                external_id=mapped.external_id,
                entity_type=context.mapper.entity_type,
                values=dict(mapped.values),
                raw_payload=mapped.raw_payload,
                last_synced_at=synced_at,
                last_synced_values=dict(mapped.values),
                manually_edited_at=existing.manually_edited_at if existing else None,
                manually_edited_by=existing.manually_edited_by if existing else None,
            )
            written = await asyncio.to_thread(self._store.write, entity)
            entity_id = written.id

        await self._persist(
            context,
            SyncRecordCreate(
                connector_id=connector.id,
                correlation_id=context.correlation_id,
                status=resolution.record_status,
                initiated_by=context.actor,
                external_id=mapped.external_id,
                raw_payload=mapped.raw_payload,
                entity_id=entity_id,
                conflict_detected=resolution.conflict_detected,
                conflict_resolution=resolution.conflict_resolution,
                overwrote_approved_data=resolution.overwrote_approved_data,
                approved_override_by=resolution.approved_override_by,
            ),
            started_at,
        )
        if resolution.overwrote_approved_data and resolution.approved_override_by:
            self._audit.log_override(
                resolution.approved_override_by,
                connector.id,
                mapped.external_id,
                context.correlation_id,
                entity_id=entity_id,
            )

        if resolution.conflict_detected:
            return f"conflict_{resolution.conflict_resolution}"
        return resolution.record_status

    async def _persist(
        self,
        context: _RunContext,
        record: SyncRecordCreate,
        started_at: datetime,
    ) -> None:
        def _write() -> None:
            with session_scope() as session:
                SyncRecordRepository(session).create(record)

        await asyncio.to_thread(_write)

        completed_at = datetime.now(timezone.utc)
        failed = record.status in ("rejected", "failed")
        details: dict[str, Any] = {"external_id": record.external_id, "outcome": record.status}
        if record.conflict_detected:
            details["conflict_resolution"] = record.conflict_resolution
        if record.approved_override_by:
            details["approved_override_by"] = record.approved_override_by
        await self._log_writer.awrite(
            IntegrationLogCreate(
                connector_id=record.connector_id,
                correlation_id=record.correlation_id,
                operation_type=PERSIST_OPERATION,
                status="failure" if failed else "success",
                initiated_by=record.initiated_by,
                error_message=record.rejection_reason if failed else None,
                error_details=json.dumps(details, default=str),
                duration_ms=max(int((completed_at - started_at) / timedelta(milliseconds=1)), 0),
                started_at=started_at,
                completed_at=completed_at,
            )
        )

    async def _finalize(
        self,
        context: _RunContext,
        started: float,
        message: str | None = None,
        *,
        fetch_failed: bool = False,
        stopped_early: bool = False,
    ) -> RunSummary:
        summary = context.summary
        connector_type = context.connector.connector_type.value
        # A cancel that arrives after the last record started changes nothing.
        if context.handle.cancelled and (stopped_early or summary.skipped_count > 0):
            summary.state = RunState.CANCELLED
        elif fetch_failed or summary.failed_count > 0:
            summary.state = RunState.FAILED
        else:
            summary.state = RunState.SUCCEEDED
        summary.success = summary.state is RunState.SUCCEEDED
        summary.completed_at = datetime.now(timezone.utc)
        summary.message = message or self._describe(summary)

        duration = time.perf_counter() - started
        record_sync_run(connector_type, summary.state.value)
        observe_sync_duration(connector_type, duration)
        await self._record_run(summary, int(duration * 1000))

        action = {
            RunState.SUCCEEDED: AuditAction.SYNC_COMPLETED,
            RunState.FAILED: AuditAction.SYNC_FAILED,
            RunState.CANCELLED: AuditAction.SYNC_CANCELLED,
        }[summary.state]
        self._audit.log_sync_run(
            summary.initiated_by,
            summary.connector_id,
            action,
            AuditOutcome.SUCCESS if summary.success else AuditOutcome.FAILURE,
            correlation_id=summary.correlation_id,
            actor_type="system" if summary.is_scheduled else "user",
            error_message=None if summary.success else summary.message,
            **summary.counts(),
        )
        log_sync_outcome(
            logger,
            summary.connector_id,
            "sync-run",
            summary.state.value,
            int(duration * 1000),
            correlation_id=summary.correlation_id,
            counts=summary.counts(),
        )
        return summary

    async def _record_run(self, summary: RunSummary, duration_ms: int) -> None:
        def _write() -> None:
            with session_scope() as session:
                SyncRunRepository(session).create(summary, duration_ms)

        try:
            await asyncio.to_thread(_write)
        except Exception:
            # The summary is still returned; the run is missing from run search only.
            logger.exception(
                "Could not record sync run",
                extra={
                    "connector_id": summary.connector_id,
                    "correlation_id": summary.correlation_id,
                    "operation": "sync-run",
                    "status": summary.state.value,
                },
            )

    @staticmethod
    def _describe(summary: RunSummary) -> str:
        parts = [
            f"{summary.imported_count} imported",
            f"{summary.updated_count} updated",
            f"{summary.unchanged_count} unchanged",
            f"{summary.conflicts_preserved_count} conflicts preserved",
            f"{summary.conflicts_overridden_count} conflicts overridden",
            f"{summary.rejected_count} rejected",
            f"{summary.failed_count} failed",
        ]
        if summary.skipped_count:
            parts.append(f"{summary.skipped_count} skipped")
        prefix = {
            RunState.SUCCEEDED: "Sync completed",
            RunState.FAILED: "Sync completed with failures",
            RunState.CANCELLED: "Sync cancelled",
        }[summary.state]
        return f"{prefix}: {', '.join(parts)}"
