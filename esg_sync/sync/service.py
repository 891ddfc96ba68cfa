"""Facade exposing the sync pipeline to the API, CLI and schedulers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import httpx

from ..exceptions import ConfigurationError
from ..models.base import session_scope
from ..models.repository import (
    IntegrationLogRepository,
    SqlEntityStore,
    SyncRecordRepository,
    SyncRunRepository,
)
from ..schemas.connector import ConnectorUpdate, ConnectorView
from ..schemas.results import (
    IntegrationLogView,
    ProbeResult,
    RunDetails,
    RunSearchResult,
    RunState,
    RunStatistics,
    RunSummary,
    SyncRecordView,
    SyncRunView,
)
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import setup_logger
from .conflicts import ConflictResolver
from .credentials import CompositeCredentialResolver, CredentialResolver, build_default_resolver
from .entity_store import EntityStore, as_utc
from .log_writer import AuditSink, IntegrationLogWriter
from .orchestrator import OverrideAuthorizer, SyncOrchestrator
from .prober import ConnectionProber
from .rate_limiter import Clock, RateLimiterRegistry, Sleep
from .registry import ConnectorRegistry
from .retry import RetryPolicyExecutor

logger = setup_logger(__name__, context={"component": "sync_service"})

SUCCEEDED_RECORD_STATUSES = frozenset({"imported", "updated", "unchanged", "conflict"})
FAILED_RECORD_STATUSES = frozenset({"rejected", "failed"})


def approver_list_authorizer(approvers: list[str]) -> OverrideAuthorizer:
    """Authorize any approver when ``approvers`` is empty, otherwise only listed ones."""

    allowed = {approver.strip() for approver in approvers if approver.strip()}

    def _authorize(approver: str) -> bool:
        return not allowed or approver.strip() in allowed

    return _authorize


class SyncService:
    """Single entry point for probes, sync runs, cancellation and history queries."""

    def __init__(
        self,
        *,
        registry: ConnectorRegistry | None = None,
        entity_store: EntityStore | None = None,
        credential_resolver: CredentialResolver | None = None,
        audit_sink: AuditSink | None = None,
        override_authorizer: OverrideAuthorizer | None = None,
        settings: GlobalSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ):
        self.settings = settings or get_settings()
        sync_settings = self.settings.sync
        self.registry = registry or ConnectorRegistry()
        self.entity_store = entity_store or SqlEntityStore()
        self.log_writer = IntegrationLogWriter(audit_sink)
        self.rate_limiters = RateLimiterRegistry(
            sync_settings.rate_limit_window_seconds, clock=clock, sleep=sleep
        )
        self.credentials = credential_resolver or build_default_resolver(self.settings)

        self.prober = ConnectionProber(
            self.registry,
            credential_resolver=self.credentials,
            log_writer=self.log_writer,
            rate_limiters=self.rate_limiters,
            timeout=sync_settings.http_timeout_seconds,
            transport=transport,
        )
        self.orchestrator = SyncOrchestrator(
            self.registry,
            entity_store=self.entity_store,
            credential_resolver=self.credentials,
            log_writer=self.log_writer,
            rate_limiters=self.rate_limiters,
            retry_executor=RetryPolicyExecutor(self.log_writer, sleep=sleep),
            conflict_resolver=ConflictResolver(),
            override_authorizer=override_authorizer
            or approver_list_authorizer(sync_settings.override_approvers),
            record_workers=sync_settings.record_workers,
            timeout=sync_settings.http_timeout_seconds,
            transport=transport,
        )

    def update_connector(
        self, connector_id: int, update: ConnectorUpdate, user: str
    ) -> ConnectorView:
        """Apply a connector update.

        Sending ``auth_type`` or ``auth_secret_ref`` drops the cached credentials
        of both the previous and the new reference, so a rotated secret is read
        again on the next call.
        """

        previous = self.registry.get(connector_id)
        updated = self.registry.update(connector_id, update, user)
        auth_fields = {"auth_type", "auth_secret_ref"} & update.model_fields_set
        if auth_fields and isinstance(self.credentials, CompositeCredentialResolver):
            for secret_ref in {previous.auth_secret_ref, updated.auth_secret_ref}:
                if secret_ref:
                    self.credentials.invalidate(secret_ref)
            logger.info(
                "Dropped cached credentials after connector update",
                extra={"connector_id": connector_id, "operation": "update", "status": "success"},
            )
        return updated

    async def probe(self, connector_id: int, user: str) -> ProbeResult:
        return await self.prober.probe(connector_id, user)

    async def execute_sync(
        self,
        connector_id: int,
        user: str,
        is_scheduled: bool = False,
        approved_override_by: str | None = None,
    ) -> RunSummary:
        return await self.orchestrator.execute_sync(
            connector_id, user, is_scheduled, approved_override_by
        )

    def cancel_sync(self, connector_id: int) -> bool:
        """Request cancellation of the connector's active run; False when none is active."""

        handle = self.registry.cancel_run(connector_id)
        if handle is None:
            return False
        logger.info(
            "Cancellation requested",
            extra={
                "connector_id": connector_id,
                "correlation_id": handle.correlation_id,
                "operation": "sync-run",
                "status": "cancelling",
            },
        )
        return True

    def _limit(self, limit: int | None) -> int:
        return limit if limit is not None and limit > 0 else self.settings.sync.history_default_limit

    def _records(
        self,
        query: Callable[[SyncRecordRepository], list],
    ) -> list[SyncRecordView]:
        with session_scope() as session:
            return [SyncRecordView.model_validate(row) for row in query(SyncRecordRepository(session))]

    def get_sync_history(self, connector_id: int, limit: int | None = None) -> list[SyncRecordView]:
        return self._records(lambda repo: repo.history(connector_id, self._limit(limit)))

    def get_rejected_records(
        self, connector_id: int, limit: int | None = None
    ) -> list[SyncRecordView]:
        return self._records(lambda repo: repo.rejected(connector_id, self._limit(limit)))

    def get_conflicts(self, connector_id: int, limit: int | None = None) -> list[SyncRecordView]:
        return self._records(lambda repo: repo.conflicts(connector_id, self._limit(limit)))

    def get_override_history(
        self,
        connector_id: int,
        limit: int | None = None,
        *,
        approved_by: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[SyncRecordView]:
        """Return records where an approved override overwrote manual data.

        ``approved_by`` narrows to one approver; ``start`` (inclusive) and
        ``end`` (exclusive) bound the sync time.
        """

        start, end = as_utc(start), as_utc(end)
        _check_window(start, end)
        return self._records(
            lambda repo: repo.overrides(
                connector_id, self._limit(limit), approved_by=approved_by, start=start, end=end
            )
        )

    def get_records_by_correlation_id(self, correlation_id: str) -> list[SyncRecordView]:
        return self._records(lambda repo: repo.by_correlation(correlation_id))

    def get_logs_by_correlation_id(self, correlation_id: str) -> list[IntegrationLogView]:
        return self.log_writer.by_correlation(correlation_id)

    def get_connector_logs(
        self, connector_id: int, limit: int | None = None
    ) -> list[IntegrationLogView]:
        return self.log_writer.by_connector(connector_id, self._limit(limit))

    def search_runs(
        self,
        *,
        connector_id: int | None = None,
        state: RunState | None = None,
        initiated_by: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> RunSearchResult:
        """Search finalized runs, newest first."""

        if page < 1:
            raise ConfigurationError("page must be 1 or greater")
        start, end = as_utc(start), as_utc(end)
        _check_window(start, end)
        size = self._limit(page_size)
        with session_scope() as session:
            runs, total = SyncRunRepository(session).search(
                connector_id=connector_id,
                state=state.value if state is not None else None,
                initiated_by=initiated_by,
                start=start,
                end=end,
                offset=(page - 1) * size,
                limit=size,
            )
            return RunSearchResult(
                total=total, runs=[SyncRunView.model_validate(run) for run in runs]
            )

    def get_run_details(self, correlation_id: str) -> RunDetails | None:
        """Return one run with its sync records and integration log, or None."""

        with session_scope() as session:
            run = SyncRunRepository(session).get(correlation_id)
            if run is None:
                return None
            return RunDetails(
                run=SyncRunView.model_validate(run),
                records=[
                    SyncRecordView.model_validate(row)
                    for row in SyncRecordRepository(session).by_correlation(correlation_id)
                ],
                logs=[
                    IntegrationLogView.model_validate(row)
                    for row in IntegrationLogRepository(session).by_correlation(correlation_id)
                ],
            )

    def get_statistics(
        self,
        connector_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> RunStatistics:
        """Aggregate runs, record outcomes and outbound calls inside ``[start, end)``.

        ``end`` defaults to now and ``start`` to ``statistics_window_days``
        before ``end``. Omitting ``connector_id`` covers every connector.
        """

        end = as_utc(end) or datetime.now(timezone.utc)
        start = as_utc(start) or end - timedelta(days=self.settings.sync.statistics_window_days)
        _check_window(start, end)

        with session_scope() as session:
            runs = SyncRunRepository(session).in_window(connector_id, start, end)
            record_counts = SyncRecordRepository(session).status_counts(connector_id, start, end)
            call_counts = IntegrationLogRepository(session).outbound_call_counts(
                connector_id, start, end
            )
            runs_by_state = {state.value: 0 for state in RunState}
            for run in runs:
                runs_by_state[run.state] = runs_by_state.get(run.state, 0) + 1
            durations = [run.duration_ms for run in runs]

        return RunStatistics(
            connector_id=connector_id,
            start=start,
            end=end,
            total_runs=len(runs),
            runs_by_state=runs_by_state,
            records_processed=sum(record_counts.values()),
            records_succeeded=sum(
                count for status, count in record_counts.items()
                if status in SUCCEEDED_RECORD_STATUSES
            ),
            records_failed=sum(
                count for status, count in record_counts.items()
                if status in FAILED_RECORD_STATUSES
            ),
            api_calls_total=sum(call_counts.values()),
            api_calls_succeeded=call_counts.get("success", 0),
            api_calls_failed=sum(
                count for status, count in call_counts.items() if status != "success"
            ),
            average_run_duration_ms=sum(durations) / len(durations) if durations else 0.0,
        )


def _check_window(start: datetime | None, end: datetime | None) -> None:
    if start is not None and end is not None and start > end:
        raise ConfigurationError("start must not be after end")
