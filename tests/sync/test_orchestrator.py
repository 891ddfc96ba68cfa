"""End-to-end tests for sync runs against a mock source system."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from esg_sync.exceptions import (
    ConnectorAuthenticationError,
    ConnectorDisabledError,
    ConnectorNotFoundError,
    MissingCapabilityError,
    OverrideNotAuthorizedError,
    SyncAlreadyRunningError,
)
from esg_sync.models.repository import SqlEntityStore
from esg_sync.schemas.connector import RetryPolicy
from esg_sync.schemas.results import RunState, RunSummary
from esg_sync.sync.entity_store import InternalEntity

LAST_SYNC = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

LEDGER_RECORDS: list[dict[str, Any]] = [
    {"externalId": "T-1", "amount": 100, "category": "travel"},
    {"externalId": "T-2", "amount": 200, "category": "energy"},
    {"externalId": "T-3", "amount": 350, "category": "capex"},
    {"externalId": "T-4", "amount": 400, "category": "opex"},
    {"externalId": "T-5", "category": "travel"},
]


def _seed(
    store: SqlEntityStore,
    connector_id: int,
    external_id: str,
    values: dict[str, Any],
    *,
    edited_by: str | None = None,
) -> InternalEntity:
    entity = store.write(
        InternalEntity(
            connector_id=connector_id,
            external_id=external_id,
            values=values,
            last_synced_at=LAST_SYNC,
            last_synced_values=values,
        )
    )
    if edited_by is not None:
        store.mark_manually_edited(entity.id, edited_by)
    return entity


def _assert_conserved(summary: RunSummary) -> None:
    assert summary.processed_count + summary.skipped_count == summary.total_records


@pytest.fixture
def ledger(make_service, create_connector, mock_source, entity_store):
    """Finance connector with two existing entities, one of them manually edited."""

    source = mock_source(fetch=[(200, {"transactions": LEDGER_RECORDS})])
    service = make_service(source)
    connector = create_connector(service)
    _seed(entity_store, connector.id, "T-3", {"amount": 300, "category": "capex"})
    _seed(entity_store, connector.id, "T-4", {"amount": 450, "category": "opex"}, edited_by="alice")
    return service, connector, source


@pytest.mark.asyncio
async def test_mixed_batch_summary(ledger, entity_store) -> None:
    service, connector, source = ledger

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.state is RunState.SUCCEEDED
    assert summary.success is True
    assert summary.total_records == 5
    assert summary.imported_count == 2
    assert summary.updated_count == 1
    assert summary.unchanged_count == 0
    assert summary.conflicts_preserved_count == 1
    assert summary.conflicts_overridden_count == 0
    assert summary.rejected_count == 1
    assert summary.failed_count == 0
    assert summary.initiated_by == "alice"
    assert summary.completed_at is not None
    _assert_conserved(summary)
    assert source.fetch_count == 1

    assert entity_store.find_by_external_key(connector.id, "T-3").values == {
        "amount": 350,
        "category": "capex",
    }
    # Manual value survives the conflict.
    assert entity_store.find_by_external_key(connector.id, "T-4").values == {
        "amount": 450,
        "category": "opex",
    }

    records = service.get_records_by_correlation_id(summary.correlation_id)
    assert sorted((r.external_id, r.status) for r in records) == [
        ("T-1", "imported"),
        ("T-2", "imported"),
        ("T-3", "updated"),
        ("T-4", "conflict"),
        ("T-5", "rejected"),
    ]
    rejected = service.get_rejected_records(connector.id)
    assert [r.rejection_reason for r in rejected] == ["Required field 'amount' is missing"]
    assert json.loads(rejected[0].raw_payload) == LEDGER_RECORDS[4]

    conflicts = service.get_conflicts(connector.id)
    assert len(conflicts) == 1
    assert conflicts[0].conflict_resolution == "preserved"
    assert conflicts[0].overwrote_approved_data is False


@pytest.mark.asyncio
async def test_run_log_entries_share_correlation_id(ledger) -> None:
    service, connector, _ = ledger

    summary = await service.execute_sync(connector.id, "alice")

    entries = service.get_logs_by_correlation_id(summary.correlation_id)
    operations = [entry.operation_type for entry in entries]
    assert operations[0] == "sync-fetch"
    assert operations.count("sync-fetch") == 1
    assert operations.count("sync-persist") == 5
    persist_failures = [
        e for e in entries if e.operation_type == "sync-persist" and e.status == "failure"
    ]
    assert len(persist_failures) == 1
    assert json.loads(persist_failures[0].error_details)["external_id"] == "T-5"


@pytest.mark.asyncio
async def test_repeat_run_is_idempotent(ledger, entity_store) -> None:
    service, connector, _ = ledger
    await service.execute_sync(connector.id, "alice")

    second = await service.execute_sync(connector.id, "alice")

    assert second.imported_count == 0
    assert second.updated_count == 0
    assert second.unchanged_count == 3
    assert second.conflicts_preserved_count == 1
    assert second.rejected_count == 1
    _assert_conserved(second)
    assert entity_store.find_by_external_key(connector.id, "T-4").values["amount"] == 450


@pytest.mark.asyncio
async def test_approved_override_overwrites_manual_edit(ledger, entity_store) -> None:
    service, connector, _ = ledger

    summary = await service.execute_sync(connector.id, "alice", approved_override_by="controller")

    assert summary.conflicts_overridden_count == 1
    assert summary.conflicts_preserved_count == 0
    entity = entity_store.find_by_external_key(connector.id, "T-4")
    assert entity.values == {"amount": 400, "category": "opex"}
    assert entity.manually_edited_by == "alice"
    assert not entity.touched_since_sync()

    overrides = service.get_override_history(connector.id)
    assert len(overrides) == 1
    assert overrides[0].external_id == "T-4"
    assert overrides[0].approved_override_by == "controller"
    assert overrides[0].conflict_resolution == "overridden"

    # Once overridden, the entity is no longer touched; later runs see no conflict.
    follow_up = await service.execute_sync(connector.id, "alice")
    assert follow_up.conflicts_preserved_count == 0
    assert follow_up.unchanged_count == 4


@pytest.mark.asyncio
async def test_unauthorized_override_is_rejected(
    make_service, create_connector, mock_source
) -> None:
    source = mock_source()
    service = make_service(source, override_authorizer=lambda approver: approver == "cfo")
    connector = create_connector(service)

    with pytest.raises(OverrideNotAuthorizedError):
        await service.execute_sync(connector.id, "alice", approved_override_by="intern")

    assert source.requests == []
    assert service.registry.active_run(connector.id) is None
    summary = await service.execute_sync(connector.id, "alice", approved_override_by="cfo")
    assert summary.success


@pytest.mark.asyncio
async def test_concurrent_runs_are_rejected(ledger) -> None:
    service, connector, _ = ledger

    results = await asyncio.gather(
        service.execute_sync(connector.id, "alice"),
        service.execute_sync(connector.id, "bob"),
        return_exceptions=True,
    )

    summaries = [r for r in results if isinstance(r, RunSummary)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(summaries) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], SyncAlreadyRunningError)
    assert "already running" in str(errors[0])
    assert errors[0].correlation_id == summaries[0].correlation_id
    assert len(service.get_records_by_correlation_id(summaries[0].correlation_id)) == 5


@pytest.mark.asyncio
async def test_disabled_connector_makes_no_outbound_call(
    make_service, create_connector, mock_source
) -> None:
    source = mock_source()
    service = make_service(source)
    connector = create_connector(service, enabled=False)

    with pytest.raises(ConnectorDisabledError, match="disabled"):
        await service.execute_sync(connector.id, "alice")

    assert source.requests == []
    assert service.get_sync_history(connector.id) == []
    assert service.get_connector_logs(connector.id) == []


@pytest.mark.asyncio
async def test_unknown_connector(make_service, mock_source) -> None:
    service = make_service(mock_source())

    with pytest.raises(ConnectorNotFoundError):
        await service.execute_sync(404, "alice")


@pytest.mark.asyncio
async def test_connector_without_pull_capability(
    make_service, create_connector, mock_source
) -> None:
    source = mock_source()
    service = make_service(source)
    connector = create_connector(service, capabilities=["webhook"])

    with pytest.raises(MissingCapabilityError):
        await service.execute_sync(connector.id, "alice")

    assert source.requests == []
    assert service.registry.active_run(connector.id) is None


@pytest.mark.asyncio
async def test_fetch_failure_exhausts_retries(
    make_service, create_connector, mock_source, fake_sleep
) -> None:
    source = mock_source(fetch=[(503, {"error": "maintenance"})])
    service = make_service(source)
    connector = create_connector(service)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.state is RunState.FAILED
    assert summary.success is False
    assert summary.failed_count == 1
    assert summary.total_records == 0
    assert summary.message.startswith("Fetch failed")
    assert source.fetch_count == 3
    assert fake_sleep.delays == [1.0, 1.0]

    entries = service.get_logs_by_correlation_id(summary.correlation_id)
    assert [(e.attempt, e.status) for e in entries] == [
        (1, "retrying"),
        (2, "retrying"),
        (3, "failure"),
    ]
    assert service.get_sync_history(connector.id) == []


@pytest.mark.asyncio
async def test_transient_fetch_failure_recovers(
    make_service, create_connector, mock_source, finance_mapping
) -> None:
    source = mock_source(
        fetch=[
            httpx.ReadTimeout("slow"),
            (200, {"transactions": [{"externalId": "T-1", "amount": 1}]}),
        ]
    )
    service = make_service(source)
    connector = create_connector(service, mapping_config=finance_mapping)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.success
    assert summary.imported_count == 1
    assert source.fetch_count == 2


@pytest.mark.asyncio
async def test_authentication_failure_raises(make_service, create_connector, mock_source) -> None:
    source = mock_source(fetch=[(401, {"error": "expired token"})])
    service = make_service(source)
    connector = create_connector(
        service, retry_policy=RetryPolicy(max_attempts=3, base_delay_seconds=1.0)
    )

    with pytest.raises(ConnectorAuthenticationError) as excinfo:
        await service.execute_sync(connector.id, "alice")

    assert excinfo.value.status_code == 401
    assert source.fetch_count == 1
    entries = service.get_logs_by_correlation_id(excinfo.value.correlation_id)
    assert [(e.operation_type, e.status) for e in entries] == [("sync-fetch", "failure")]
    assert service.registry.active_run(connector.id) is None


@pytest.mark.asyncio
async def test_scheduled_run_is_attributed_to_system(ledger) -> None:
    service, connector, _ = ledger

    summary = await service.execute_sync(connector.id, "scheduler-bot", is_scheduled=True)

    assert summary.initiated_by == "system"
    assert summary.is_scheduled is True
    records = service.get_records_by_correlation_id(summary.correlation_id)
    assert {r.initiated_by for r in records} == {"system"}


@pytest.mark.asyncio
async def test_record_failure_marks_run_failed(make_service, create_connector, mock_source) -> None:
    class FlakyStore(SqlEntityStore):
        def write(self, entity: InternalEntity) -> InternalEntity:
            if entity.external_id == "T-2":
                raise RuntimeError("disk full")
            return super().write(entity)

    source = mock_source(fetch=[(200, {"transactions": LEDGER_RECORDS[:3]})])
    service = make_service(source, entity_store=FlakyStore())
    connector = create_connector(service)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.state is RunState.FAILED
    assert summary.imported_count == 2
    assert summary.failed_count == 1
    _assert_conserved(summary)
    failed = [
        r for r in service.get_records_by_correlation_id(summary.correlation_id)
        if r.status == "failed"
    ]
    assert failed[0].external_id == "T-2"
    assert "disk full" in failed[0].rejection_reason


@pytest.mark.asyncio
async def test_duplicate_external_ids_are_serialized(
    make_service, create_connector, mock_source, entity_store
) -> None:
    records = [
        {"externalId": "T-9", "amount": 1},
        {"externalId": "T-9", "amount": 2},
    ]
    service = make_service(mock_source(fetch=[(200, records)]))
    connector = create_connector(service)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.imported_count == 1
    assert summary.updated_count == 1
    assert len(service.get_records_by_correlation_id(summary.correlation_id)) == 2
    assert entity_store.find_by_external_key(connector.id, "T-9") is not None


class CancellingSource:
    """Mock source that requests cancellation while serving the fetch."""

    def __init__(self, records: list[dict[str, Any]]) -> None:
        self.records = records
        self.on_fetch = lambda: None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.on_fetch()
        return httpx.Response(200, json={"transactions": self.records})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.mark.asyncio
async def test_cancel_during_run_skips_remaining_records(make_service, create_connector) -> None:
    source = CancellingSource(LEDGER_RECORDS[:3])
    service = make_service(source)
    connector = create_connector(service)
    source.on_fetch = lambda: service.cancel_sync(connector.id)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.state is RunState.CANCELLED
    assert summary.success is False
    assert summary.total_records == 3
    assert summary.skipped_count == 3
    _assert_conserved(summary)
    assert service.get_records_by_correlation_id(summary.correlation_id) == []
    assert service.registry.active_run(connector.id) is None


def test_cancel_without_active_run(make_service, create_connector, mock_source) -> None:
    service = make_service(mock_source())
    connector = create_connector(service)

    assert service.cancel_sync(connector.id) is False


@pytest.mark.asyncio
async def test_disable_during_run_lets_it_finish(make_service, create_connector) -> None:
    source = CancellingSource(LEDGER_RECORDS[:2])
    service = make_service(source)
    connector = create_connector(service)
    source.on_fetch = lambda: service.registry.disable(connector.id, "admin")

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.success
    assert summary.imported_count == 2
    with pytest.raises(ConnectorDisabledError):
        await service.execute_sync(connector.id, "alice")


@pytest.mark.asyncio
async def test_rate_limit_spaces_fetch_attempts(
    make_service, create_connector, mock_source
) -> None:
    class Clock:
        def __init__(self) -> None:
            self.now = 1000.0
            self.sleeps: list[float] = []

        def __call__(self) -> float:
            return self.now

        async def sleep(self, delay: float) -> None:
            self.sleeps.append(delay)
            self.now += delay

    clock = Clock()
    source = mock_source(fetch=[(503, {}), (200, {"transactions": []})])
    service = make_service(source, sleep=clock.sleep, clock=clock)
    connector = create_connector(
        service,
        rate_limit_per_minute=1,
        retry_policy=RetryPolicy(max_attempts=1, base_delay_seconds=1.0),
    )

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.success
    # One retry delay of 1s, then the limiter waits out the rest of the window.
    assert clock.sleeps[0] == 1.0
    assert sum(clock.sleeps) == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_fetch_body_that_is_not_utf8_fails_without_retry(
    make_service, create_connector, mock_source
) -> None:
    source = mock_source(fetch=[(200, b"\xff\xfe\xfa")])
    service = make_service(source)
    connector = create_connector(service)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.state is RunState.FAILED
    assert summary.failed_count == 1
    assert source.fetch_count == 1
    entries = service.get_logs_by_correlation_id(summary.correlation_id)
    assert [entry.operation_type for entry in entries] == ["sync-fetch"]
    assert json.loads(entries[0].error_details)["category"] == "invalid_response"
    assert service.registry.active_run(connector.id) is None


class FailingRetentionSink:
    """Audit sink that cannot retain failed record-level entries."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def record(self, entry: Any) -> None:
        if entry["operation_type"] == "sync-persist" and entry["status"] == "failure":
            raise RuntimeError("retention store unavailable")
        self.entries.append(entry)


@pytest.mark.asyncio
async def test_record_bookkeeping_error_does_not_abort_the_run(
    make_service, create_connector, mock_source
) -> None:
    records = [{"externalId": "BAD", "category": "travel"}] + [
        {"externalId": f"T-{index}", "amount": index} for index in range(20)
    ]
    source = mock_source(fetch=[(200, {"transactions": records})])
    service = make_service(source, audit_sink=FailingRetentionSink())
    connector = create_connector(service)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.state is RunState.FAILED
    assert summary.failed_count == 1
    assert summary.rejected_count == 0
    assert summary.imported_count == 20
    _assert_conserved(summary)
    assert service.registry.active_run(connector.id) is None
    others = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
    assert others == []

    source.fetch_replies = [(200, {"transactions": records[1:]})]
    second = await service.execute_sync(connector.id, "alice")
    assert second.state is RunState.SUCCEEDED
    assert second.unchanged_count == 20


@pytest.mark.asyncio
async def test_cancel_after_last_record_keeps_run_succeeded(
    make_service, create_connector, mock_source
) -> None:
    class CancelOnWriteStore(SqlEntityStore):
        def __init__(self) -> None:
            super().__init__()
            self.on_write = lambda: None

        def write(self, entity: InternalEntity) -> InternalEntity:
            written = super().write(entity)
            self.on_write()
            return written

    store = CancelOnWriteStore()
    source = mock_source(fetch=[(200, {"transactions": LEDGER_RECORDS[:1]})])
    service = make_service(source, entity_store=store)
    connector = create_connector(service)
    store.on_write = lambda: service.cancel_sync(connector.id)

    summary = await service.execute_sync(connector.id, "alice")

    assert summary.state is RunState.SUCCEEDED
    assert summary.success is True
    assert summary.imported_count == 1
    assert summary.skipped_count == 0
    assert service.get_run_details(summary.correlation_id).run.state is RunState.SUCCEEDED
