"""Tests for the sync service facade."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from esg_sync.exceptions import ConfigurationError, OverrideNotAuthorizedError
from esg_sync.schemas.connector import ConnectorUpdate
from esg_sync.schemas.results import RunState, RunSummary
from esg_sync.sync.credentials import CompositeCredentialResolver, Credential
from esg_sync.sync.entity_store import InternalEntity
from esg_sync.sync.service import SyncService, approver_list_authorizer
from esg_sync.utils.config import get_settings


class CountingResolver:
    def __init__(self) -> None:
        self.calls = 0

    def resolve(self, secret_ref: str) -> Credential:
        self.calls += 1
        return Credential(token=f"token-{self.calls}")


def test_approver_list_authorizer() -> None:
    open_policy = approver_list_authorizer([])
    restricted = approver_list_authorizer(["cfo", " controller "])

    assert open_policy("anyone")
    assert restricted("controller")
    assert not restricted("intern")


def test_default_service_wires_shared_components(sink) -> None:
    service = SyncService(audit_sink=sink)

    assert service.prober is not None
    assert service.orchestrator is not None
    assert service.settings is get_settings()


@pytest.mark.asyncio
async def test_history_limit_falls_back_to_default(
    monkeypatch: pytest.MonkeyPatch, make_service, create_connector, mock_source
) -> None:
    monkeypatch.setenv("ESG_SYNC_SYNC__HISTORY_DEFAULT_LIMIT", "2")
    records = [{"externalId": f"T-{n}", "amount": n} for n in range(4)]
    service = make_service(
        mock_source(fetch=[(200, {"transactions": records})]),
        settings=get_settings(reload=True),
    )
    connector = create_connector(service)
    await service.execute_sync(connector.id, "alice")

    assert len(service.get_sync_history(connector.id)) == 2
    assert len(service.get_sync_history(connector.id, limit=0)) == 2
    assert len(service.get_sync_history(connector.id, limit=10)) == 4
    assert len(service.get_connector_logs(connector.id, limit=3)) == 3


@pytest.mark.asyncio
async def test_configured_approvers_gate_overrides(
    monkeypatch: pytest.MonkeyPatch, make_service, create_connector, mock_source
) -> None:
    monkeypatch.setenv("ESG_SYNC_SYNC__OVERRIDE_APPROVERS", '["cfo"]')
    service = make_service(mock_source(), settings=get_settings(reload=True))
    connector = create_connector(service)

    summary = await service.execute_sync(connector.id, "alice", approved_override_by="cfo")

    assert summary.success
    with pytest.raises(OverrideNotAuthorizedError):
        await service.execute_sync(connector.id, "alice", approved_override_by="intern")


LEDGER = [
    {"externalId": "T-1", "amount": 100},
    {"externalId": "T-2", "amount": 200},
    {"externalId": "T-3"},
]


@pytest.fixture
def ledger_runs(make_service, create_connector, mock_source):
    """One successful run (2 imported, 1 rejected) followed by one failed fetch."""

    source = mock_source(fetch=[(200, {"transactions": LEDGER}), (503, {"error": "down"})])
    service = make_service(source)
    connector = create_connector(service)

    async def _run() -> tuple[RunSummary, RunSummary]:
        first = await service.execute_sync(connector.id, "alice")
        second = await service.execute_sync(connector.id, "bob")
        return first, second

    return service, connector, source, _run


@pytest.mark.asyncio
async def test_statistics_aggregate_runs_records_and_calls(ledger_runs) -> None:
    service, connector, source, run = ledger_runs
    first, second = await run()

    assert first.state is RunState.SUCCEEDED
    assert second.state is RunState.FAILED

    stats = service.get_statistics(connector.id)

    assert stats.total_runs == 2
    assert stats.runs_by_state == {"succeeded": 1, "failed": 1, "cancelled": 0}
    assert stats.records_processed == 3
    assert stats.records_succeeded == 2
    assert stats.records_failed == 1
    assert stats.api_calls_total == source.fetch_count
    assert stats.api_calls_succeeded == 1
    assert stats.api_calls_failed == source.fetch_count - 1
    assert stats.average_run_duration_ms >= 0
    assert stats.end - stats.start == timedelta(days=30)


@pytest.mark.asyncio
async def test_statistics_window_excludes_other_periods(ledger_runs) -> None:
    service, connector, _, run = ledger_runs
    await run()

    stats = service.get_statistics(
        connector.id,
        start=datetime(2020, 1, 1, tzinfo=timezone.utc),
        end=datetime(2020, 2, 1, tzinfo=timezone.utc),
    )

    assert stats.total_runs == 0
    assert stats.records_processed == 0
    assert stats.api_calls_total == 0
    assert stats.average_run_duration_ms == 0.0
    assert service.get_statistics(connector.id + 1).total_runs == 0

    with pytest.raises(ConfigurationError, match="start must not be after end"):
        service.get_statistics(
            connector.id,
            start=datetime(2020, 2, 1, tzinfo=timezone.utc),
            end=datetime(2020, 1, 1, tzinfo=timezone.utc),
        )


@pytest.mark.asyncio
async def test_search_runs_filters_and_pages(ledger_runs) -> None:
    service, connector, _, run = ledger_runs
    first, second = await run()

    everything = service.search_runs(connector_id=connector.id)
    failed = service.search_runs(connector_id=connector.id, state=RunState.FAILED)
    by_alice = service.search_runs(initiated_by="alice")
    second_page = service.search_runs(connector_id=connector.id, page=2, page_size=1)

    assert everything.total == 2
    assert [r.correlation_id for r in everything.runs] == [
        second.correlation_id,
        first.correlation_id,
    ]
    assert [r.correlation_id for r in failed.runs] == [second.correlation_id]
    assert failed.runs[0].message.startswith("Fetch failed")
    assert [r.initiated_by for r in by_alice.runs] == ["alice"]
    assert second_page.total == 2
    assert [r.correlation_id for r in second_page.runs] == [first.correlation_id]

    with pytest.raises(ConfigurationError):
        service.search_runs(page=0)


@pytest.mark.asyncio
async def test_run_details_include_records_and_logs(ledger_runs) -> None:
    service, _, _, run = ledger_runs
    first, _ = await run()

    details = service.get_run_details(first.correlation_id)

    assert details is not None
    assert details.run.state is RunState.SUCCEEDED
    assert (details.run.imported_count, details.run.rejected_count) == (2, 1)
    assert sorted(r.external_id for r in details.records) == ["T-1", "T-2", "T-3"]
    assert [log.operation_type for log in details.logs].count("sync-persist") == 3
    assert service.get_run_details("unknown") is None


@pytest.mark.asyncio
async def test_override_history_filters(
    make_service, create_connector, mock_source, entity_store
) -> None:
    service = make_service(
        mock_source(fetch=[(200, {"transactions": [{"externalId": "T-1", "amount": 5}]})])
    )
    connector = create_connector(service)
    entity = entity_store.write(
        InternalEntity(
            connector_id=connector.id,
            external_id="T-1",
            values={"amount": 4},
            last_synced_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            last_synced_values={"amount": 4},
        )
    )
    entity_store.mark_manually_edited(entity.id, "alice")
    await service.execute_sync(connector.id, "alice", approved_override_by="controller")

    past = datetime(2020, 1, 1, tzinfo=timezone.utc)
    assert len(service.get_override_history(connector.id, approved_by="controller")) == 1
    assert service.get_override_history(connector.id, approved_by="cfo") == []
    assert len(service.get_override_history(connector.id, start=past)) == 1
    assert service.get_override_history(connector.id, end=past) == []


@pytest.mark.asyncio
async def test_updating_secret_reference_drops_cached_credential(
    make_service, create_connector, mock_source
) -> None:
    counting = CountingResolver()
    service = make_service(
        mock_source(), credential_resolver=CompositeCredentialResolver({"env": counting})
    )
    connector = create_connector(service)

    await service.probe(connector.id, "ops")
    await service.probe(connector.id, "ops")
    assert counting.calls == 1

    service.update_connector(connector.id, ConnectorUpdate(name="Ledger EU"), "ops")
    await service.probe(connector.id, "ops")
    assert counting.calls == 1

    service.update_connector(
        connector.id, ConnectorUpdate(auth_secret_ref="env:LEDGER_TOKEN"), "ops"
    )
    result = await service.probe(connector.id, "ops")
    assert result.success
    assert counting.calls == 2
