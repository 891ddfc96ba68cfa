"""Tests for the connector, probe, sync and history API endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from esg_sync.api.dependencies import get_sync_service
from esg_sync.api.main import app

HEADERS = {"X-API-Key": "test-key", "X-User-Id": "alice"}


@pytest.fixture
def source(mock_source):
    return mock_source(
        fetch=[
            (
                200,
                {
                    "transactions": [
                        {"externalId": "T-1", "amount": 10},
                        {"externalId": "T-2", "category": "travel"},
                    ]
                },
            )
        ]
    )


@pytest.fixture
def service(make_service, source):
    return make_service(source)


@pytest_asyncio.fixture
async def client(service) -> AsyncIterator[AsyncClient]:
    app.dependency_overrides[get_sync_service] = lambda: service
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
            yield http
    finally:
        app.dependency_overrides.clear()


def _connector_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "name": "Ledger",
        "connector_type": "finance",
        "endpoint_base_url": "https://finance.example.com/api",
        "auth_type": "bearer",
        "auth_secret_ref": "env:LEDGER_TOKEN",
        "retry_policy": {"max_attempts": 1, "base_delay_seconds": 1.0},
        "mapping_config": {
            "mappings": [{"externalField": "amount", "internalField": "amount", "required": True}]
        },
    }
    body.update(overrides)
    return body


async def _create_enabled(client: AsyncClient) -> int:
    response = await client.post("/api/v1/connectors", json=_connector_body(), headers=HEADERS)
    assert response.status_code == 201
    connector_id = response.json()["id"]
    enabled = await client.post(f"/api/v1/connectors/{connector_id}/enable", headers=HEADERS)
    assert enabled.json()["status"] == "enabled"
    return connector_id


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "esg_sync"
    assert data["database"] == {"status": "ok"}


@pytest.mark.asyncio
async def test_metrics_endpoint(client: AsyncClient) -> None:
    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "sync_runs_total" in response.text


@pytest.mark.asyncio
async def test_requires_api_key(client: AsyncClient) -> None:
    missing = await client.get("/api/v1/connectors")
    wrong = await client.get("/api/v1/connectors", headers={"X-API-Key": "nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_requires_user_header(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/connectors", json=_connector_body(), headers={"X-API-Key": "test-key"}
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_connector_crud(client: AsyncClient) -> None:
    created = await client.post("/api/v1/connectors", json=_connector_body(), headers=HEADERS)
    assert created.status_code == 201
    connector = created.json()
    assert connector["status"] == "disabled"
    assert connector["created_by"] == "alice"

    listed = await client.get("/api/v1/connectors", headers=HEADERS)
    assert [c["id"] for c in listed.json()] == [connector["id"]]

    patched = await client.patch(
        f"/api/v1/connectors/{connector['id']}",
        json={"rate_limit_per_minute": 5},
        headers=HEADERS,
    )
    assert patched.status_code == 200
    assert patched.json()["rate_limit_per_minute"] == 5

    type_change = await client.patch(
        f"/api/v1/connectors/{connector['id']}",
        json={"connector_type": "hr"},
        headers=HEADERS,
    )
    assert type_change.status_code == 422
    assert type_change.json()["error_type"] == "ConnectorTypeMismatchError"

    missing = await client.get("/api/v1/connectors/999", headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["reason"] == "not found"


@pytest.mark.asyncio
async def test_invalid_connector_body(client: AsyncClient) -> None:
    response = await client.post(
        "/api/v1/connectors",
        json=_connector_body(capabilities=["pull", "erase"]),
        headers=HEADERS,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_probe_endpoint(client: AsyncClient, source) -> None:
    connector_id = await _create_enabled(client)

    response = await client.post(f"/api/v1/connectors/{connector_id}/probe", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert source.fetch_count == 0


@pytest.mark.asyncio
async def test_sync_endpoint_and_history(client: AsyncClient) -> None:
    connector_id = await _create_enabled(client)

    response = await client.post(
        f"/api/v1/connectors/{connector_id}/sync", json={}, headers=HEADERS
    )

    assert response.status_code == 200
    summary = response.json()
    assert summary["state"] == "succeeded"
    assert summary["imported_count"] == 1
    assert summary["rejected_count"] == 1
    assert summary["initiated_by"] == "alice"

    history = await client.get(f"/api/v1/connectors/{connector_id}/sync-history", headers=HEADERS)
    assert len(history.json()) == 2

    rejected = await client.get(
        f"/api/v1/connectors/{connector_id}/rejected-records", headers=HEADERS
    )
    assert [r["external_id"] for r in rejected.json()] == ["T-2"]

    conflicts = await client.get(f"/api/v1/connectors/{connector_id}/conflicts", headers=HEADERS)
    overrides = await client.get(f"/api/v1/connectors/{connector_id}/overrides", headers=HEADERS)
    assert conflicts.json() == []
    assert overrides.json() == []

    logs = await client.get(f"/api/v1/logs/{summary['correlation_id']}", headers=HEADERS)
    operations = [entry["operation_type"] for entry in logs.json()]
    assert operations == ["sync-fetch", "sync-persist", "sync-persist"]

    connector_logs = await client.get(
        f"/api/v1/connectors/{connector_id}/logs", params={"limit": 1}, headers=HEADERS
    )
    assert len(connector_logs.json()) == 1


@pytest.mark.asyncio
async def test_sync_disabled_connector_conflict(client: AsyncClient, source) -> None:
    created = await client.post("/api/v1/connectors", json=_connector_body(), headers=HEADERS)
    connector_id = created.json()["id"]

    response = await client.post(f"/api/v1/connectors/{connector_id}/sync", headers=HEADERS)

    assert response.status_code == 409
    body = response.json()
    assert body["status"] == "error"
    assert body["reason"] == "disabled"
    assert source.requests == []


@pytest.mark.asyncio
async def test_scheduled_sync_via_api(client: AsyncClient) -> None:
    connector_id = await _create_enabled(client)

    response = await client.post(
        f"/api/v1/connectors/{connector_id}/sync",
        json={"is_scheduled": True},
        headers=HEADERS,
    )

    assert response.json()["initiated_by"] == "system"


@pytest.mark.asyncio
async def test_cancel_endpoint_without_run(client: AsyncClient) -> None:
    connector_id = await _create_enabled(client)

    response = await client.post(f"/api/v1/connectors/{connector_id}/sync/cancel", headers=HEADERS)

    assert response.json() == {"connector_id": connector_id, "cancelled": False}


@pytest.mark.asyncio
async def test_statistics_and_run_endpoints(client: AsyncClient) -> None:
    connector_id = await _create_enabled(client)
    summary = (
        await client.post(f"/api/v1/connectors/{connector_id}/sync", json={}, headers=HEADERS)
    ).json()

    stats = await client.get(f"/api/v1/connectors/{connector_id}/statistics", headers=HEADERS)
    assert stats.status_code == 200
    body = stats.json()
    assert body["total_runs"] == 1
    assert body["runs_by_state"]["succeeded"] == 1
    assert (body["records_succeeded"], body["records_failed"]) == (1, 1)

    runs = await client.get(
        "/api/v1/runs", params={"connector_id": connector_id, "state": "succeeded"}, headers=HEADERS
    )
    assert runs.status_code == 200
    assert runs.json()["total"] == 1
    assert runs.json()["runs"][0]["correlation_id"] == summary["correlation_id"]

    detail = await client.get(f"/api/v1/runs/{summary['correlation_id']}", headers=HEADERS)
    assert detail.status_code == 200
    assert len(detail.json()["records"]) == 2
    assert [e["operation_type"] for e in detail.json()["logs"]][0] == "sync-fetch"

    missing = await client.get("/api/v1/runs/unknown", headers=HEADERS)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_statistics_validation(client: AsyncClient) -> None:
    connector_id = await _create_enabled(client)

    unknown = await client.get("/api/v1/connectors/999/statistics", headers=HEADERS)
    inverted = await client.get(
        f"/api/v1/connectors/{connector_id}/statistics",
        params={"start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
        headers=HEADERS,
    )

    assert unknown.status_code == 404
    assert inverted.status_code == 422
    assert "start must not be after end" in inverted.json()["message"]


@pytest.mark.asyncio
async def test_override_history_accepts_filters(client: AsyncClient) -> None:
    connector_id = await _create_enabled(client)

    response = await client.get(
        f"/api/v1/connectors/{connector_id}/overrides",
        params={"approved_by": "cfo", "start": "2024-01-01T00:00:00Z"},
        headers=HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == []
