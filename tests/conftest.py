"""Pytest configuration - no path manipulation, rely on proper package installation."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from typing import Any, Union

import httpx
import pytest

from esg_sync.models.base import reset_engine
from esg_sync.models.repository import SqlEntityStore
from esg_sync.schemas.connector import (
    AuthType,
    ConnectorCreate,
    ConnectorType,
    ConnectorView,
    RetryPolicy,
)
from esg_sync.sync.credentials import Credential
from esg_sync.sync.service import SyncService
from esg_sync.utils.config import get_settings

# A canned reply is ``(status_code, json_body)`` or an exception to raise.
Reply = Union[tuple[int, Any], Exception]


@pytest.fixture(autouse=True)
def _ensure_database_url(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory):
    """Give every test its own SQLite database and a known API key."""

    db_path = tmp_path_factory.mktemp("sqlite-db") / "esg_sync.sqlite"
    monkeypatch.setenv("ESG_SYNC_DATABASE_URL", f"sqlite:///{db_path}")
    if os.getenv("ESG_SYNC_API_KEYS") is None:
        monkeypatch.setenv("ESG_SYNC_API_KEYS", '["test-key"]')

    reset_engine()
    get_settings(reload=True)
    yield
    reset_engine()
    get_settings(reload=True)


class RecordingSink:
    """Audit sink that keeps every retained integration log entry."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def record(self, entry: Any) -> None:
        self.entries.append(entry)


class StaticCredentialResolver:
    """Resolve every secret reference to the same credential."""

    def __init__(self, credential: Credential | None = None) -> None:
        self.credential = credential or Credential(token="test-token")
        self.calls: list[str] = []

    def resolve(self, secret_ref: str) -> Credential:
        self.calls.append(secret_ref)
        return self.credential


class FakeSleep:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class MockSource:
    """Mock source system answering ``/health`` and the record fetch path.

    Fetch replies are consumed in order and the last one repeats.
    """

    def __init__(
        self,
        fetch: list[Reply] | None = None,
        health: Reply | None = None,
    ) -> None:
        self.fetch_replies: list[Reply] = list(fetch or [(200, {"records": []})])
        self.health_reply: Reply = health or (200, {"status": "ok"})
        self.requests: list[httpx.Request] = []

    @property
    def fetch_count(self) -> int:
        return sum(1 for request in self.requests if not request.url.path.endswith("/health"))

    @property
    def health_count(self) -> int:
        return len(self.requests) - self.fetch_count

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/health"):
            reply = self.health_reply
        elif len(self.fetch_replies) > 1:
            reply = self.fetch_replies.pop(0)
        else:
            reply = self.fetch_replies[0]
        if isinstance(reply, Exception):
            raise reply
        status_code, body = reply
        content = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
        return httpx.Response(
            status_code, headers={"content-type": "application/json"}, content=content
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


FINANCE_MAPPING: dict[str, Any] = {
    "entityType": "financial_transaction",
    "mappings": [
        {"externalField": "amount", "internalField": "amount", "required": True},
        {"externalField": "category", "internalField": "category"},
    ],
}

HR_MAPPING: dict[str, Any] = {
    "entityType": "employee",
    "mappings": [
        {"externalField": "name", "internalField": "full_name", "required": True},
        {
            "externalField": "weeklyHours",
            "internalField": "fte",
            "transform": "fte",
            "transformParams": {"standardHours": 40},
        },
        {
            "externalField": "dept",
            "internalField": "department",
            "transform": "lookup",
            "transformParams": {"table": {"ENG": "Engineering", "FIN": "Finance"}},
        },
    ],
}


def build_connector_create(**overrides: Any) -> ConnectorCreate:
    """Build an enabled finance connector definition; keyword arguments override fields."""

    data: dict[str, Any] = {
        "name": "Ledger",
        "connector_type": ConnectorType.FINANCE,
        "endpoint_base_url": "https://finance.example.com/api",
        "auth_type": AuthType.BEARER,
        "auth_secret_ref": "env:LEDGER_TOKEN",
        "capabilities": ["pull"],
        "rate_limit_per_minute": 60,
        "retry_policy": RetryPolicy(
            max_attempts=2, base_delay_seconds=1.0, use_exponential_backoff=False
        ),
        "mapping_config": FINANCE_MAPPING,
        "enabled": True,
    }
    data.update(overrides)
    return ConnectorCreate(**data)


@pytest.fixture
def connector_create() -> Callable[..., ConnectorCreate]:
    return build_connector_create


@pytest.fixture
def hr_mapping() -> dict[str, Any]:
    return json.loads(json.dumps(HR_MAPPING))


@pytest.fixture
def finance_mapping() -> dict[str, Any]:
    return json.loads(json.dumps(FINANCE_MAPPING))


@pytest.fixture
def mock_source() -> Callable[..., MockSource]:
    return MockSource


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def credentials() -> StaticCredentialResolver:
    return StaticCredentialResolver()


@pytest.fixture
def entity_store() -> SqlEntityStore:
    return SqlEntityStore()


@pytest.fixture
def make_service(
    sink: RecordingSink,
    fake_sleep: FakeSleep,
    credentials: StaticCredentialResolver,
    entity_store: SqlEntityStore,
) -> Callable[..., SyncService]:
    """Factory building a sync service wired to a mock source system."""

    def _build(source: MockSource, **kwargs: Any) -> SyncService:
        kwargs.setdefault("audit_sink", sink)
        kwargs.setdefault("credential_resolver", credentials)
        kwargs.setdefault("entity_store", entity_store)
        kwargs.setdefault("sleep", fake_sleep)
        return SyncService(transport=source.transport, **kwargs)

    return _build


@pytest.fixture
def create_connector() -> Callable[..., ConnectorView]:
    """Register a connector through a service registry."""

    def _create(service: SyncService, **overrides: Any) -> ConnectorView:
        return service.registry.create(build_connector_create(**overrides), "admin")

    return _create
