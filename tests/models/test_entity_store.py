"""Tests for the SQL-backed internal entity store and repositories."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from esg_sync.models.base import session_scope
from esg_sync.models.repository import (
    SqlEntityStore,
    SyncRecordCreate,
    SyncRecordRepository,
)
from esg_sync.sync.entity_store import EntityStore, InternalEntity

SYNCED_AT = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_store_satisfies_protocol(entity_store: SqlEntityStore) -> None:
    assert isinstance(entity_store, EntityStore)


def test_write_inserts_then_updates(entity_store: SqlEntityStore) -> None:
    created = entity_store.write(
        InternalEntity(
            connector_id=1,
            external_id="E-1",
            entity_type="employee",
            values={"full_name": "Ada"},
            last_synced_at=SYNCED_AT,
        )
    )

    assert created.id is not None
    assert created.last_synced_at == SYNCED_AT

    created.values = {"full_name": "Ada Lovelace"}
    updated = entity_store.write(created)

    assert updated.id == created.id
    found = entity_store.find_by_external_key(1, "E-1")
    assert found is not None
    assert found.values == {"full_name": "Ada Lovelace"}
    assert found.entity_type == "employee"
    assert entity_store.find_by_external_key(2, "E-1") is None


def test_duplicate_external_key_rejected(entity_store: SqlEntityStore) -> None:
    entity_store.write(InternalEntity(connector_id=1, external_id="E-1"))

    with pytest.raises(ValueError, match="already exists"):
        entity_store.write(InternalEntity(connector_id=1, external_id="E-1"))


def test_mark_manually_edited(entity_store: SqlEntityStore) -> None:
    entity = entity_store.write(
        InternalEntity(connector_id=1, external_id="E-1", last_synced_at=SYNCED_AT)
    )

    entity_store.mark_manually_edited(entity.id, "alice")

    edited = entity_store.get(entity.id)
    assert edited.manually_edited_by == "alice"
    assert edited.manually_edited_at.tzinfo is not None
    assert edited.touched_since_sync()

    with pytest.raises(LookupError):
        entity_store.mark_manually_edited(9999)


def test_sync_record_queries_filter_and_limit() -> None:
    with session_scope() as session:
        repository = SyncRecordRepository(session)
        for index, status in enumerate(["imported", "rejected", "conflict", "rejected"]):
            repository.create(
                SyncRecordCreate(
                    connector_id=5,
                    correlation_id="corr-q",
                    status=status,
                    initiated_by="alice",
                    external_id=f"X-{index}",
                    conflict_detected=status == "conflict",
                    rejection_reason="bad" if status == "rejected" else None,
                )
            )

    with session_scope() as session:
        repository = SyncRecordRepository(session)
        assert len(repository.history(5, 10)) == 4
        assert len(repository.history(5, 2)) == 2
        assert [r.external_id for r in repository.rejected(5, 10)] == ["X-3", "X-1"]
        assert [r.external_id for r in repository.conflicts(5, 10)] == ["X-2"]
        assert repository.overrides(5, 10) == []
        assert [r.external_id for r in repository.by_correlation("corr-q")] == [
            "X-0",
            "X-1",
            "X-2",
            "X-3",
        ]
        assert repository.history(6, 10) == []
