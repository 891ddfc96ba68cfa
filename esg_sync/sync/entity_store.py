"""Internal entity store interface consumed by the sync pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable


def as_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(slots=True)
class InternalEntity:
    """Internal entity paired with one external record of a connector."""

    connector_id: int
    external_id: str
    values: dict[str, Any] = field(default_factory=dict)
    entity_type: str | None = None
    raw_payload: str | None = None
    id: int | None = None
    last_synced_at: datetime | None = None
    last_synced_values: dict[str, Any] | None = None
    manually_edited_at: datetime | None = None
    manually_edited_by: str | None = None

    def touched_since_sync(self) -> bool:
        """Return True when a human edited the entity after its last sync."""

        edited_at = as_utc(self.manually_edited_at)
        if edited_at is None:
            return False
        synced_at = as_utc(self.last_synced_at)
        return synced_at is None or edited_at > synced_at


@runtime_checkable
class EntityStore(Protocol):
    """Persistence boundary for internal entities.

    Implementations are synchronous; the orchestrator calls them from worker
    threads.
    """

    def find_by_external_key(self, connector_id: int, external_id: str) -> InternalEntity | None:
        ...

    def mark_manually_edited(
        self,
        entity_id: int,
        edited_by: str | None = None,
        edited_at: datetime | None = None,
    ) -> None:
        ...

    def write(self, entity: InternalEntity) -> InternalEntity:
        ...
