"""Repository helpers for persistence models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..schemas.connector import ConnectorCreate, ConnectorStatus, ConnectorUpdate
from ..schemas.results import RunSummary
from ..sync.entity_store import InternalEntity, as_utc
from .base import session_scope
from .connector import Connector
from .entity import SyncedEntity
from .integration_log import IntegrationLog
from .sync_record import SyncRecord
from .sync_run import SyncRun


@dataclass(slots=True)
class SyncRecordCreate:
    """Value object capturing required fields to persist a sync record."""

    connector_id: int
    correlation_id: str
    status: str
    initiated_by: str
    external_id: str | None = None
    raw_payload: str | None = None
    entity_id: int | None = None
    rejection_reason: str | None = None
    conflict_detected: bool = False
    conflict_resolution: str | None = None
    overwrote_approved_data: bool = False
    approved_override_by: str | None = None


@dataclass(slots=True)
class IntegrationLogCreate:
    """Value object capturing one integration log entry."""

    connector_id: int
    correlation_id: str
    operation_type: str
    status: str
    initiated_by: str
    http_method: str | None = None
    endpoint: str | None = None
    http_status_code: int | None = None
    attempt: int = 1
    error_message: str | None = None
    error_details: str | None = None
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


class ConnectorRepository:
    """Data access helpers for :class:`Connector`."""

    def __init__(self, session: Session):
        """Store the SQLAlchemy session used for persistence operations."""

        self._session = session

    def create(self, data: ConnectorCreate, created_by: str) -> Connector:
        connector = Connector(
            name=data.name,
            connector_type=data.connector_type.value,
            status=(ConnectorStatus.ENABLED if data.enabled else ConnectorStatus.DISABLED).value,
            endpoint_base_url=data.endpoint_base_url,
            auth_type=data.auth_type.value,
            auth_secret_ref=data.auth_secret_ref,
            capabilities=list(data.capabilities),
            rate_limit_per_minute=data.rate_limit_per_minute,
            max_retry_attempts=data.retry_policy.max_attempts,
            retry_delay_seconds=data.retry_policy.base_delay_seconds,
            use_exponential_backoff=data.retry_policy.use_exponential_backoff,
            mapping_config=data.mapping_config,
            description=data.description,
            created_by=created_by,
        )
        self._session.add(connector)
        self._session.flush()
        return connector

    def get(self, connector_id: int) -> Connector | None:
        return self._session.get(Connector, connector_id)

    def list(self) -> list[Connector]:
        return list(self._session.scalars(select(Connector).order_by(Connector.id)))

    def apply_update(
        self,
        connector: Connector,
        changes: dict[str, Any],
        updated_by: str,
    ) -> Connector:
        """Apply already-validated column changes and bump the audit stamp."""

        for column, value in changes.items():
            setattr(connector, column, value)
        connector.updated_at = datetime.now(timezone.utc)
        connector.updated_by = updated_by
        self._session.flush()
        return connector

    def set_status(self, connector: Connector, status: ConnectorStatus, updated_by: str) -> bool:
        """Set the lifecycle status; return False when it was already ``status``."""

        if connector.status == status.value:
            return False
        self.apply_update(connector, {"status": status.value}, updated_by)
        return True


def connector_update_columns(update: ConnectorUpdate) -> dict[str, Any]:
    """Translate a partial update into connector column values."""

    fields = update.model_dump(exclude_unset=True, exclude={"connector_type", "retry_policy"})
    changes: dict[str, Any] = {}
    for name, value in fields.items():
        if value is None and name != "description":
            continue
        changes[name] = value.value if hasattr(value, "value") else value
    if update.retry_policy is not None:
        changes["max_retry_attempts"] = update.retry_policy.max_attempts
        changes["retry_delay_seconds"] = update.retry_policy.base_delay_seconds
        changes["use_exponential_backoff"] = update.retry_policy.use_exponential_backoff
    return changes


class SyncRecordRepository:
    """Data access helpers for :class:`SyncRecord`."""

    def __init__(self, session: Session):
        self._session = session

    def create(self, record_data: SyncRecordCreate) -> SyncRecord:
        """Persist a new sync record and return the mapped instance."""

        record = SyncRecord(
            connector_id=record_data.connector_id,
            correlation_id=record_data.correlation_id,
            status=record_data.status,
            initiated_by=record_data.initiated_by,
            external_id=record_data.external_id,
            raw_payload=record_data.raw_payload,
            entity_id=record_data.entity_id,
            rejection_reason=record_data.rejection_reason,
            conflict_detected=record_data.conflict_detected,
            conflict_resolution=record_data.conflict_resolution,
            overwrote_approved_data=record_data.overwrote_approved_data,
            approved_override_by=record_data.approved_override_by,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def _recent(self, connector_id: int, limit: int, *criteria: Any) -> list[SyncRecord]:
        statement = (
            select(SyncRecord)
            .where(SyncRecord.connector_id == connector_id, *criteria)
            .order_by(SyncRecord.synced_at.desc(), SyncRecord.id.desc())
            .limit(limit)
        )
        return list(self._session.scalars(statement))

    def history(self, connector_id: int, limit: int) -> list[SyncRecord]:
        return self._recent(connector_id, limit)

    def rejected(self, connector_id: int, limit: int) -> list[SyncRecord]:
        return self._recent(connector_id, limit, SyncRecord.status == "rejected")

    def conflicts(self, connector_id: int, limit: int) -> list[SyncRecord]:
        return self._recent(connector_id, limit, SyncRecord.conflict_detected.is_(True))

    def overrides(
        self,
        connector_id: int,
        limit: int,
        approved_by: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[SyncRecord]:
        criteria: list[Any] = [SyncRecord.overwrote_approved_data.is_(True)]
        if approved_by is not None:
            criteria.append(SyncRecord.approved_override_by == approved_by)
        criteria.extend(_window(SyncRecord.synced_at, start, end))
        return self._recent(connector_id, limit, *criteria)

    def status_counts(
        self,
        connector_id: int | None,
        start: datetime,
        end: datetime,
    ) -> dict[str, int]:
        """Count records per status synced inside ``[start, end)``."""

        statement = select(SyncRecord.status, func.count(SyncRecord.id)).where(
            *_window(SyncRecord.synced_at, start, end)
        )
        if connector_id is not None:
            statement = statement.where(SyncRecord.connector_id == connector_id)
        statement = statement.group_by(SyncRecord.status)
        return {status: count for status, count in self._session.execute(statement)}

    def by_correlation(self, correlation_id: str) -> list[SyncRecord]:
        statement = (
            select(SyncRecord)
            .where(SyncRecord.correlation_id == correlation_id)
            .order_by(SyncRecord.id)
        )
        return list(self._session.scalars(statement))


class IntegrationLogRepository:
    """Append-only access to :class:`IntegrationLog` entries."""

    def __init__(self, session: Session):
        self._session = session

    def append(self, entry: IntegrationLogCreate) -> IntegrationLog:
        log = IntegrationLog(
            connector_id=entry.connector_id,
            correlation_id=entry.correlation_id,
            operation_type=entry.operation_type,
            status=entry.status,
            initiated_by=entry.initiated_by,
            http_method=entry.http_method,
            endpoint=entry.endpoint,
            http_status_code=entry.http_status_code,
            attempt=entry.attempt,
            error_message=entry.error_message,
            error_details=entry.error_details,
            duration_ms=entry.duration_ms,
            started_at=entry.started_at or datetime.now(timezone.utc),
            completed_at=entry.completed_at,
        )
        self._session.add(log)
        self._session.flush()
        return log

    def by_correlation(self, correlation_id: str) -> list[IntegrationLog]:
        statement = (
            select(IntegrationLog)
            .where(IntegrationLog.correlation_id == correlation_id)
            .order_by(IntegrationLog.id)
        )
        return list(self._session.scalars(statement))

    def by_connector(self, connector_id: int, limit: int) -> list[IntegrationLog]:
        statement = (
            select(IntegrationLog)
            .where(IntegrationLog.connector_id == connector_id)
            .order_by(IntegrationLog.started_at.desc(), IntegrationLog.id.desc())
            .limit(limit)
        )
        return list(self._session.scalars(statement))

    def outbound_call_counts(
        self,
        connector_id: int | None,
        start: datetime,
        end: datetime,
    ) -> dict[str, int]:
        """Count outbound HTTP attempts per status started inside ``[start, end)``."""

        statement = select(IntegrationLog.status, func.count(IntegrationLog.id)).where(
            IntegrationLog.http_method.is_not(None),
            *_window(IntegrationLog.started_at, start, end),
        )
        if connector_id is not None:
            statement = statement.where(IntegrationLog.connector_id == connector_id)
        statement = statement.group_by(IntegrationLog.status)
        return {status: count for status, count in self._session.execute(statement)}


def _window(column: Any, start: datetime | None, end: datetime | None) -> list[Any]:
    criteria: list[Any] = []
    if start is not None:
        criteria.append(column >= start)
    if end is not None:
        criteria.append(column < end)
    return criteria


class SyncRunRepository:
    """Data access helpers for :class:`SyncRun`."""

    def __init__(self, session: Session):
        self._session = session

    def create(self, summary: RunSummary, duration_ms: int) -> SyncRun:
        run = SyncRun(
            connector_id=summary.connector_id,
            correlation_id=summary.correlation_id,
            state=summary.state.value,
            initiated_by=summary.initiated_by,
            is_scheduled=summary.is_scheduled,
            message=summary.message,
            total_records=summary.total_records,
            imported_count=summary.imported_count,
            updated_count=summary.updated_count,
            unchanged_count=summary.unchanged_count,
            conflicts_preserved_count=summary.conflicts_preserved_count,
            conflicts_overridden_count=summary.conflicts_overridden_count,
            rejected_count=summary.rejected_count,
            failed_count=summary.failed_count,
            skipped_count=summary.skipped_count,
            duration_ms=duration_ms,
            started_at=summary.started_at,
            completed_at=summary.completed_at,
        )
        self._session.add(run)
        self._session.flush()
        return run

    def get(self, correlation_id: str) -> SyncRun | None:
        return self._session.scalars(
            select(SyncRun).where(SyncRun.correlation_id == correlation_id)
        ).first()

    @staticmethod
    def _criteria(
        connector_id: int | None,
        state: str | None,
        initiated_by: str | None,
        start: datetime | None,
        end: datetime | None,
    ) -> list[Any]:
        criteria = _window(SyncRun.started_at, start, end)
        if connector_id is not None:
            criteria.append(SyncRun.connector_id == connector_id)
        if state is not None:
            criteria.append(SyncRun.state == state)
        if initiated_by is not None:
            criteria.append(SyncRun.initiated_by == initiated_by)
        return criteria

    def search(
        self,
        *,
        connector_id: int | None = None,
        state: str | None = None,
        initiated_by: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[SyncRun], int]:
        """Return one page of matching runs, newest first, and the total match count."""

        criteria = self._criteria(connector_id, state, initiated_by, start, end)
        total = self._session.scalar(select(func.count(SyncRun.id)).where(*criteria)) or 0
        statement = (
            select(SyncRun)
            .where(*criteria)
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self._session.scalars(statement)), total

    def in_window(self, connector_id: int | None, start: datetime, end: datetime) -> list[SyncRun]:
        statement = select(SyncRun).where(*self._criteria(connector_id, None, None, start, end))
        return list(self._session.scalars(statement))


def _to_entity(row: SyncedEntity) -> InternalEntity:
    return InternalEntity(
        id=row.id,
        connector_id=row.connector_id,
        external_id=row.external_id,
        entity_type=row.entity_type,
        values=dict(row.values or {}),
        raw_payload=row.raw_payload,
        last_synced_at=as_utc(row.last_synced_at),
        last_synced_values=dict(row.last_synced_values) if row.last_synced_values else None,
        manually_edited_at=as_utc(row.manually_edited_at),
        manually_edited_by=row.manually_edited_by,
    )


class SqlEntityStore:
    """Internal entity store backed by the ``synced_entities`` table."""

    def find_by_external_key(self, connector_id: int, external_id: str) -> InternalEntity | None:
        with session_scope() as session:
            row = session.scalars(
                select(SyncedEntity).where(
                    SyncedEntity.connector_id == connector_id,
                    SyncedEntity.external_id == external_id,
                )
            ).first()
            return _to_entity(row) if row is not None else None

    def get(self, entity_id: int) -> InternalEntity | None:
        with session_scope() as session:
            row = session.get(SyncedEntity, entity_id)
            return _to_entity(row) if row is not None else None

    def mark_manually_edited(
        self,
        entity_id: int,
        edited_by: str | None = None,
        edited_at: datetime | None = None,
    ) -> None:
        with session_scope() as session:
            row = session.get(SyncedEntity, entity_id)
            if row is None:
                raise LookupError(f"Internal entity {entity_id} not found")
            row.manually_edited_at = edited_at or datetime.now(timezone.utc)
            row.manually_edited_by = edited_by

    def write(self, entity: InternalEntity) -> InternalEntity:
        """Insert or update ``entity`` keyed by (connector, external id)."""

        try:
            with session_scope() as session:
                row = None
                if entity.id is not None:
                    row = session.get(SyncedEntity, entity.id)
                if row is None:
                    row = SyncedEntity(connector_id=entity.connector_id, external_id=entity.external_id)
                    session.add(row)
                row.entity_type = entity.entity_type
                row.values = dict(entity.values)
                row.raw_payload = entity.raw_payload
                row.last_synced_at = entity.last_synced_at
                row.last_synced_values = (
                    dict(entity.last_synced_values) if entity.last_synced_values is not None else None
                )
                row.manually_edited_at = entity.manually_edited_at
                row.manually_edited_by = entity.manually_edited_by
                session.flush()
                return _to_entity(row)
        except IntegrityError as exc:
            raise ValueError(
                f"Entity for external id '{entity.external_id}' already exists "
                f"on connector {entity.connector_id}"
            ) from exc
