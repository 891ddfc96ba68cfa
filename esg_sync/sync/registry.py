"""Connector registry: configuration lifecycle and the per-connector run guard."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Event, Lock

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import (
    ConfigurationError,
    ConnectorDisabledError,
    ConnectorNotFoundError,
    ConnectorTypeMismatchError,
    SyncAlreadyRunningError,
)
from ..models.base import session_scope
from ..models.repository import ConnectorRepository, connector_update_columns
from ..schemas.connector import (
    AuthType,
    ConnectorCreate,
    ConnectorStatus,
    ConnectorUpdate,
    ConnectorView,
)
from ..schemas.mapping import parse_mapping_config
from ..utils.audit import AuditAction, AuditLogger, get_audit_logger
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "connector_registry"})


@dataclass(slots=True)
class RunHandle:
    """An in-flight sync run registered against one connector."""

    connector_id: int
    correlation_id: str
    initiated_by: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _cancel_event: Event = field(default_factory=Event, repr=False)

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()


class ConnectorRegistry:
    """
    Stores connector configuration and guards sync starts.

    The enabled flag and the in-flight run map are checked and changed under
    one lock, so a disable and a concurrent sync start cannot interleave.
    Disabling never cancels a run already in progress.
    """

    def __init__(self, audit_logger: AuditLogger | None = None):
        self._audit = audit_logger or get_audit_logger()
        self._lock = Lock()
        self._active_runs: dict[int, RunHandle] = {}

    def create(self, data: ConnectorCreate, created_by: str) -> ConnectorView:
        with session_scope() as session:
            connector = ConnectorRepository(session).create(data, created_by)
            view = ConnectorView.model_validate(connector)

        self._audit.log_connector_change(
            created_by,
            view.id,
            AuditAction.CONNECTOR_CREATED,
            name=view.name,
            connector_type=view.connector_type.value,
            status=view.status.value,
        )
        logger.info(
            f"Connector '{view.name}' created",
            extra={"connector_id": view.id, "operation": "create", "status": view.status.value},
        )
        return view

    def find(self, connector_id: int) -> ConnectorView | None:
        with session_scope() as session:
            connector = ConnectorRepository(session).get(connector_id)
            return ConnectorView.model_validate(connector) if connector is not None else None

    def get(self, connector_id: int) -> ConnectorView:
        """Return the connector or raise :class:`ConnectorNotFoundError`."""

        view = self.find(connector_id)
        if view is None:
            raise ConnectorNotFoundError(connector_id)
        return view

    def list(self) -> list[ConnectorView]:
        with session_scope() as session:
            return [ConnectorView.model_validate(c) for c in ConnectorRepository(session).list()]

    def update(self, connector_id: int, update: ConnectorUpdate, updated_by: str) -> ConnectorView:
        """Apply a partial update; the connector type can never change."""

        with session_scope() as session:
            repository = ConnectorRepository(session)
            connector = repository.get(connector_id)
            if connector is None:
                raise ConnectorNotFoundError(connector_id)
            if (
                update.connector_type is not None
                and update.connector_type.value != connector.connector_type
            ):
                raise ConnectorTypeMismatchError(
                    f"Connector {connector_id} is of type '{connector.connector_type}'; "
                    "the type cannot be changed after creation"
                )

            changes = connector_update_columns(update)
            if "mapping_config" in changes:
                try:
                    changes["mapping_config"] = parse_mapping_config(
                        connector.connector_type, changes["mapping_config"]
                    ).to_storage()
                except (PydanticValidationError, ValueError) as exc:
                    raise ConfigurationError(f"Invalid mapping configuration: {exc}") from exc

            auth_type = changes.get("auth_type", connector.auth_type)
            secret_ref = changes.get("auth_secret_ref", connector.auth_secret_ref)
            if auth_type != AuthType.NONE.value and not (secret_ref or "").strip():
                raise ConfigurationError(f"auth_type '{auth_type}' requires an auth_secret_ref")

            repository.apply_update(connector, changes, updated_by)
            view = ConnectorView.model_validate(connector)

        self._audit.log_connector_change(
            updated_by,
            connector_id,
            AuditAction.CONNECTOR_UPDATED,
            fields=sorted(changes),
        )
        return view

    def enable(self, connector_id: int, updated_by: str) -> ConnectorView:
        return self._set_status(connector_id, ConnectorStatus.ENABLED, updated_by)

    def disable(self, connector_id: int, updated_by: str) -> ConnectorView:
        return self._set_status(connector_id, ConnectorStatus.DISABLED, updated_by)

    def _set_status(
        self,
        connector_id: int,
        status: ConnectorStatus,
        updated_by: str,
    ) -> ConnectorView:
        with self._lock:
            with session_scope() as session:
                repository = ConnectorRepository(session)
                connector = repository.get(connector_id)
                if connector is None:
                    raise ConnectorNotFoundError(connector_id)
                changed = repository.set_status(connector, status, updated_by)
                view = ConnectorView.model_validate(connector)

        if changed:
            action = (
                AuditAction.CONNECTOR_ENABLED
                if status is ConnectorStatus.ENABLED
                else AuditAction.CONNECTOR_DISABLED
            )
            self._audit.log_connector_change(updated_by, connector_id, action)
            logger.info(
                f"Connector {status.value}",
                extra={"connector_id": connector_id, "operation": "lifecycle", "status": status.value},
            )
        return view

    def begin_run(
        self,
        connector_id: int,
        correlation_id: str,
        initiated_by: str,
    ) -> tuple[ConnectorView, RunHandle]:
        """Atomically check the connector is enabled and idle, then mark it running.

        Raises:
            ConnectorNotFoundError: If the connector does not exist
            ConnectorDisabledError: If the connector is disabled
            SyncAlreadyRunningError: If another run is in flight for the connector
        """

        with self._lock:
            connector = self.get(connector_id)
            if not connector.is_enabled:
                raise ConnectorDisabledError(connector_id)
            active = self._active_runs.get(connector_id)
            if active is not None:
                raise SyncAlreadyRunningError(connector_id, active.correlation_id)
            handle = RunHandle(connector_id, correlation_id, initiated_by)
            self._active_runs[connector_id] = handle
            return connector, handle

    def end_run(self, handle: RunHandle) -> None:
        with self._lock:
            if self._active_runs.get(handle.connector_id) is handle:
                del self._active_runs[handle.connector_id]

    def active_run(self, connector_id: int) -> RunHandle | None:
        with self._lock:
            return self._active_runs.get(connector_id)

    def cancel_run(self, connector_id: int) -> RunHandle | None:
        """Request cooperative cancellation of the connector's active run."""

        with self._lock:
            handle = self._active_runs.get(connector_id)
            if handle is not None:
                handle.cancel()
            return handle
