"""Result schemas returned by the probe and sync operations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RunState(str, Enum):
    """Terminal state of a sync run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProbeResult(BaseModel):
    """Outcome of a non-mutating connection probe."""

    success: bool = Field(..., description="Whether credentials and permissions were confirmed")
    message: str = Field(..., description="Human-readable outcome")
    correlation_id: str | None = Field(None, description="Correlation ID of the probe log entry")
    duration_ms: int | None = Field(None, description="Duration of the probe call")
    error_details: dict[str, Any] | None = Field(None, description="Failure classification")


class RunSummary(BaseModel):
    """Aggregated outcome of one sync run."""

    model_config = ConfigDict(validate_assignment=True)

    connector_id: int
    correlation_id: str
    initiated_by: str
    is_scheduled: bool = False
    state: RunState = RunState.SUCCEEDED
    success: bool = False
    message: str = ""
    total_records: int = 0
    imported_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    conflicts_preserved_count: int = 0
    conflicts_overridden_count: int = 0
    rejected_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    started_at: datetime
    completed_at: datetime | None = None

    @property
    def processed_count(self) -> int:
        """Records that reached a terminal per-record outcome."""

        return (
            self.imported_count
            + self.updated_count
            + self.unchanged_count
            + self.conflicts_preserved_count
            + self.conflicts_overridden_count
            + self.rejected_count
            + self.failed_count
        )

    def counts(self) -> dict[str, int]:
        """Return the outcome counters for logging."""

        return {
            "total": self.total_records,
            "imported": self.imported_count,
            "updated": self.updated_count,
            "unchanged": self.unchanged_count,
            "conflicts_preserved": self.conflicts_preserved_count,
            "conflicts_overridden": self.conflicts_overridden_count,
            "rejected": self.rejected_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
        }


class SyncRecordView(BaseModel):
    """Read model for a persisted sync record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    connector_id: int
    correlation_id: str
    external_id: str | None
    status: str
    raw_payload: str | None = None
    entity_id: int | None = None
    rejection_reason: str | None = None
    conflict_detected: bool = False
    conflict_resolution: str | None = None
    overwrote_approved_data: bool = False
    approved_override_by: str | None = None
    initiated_by: str
    synced_at: datetime


class IntegrationLogView(BaseModel):
    """Read model for a persisted integration log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    connector_id: int
    correlation_id: str
    operation_type: str
    status: str
    http_method: str | None = None
    endpoint: str | None = None
    http_status_code: int | None = None
    attempt: int = 1
    error_message: str | None = None
    error_details: str | None = None
    duration_ms: int = 0
    started_at: datetime
    completed_at: datetime | None = None
    initiated_by: str


class SyncRunView(BaseModel):
    """Read model for a finalized sync run."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    connector_id: int
    correlation_id: str
    state: RunState
    initiated_by: str
    is_scheduled: bool = False
    message: str | None = None
    total_records: int = 0
    imported_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    conflicts_preserved_count: int = 0
    conflicts_overridden_count: int = 0
    rejected_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    duration_ms: int = 0
    started_at: datetime
    completed_at: datetime | None = None


class RunSearchResult(BaseModel):
    """One page of runs matching a search, with the total match count."""

    total: int
    runs: list[SyncRunView]


class RunDetails(BaseModel):
    """A run together with its per-record outcomes and integration log."""

    run: SyncRunView
    records: list[SyncRecordView]
    logs: list[IntegrationLogView]


class RunStatistics(BaseModel):
    """Aggregated run, record and outbound call counts over a time window."""

    connector_id: int | None = None
    start: datetime
    end: datetime
    total_runs: int = 0
    runs_by_state: dict[str, int] = Field(default_factory=dict)
    records_processed: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    api_calls_total: int = 0
    api_calls_succeeded: int = 0
    api_calls_failed: int = 0
    average_run_duration_ms: float = 0.0
