"""Probe, sync and history API endpoints."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ...schemas.results import (
    IntegrationLogView,
    ProbeResult,
    RunDetails,
    RunSearchResult,
    RunState,
    RunStatistics,
    RunSummary,
    SyncRecordView,
)
from ...sync.service import SyncService
from ..dependencies import current_user, get_sync_service, require_api_key

router = APIRouter(dependencies=[Depends(require_api_key)])

LimitQuery = Query(default=None, ge=1, le=1000)


class SyncRequest(BaseModel):
    """Options for a manually triggered or scheduled sync run."""

    is_scheduled: bool = False
    approved_override_by: str | None = Field(
        default=None,
        description="Approver permitting manual values to be overwritten",
    )


@router.post("/connectors/{connector_id}/probe", response_model=ProbeResult)
async def probe_connector(
    connector_id: int,
    user: str = Depends(current_user),
    service: SyncService = Depends(get_sync_service),
) -> ProbeResult:
    """Test connectivity, credentials and permissions without changing any data."""

    return await service.probe(connector_id, user)


@router.post("/connectors/{connector_id}/sync", response_model=RunSummary)
async def execute_sync(
    connector_id: int,
    request: SyncRequest | None = None,
    user: str = Depends(current_user),
    service: SyncService = Depends(get_sync_service),
) -> RunSummary:
    """Run a sync to completion and return its summary."""

    request = request or SyncRequest()
    return await service.execute_sync(
        connector_id,
        user,
        is_scheduled=request.is_scheduled,
        approved_override_by=request.approved_override_by,
    )


@router.post("/connectors/{connector_id}/sync/cancel")
async def cancel_sync(
    connector_id: int,
    service: SyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    return {"connector_id": connector_id, "cancelled": service.cancel_sync(connector_id)}


@router.get("/connectors/{connector_id}/sync-history", response_model=list[SyncRecordView])
async def sync_history(
    connector_id: int,
    limit: int | None = LimitQuery,
    service: SyncService = Depends(get_sync_service),
) -> list[SyncRecordView]:
    return await asyncio.to_thread(service.get_sync_history, connector_id, limit)


@router.get("/connectors/{connector_id}/rejected-records", response_model=list[SyncRecordView])
async def rejected_records(
    connector_id: int,
    limit: int | None = LimitQuery,
    service: SyncService = Depends(get_sync_service),
) -> list[SyncRecordView]:
    return await asyncio.to_thread(service.get_rejected_records, connector_id, limit)


@router.get("/connectors/{connector_id}/conflicts", response_model=list[SyncRecordView])
async def conflicts(
    connector_id: int,
    limit: int | None = LimitQuery,
    service: SyncService = Depends(get_sync_service),
) -> list[SyncRecordView]:
    return await asyncio.to_thread(service.get_conflicts, connector_id, limit)


@router.get("/connectors/{connector_id}/overrides", response_model=list[SyncRecordView])
async def override_history(
    connector_id: int,
    limit: int | None = LimitQuery,
    approved_by: str | None = Query(default=None, description="Only overrides by this approver"),
    start: datetime | None = Query(default=None, description="Synced at or after"),
    end: datetime | None = Query(default=None, description="Synced before"),
    service: SyncService = Depends(get_sync_service),
) -> list[SyncRecordView]:
    return await asyncio.to_thread(
        lambda: service.get_override_history(
            connector_id, limit, approved_by=approved_by, start=start, end=end
        )
    )


@router.get("/connectors/{connector_id}/logs", response_model=list[IntegrationLogView])
async def connector_logs(
    connector_id: int,
    limit: int | None = LimitQuery,
    service: SyncService = Depends(get_sync_service),
) -> list[IntegrationLogView]:
    return await asyncio.to_thread(service.get_connector_logs, connector_id, limit)


@router.get("/logs/{correlation_id}", response_model=list[IntegrationLogView])
async def logs_by_correlation(
    correlation_id: str,
    service: SyncService = Depends(get_sync_service),
) -> list[IntegrationLogView]:
    """Return every integration log entry of one probe or run, in write order."""

    return await asyncio.to_thread(service.get_logs_by_correlation_id, correlation_id)


@router.get("/connectors/{connector_id}/statistics", response_model=RunStatistics)
async def connector_statistics(
    connector_id: int,
    start: datetime | None = Query(default=None, description="Window start (inclusive)"),
    end: datetime | None = Query(default=None, description="Window end (exclusive), default now"),
    service: SyncService = Depends(get_sync_service),
) -> RunStatistics:
    """Aggregate run states, record outcomes and outbound calls over a time window."""

    await asyncio.to_thread(service.registry.get, connector_id)
    return await asyncio.to_thread(service.get_statistics, connector_id, start, end)


@router.get("/runs", response_model=RunSearchResult)
async def search_runs(
    connector_id: int | None = None,
    state: RunState | None = None,
    initiated_by: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = Query(default=1, ge=1),
    page_size: int | None = LimitQuery,
    service: SyncService = Depends(get_sync_service),
) -> RunSearchResult:
    return await asyncio.to_thread(
        lambda: service.search_runs(
            connector_id=connector_id,
            state=state,
            initiated_by=initiated_by,
            start=start,
            end=end,
            page=page,
            page_size=page_size,
        )
    )


@router.get("/runs/{correlation_id}", response_model=RunDetails)
async def run_details(
    correlation_id: str,
    service: SyncService = Depends(get_sync_service),
) -> RunDetails:
    """Return one finalized run with its sync records and integration log."""

    details = await asyncio.to_thread(service.get_run_details, correlation_id)
    if details is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sync run with correlation id {correlation_id}",
        )
    return details
