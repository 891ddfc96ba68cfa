"""Connector registry API endpoints."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, status

from ...schemas.connector import ConnectorCreate, ConnectorUpdate, ConnectorView
from ...sync.service import SyncService
from ..dependencies import current_user, get_sync_service, require_api_key

router = APIRouter(prefix="/connectors", dependencies=[Depends(require_api_key)])


@router.post("", response_model=ConnectorView, status_code=status.HTTP_201_CREATED)
async def create_connector(
    request: ConnectorCreate,
    user: str = Depends(current_user),
    service: SyncService = Depends(get_sync_service),
) -> ConnectorView:
    """Register a connector. New connectors start disabled unless ``enabled`` is set."""

    return await asyncio.to_thread(service.registry.create, request, user)


@router.get("", response_model=list[ConnectorView])
async def list_connectors(service: SyncService = Depends(get_sync_service)) -> list[ConnectorView]:
    return await asyncio.to_thread(service.registry.list)


@router.get("/{connector_id}", response_model=ConnectorView)
async def get_connector(
    connector_id: int,
    service: SyncService = Depends(get_sync_service),
) -> ConnectorView:
    return await asyncio.to_thread(service.registry.get, connector_id)


@router.patch("/{connector_id}", response_model=ConnectorView)
async def update_connector(
    connector_id: int,
    request: ConnectorUpdate,
    user: str = Depends(current_user),
    service: SyncService = Depends(get_sync_service),
) -> ConnectorView:
    """Update connector configuration; changing the connector type is rejected."""

    return await asyncio.to_thread(service.update_connector, connector_id, request, user)


@router.post("/{connector_id}/enable", response_model=ConnectorView)
async def enable_connector(
    connector_id: int,
    user: str = Depends(current_user),
    service: SyncService = Depends(get_sync_service),
) -> ConnectorView:
    return await asyncio.to_thread(service.registry.enable, connector_id, user)


@router.post("/{connector_id}/disable", response_model=ConnectorView)
async def disable_connector(
    connector_id: int,
    user: str = Depends(current_user),
    service: SyncService = Depends(get_sync_service),
) -> ConnectorView:
    """Disable a connector; a run already in progress is allowed to finish."""

    return await asyncio.to_thread(service.registry.disable, connector_id, user)
