"""Health check endpoint."""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ...models.base import get_engine

router = APIRouter()


def _database_status() -> dict[str, Any]:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok"}


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint including database connectivity status."""

    database_status = await asyncio.to_thread(_database_status)
    overall_status = "healthy" if database_status["status"] == "ok" else "unhealthy"

    return {
        "status": overall_status,
        "service": "esg_sync",
        "database": database_status,
    }
