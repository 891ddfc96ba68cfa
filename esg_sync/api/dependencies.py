"""Request guards and the shared sync service for the API routers."""

from __future__ import annotations

import secrets
from functools import lru_cache

from fastapi import Header, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..sync.service import SyncService
from ..utils.config import get_settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "api"})

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _key_matches(presented: str, configured: list[str]) -> bool:
    # Compare against every key so timing does not reveal which one matched.
    matched = False
    for candidate in configured:
        matched |= secrets.compare_digest(presented.encode(), candidate.encode())
    return matched


async def require_api_key(x_api_key: str | None = Security(api_key_header)) -> str:
    """Reject requests without a configured ``X-API-Key``.

    401 when no key is sent (or none is configured), 403 when the key is unknown.
    """

    configured_keys = get_settings().api_keys
    if not configured_keys or x_api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key." if configured_keys else "API authentication is not configured.",
        )

    if not _key_matches(x_api_key, configured_keys):
        logger.warning("Rejected request with unknown API key", extra={"status": "forbidden"})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key.")
    return x_api_key


async def current_user(x_user_id: str | None = Header(default=None)) -> str:
    """Return the platform user on whose behalf the request acts."""

    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-User-Id header.",
        )
    return x_user_id.strip()


@lru_cache(maxsize=1)
def get_sync_service() -> SyncService:
    return SyncService()
