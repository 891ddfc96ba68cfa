"""FastAPI application for the ESG connector sync service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..exceptions import (
    ConfigurationError,
    ConnectorAuthenticationError,
    ConnectorDisabledError,
    ConnectorNotFoundError,
    EsgSyncError,
    OverrideNotAuthorizedError,
    SyncAlreadyRunningError,
)
from ..utils.config import ensure_runtime_configuration, get_settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"component": "FastAPI"})


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore
    """Application lifespan context manager for startup/shutdown."""
    # Startup
    ensure_runtime_configuration(get_settings())
    logger.info("ESG sync API starting up...")
    yield
    # Shutdown
    logger.info("ESG sync API shutting down...")


# Create FastAPI app
app = FastAPI(
    title="ESG Sync API",
    description="Synchronizes HR and Finance source systems into the ESG reporting platform",
    version="0.1.0",
    lifespan=lifespan,
)

_STATUS_BY_ERROR: tuple[tuple[type[EsgSyncError], int], ...] = (
    (ConnectorNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConnectorDisabledError, status.HTTP_409_CONFLICT),
    (SyncAlreadyRunningError, status.HTTP_409_CONFLICT),
    (OverrideNotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (ConnectorAuthenticationError, status.HTTP_502_BAD_GATEWAY),
    (ConfigurationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def _status_for(exc: EsgSyncError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Global exception handler
@app.exception_handler(EsgSyncError)
async def esg_sync_exception_handler(request: Request, exc: EsgSyncError) -> JSONResponse:
    """Translate pipeline exceptions into JSON error responses."""
    status_code = _status_for(exc)
    correlation_id = getattr(exc, "correlation_id", None) or request.headers.get(
        "x-correlation-id", "-"
    )
    log_method = logger.error if status_code >= 500 else logger.warning
    log_method(
        "EsgSyncError: %s",
        exc,
        extra={
            "path": request.url.path,
            "correlation_id": correlation_id,
            "status": "error",
        },
    )
    content = {
        "status": "error",
        "message": str(exc),
        "error_type": exc.__class__.__name__,
    }
    reason = getattr(exc, "reason", None)
    if reason:
        content["reason"] = reason
    return JSONResponse(status_code=status_code, content=content)


# Import routers
from .routes import connectors, health, metrics, sync  # noqa: E402

app.include_router(health.router, tags=["health"])
app.include_router(connectors.router, prefix="/api/v1", tags=["connectors"])
app.include_router(sync.router, prefix="/api/v1", tags=["sync"])
app.include_router(metrics.router, tags=["monitoring"])
