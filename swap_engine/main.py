"""
Swap Execution Engine - FastAPI Application

Main entry point for the service.
Provides REST endpoints for order submission and lookup, and WebSocket
endpoints for live order status.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from swap_engine import __version__
from swap_engine.api.order_routes import router as order_router
from swap_engine.api.ws_routes import router as ws_router
from swap_engine.config import Settings, get_settings, get_settings_dep
from swap_engine.engine import SwapEngine
from swap_engine.exceptions import (
    OrderNotFoundError,
    OrderValidationError,
    PersistenceError,
    QueueClosedError,
)
from swap_engine.logging import get_logger, setup_logging

logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    time: str
    uptime_seconds: float
    running: bool


# =============================================================================
# Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    engine: SwapEngine = app.state.engine

    # Startup
    logger.info("Starting Swap Engine v%s (%s)", __version__, settings.env.value)
    logger.info("Storage: %s at %s", settings.storage_backend.value, settings.data_dir)
    logger.info("Server: http://%s:%d", settings.host, settings.port)
    await engine.start()

    yield

    # Shutdown
    logger.info("Shutting down Swap Engine")
    await engine.stop()


# =============================================================================
# Error Handlers
# =============================================================================


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


async def validation_error_handler(request: Request, exc: OrderValidationError) -> JSONResponse:
    logger.info("Rejected submission: %s (%s)", exc.error, exc.code)
    return JSONResponse(status_code=400, content={**exc.to_dict(), "timestamp": _timestamp()})


async def not_found_handler(request: Request, exc: OrderNotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "error": "ORDER_NOT_FOUND",
            "message": str(exc),
            "code": "ERR_404",
            "orderId": exc.order_id,
            "suggestion": "Check if the orderId is correct or use GET /api/orders to list all orders",
            "timestamp": _timestamp(),
        },
    )


async def queue_closed_handler(request: Request, exc: QueueClosedError) -> JSONResponse:
    return JSONResponse(
        status_code=503,
        content={
            "error": "SERVICE_UNAVAILABLE",
            "message": "The engine is shutting down and not accepting orders",
            "code": "ERR_503",
            "timestamp": _timestamp(),
        },
    )


async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Order store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": "DATABASE_ERROR",
            "message": "Failed to access the order store",
            "code": "ERR_502",
            "timestamp": _timestamp(),
        },
    )


# =============================================================================
# FastAPI Application
# =============================================================================


def create_app(settings: Settings | None = None, engine: SwapEngine | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to run with (environment when None)
        engine: Pre-built engine (built from settings when None)
    """
    settings = settings or get_settings()
    setup_logging(level=settings.log_level, json_output=settings.log_json)

    app = FastAPI(
        title="Swap Execution Engine",
        description="Best-price swap order execution with live status streaming",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.dependency_overrides[get_settings_dep] = lambda: settings
    app.state.engine = engine or SwapEngine(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(OrderValidationError, validation_error_handler)
    app.add_exception_handler(OrderNotFoundError, not_found_handler)
    app.add_exception_handler(QueueClosedError, queue_closed_handler)
    app.add_exception_handler(PersistenceError, persistence_error_handler)

    app.include_router(order_router)
    app.include_router(ws_router)

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        """
        Health check endpoint.

        Returns current status, version, and engine uptime.
        """
        engine: SwapEngine = request.app.state.engine
        now = datetime.now(UTC)
        uptime = (now - engine.start_time).total_seconds() if engine.start_time else 0.0

        return HealthResponse(
            status="healthy" if engine.is_running else "stopped",
            version=__version__,
            time=now.isoformat(),
            uptime_seconds=round(uptime, 2),
            running=engine.is_running,
        )

    @app.get("/config")
    async def config(settings: Settings = Depends(get_settings_dep)) -> dict[str, Any]:
        """
        Get current configuration (redacted).
        """
        return settings.get_redacted_config()

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API info."""
        return {
            "name": "Swap Execution Engine",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "swap_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.env.value == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
