"""
Order API routes.

Endpoints for submitting swap orders and reading their state. Submission
is asynchronous: the response only confirms the order was accepted; its
outcome is streamed over /ws/{orderId} or read back with GET.
"""

import time
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from swap_engine import __version__
from swap_engine.domain.order import validate_order_request
from swap_engine.engine import SwapEngine
from swap_engine.exceptions import OrderValidationError
from swap_engine.logging import get_logger

router = APIRouter(prefix="/api", tags=["Orders"])
logger = get_logger(__name__)

_PROCESS_START = time.monotonic()


def get_engine(request: Request) -> SwapEngine:
    """Engine owned by the running application."""
    return request.app.state.engine


# =============================================================================
# Response Models
# =============================================================================


class ExecuteOrderResponse(BaseModel):
    """Response from order submission."""

    order_id: str = Field(..., alias="orderId")
    status: str = "accepted"
    message: str = "Order has been queued for processing"
    websocket_url: str = Field(..., alias="websocketUrl")
    estimated_processing_time: str = Field(default="3-5 seconds", alias="estimatedProcessingTime")

    model_config = {"populate_by_name": True}


class OrderListResponse(BaseModel):
    """All orders, newest first."""

    total: int
    orders: list[dict[str, Any]]
    timestamp: str


class QueueStatsResponse(BaseModel):
    """Work queue snapshot."""

    queue: str
    running: bool
    concurrency: int
    in_flight: int
    counts: dict[str, int]


class ServiceHealthResponse(BaseModel):
    """Service health."""

    status: str
    service: str
    timestamp: str
    uptime: float
    version: str


# =============================================================================
# Endpoints
# =============================================================================


@router.post(
    "/orders/execute",
    response_model=ExecuteOrderResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def execute_order(
    request: Request,
    engine: SwapEngine = Depends(get_engine),
) -> ExecuteOrderResponse:
    """
    Submit a swap order.

    Validates the body, persists a pending order and enqueues it. Returns
    202 with the order ID and the WebSocket path for live updates.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise OrderValidationError(
            "INVALID_BODY",
            "Request body must be valid JSON",
            "ERR_000",
        )

    order_request = validate_order_request(payload)
    order = await engine.submit(order_request)

    return ExecuteOrderResponse(
        order_id=order.id,
        websocket_url=f"/ws/{order.id}",
    )


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    engine: SwapEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Get one order by ID."""
    order = await engine.get_order(order_id)
    return order.to_api()


@router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    limit: int | None = Query(default=None, ge=1, le=1000),
    engine: SwapEngine = Depends(get_engine),
) -> OrderListResponse:
    """List orders, newest first."""
    orders = await engine.list_orders(limit=limit)
    return OrderListResponse(
        total=len(orders),
        orders=[order.to_api() for order in orders],
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/queue/stats", response_model=QueueStatsResponse)
async def queue_stats(engine: SwapEngine = Depends(get_engine)) -> QueueStatsResponse:
    """Job counts per state and current dispatch load."""
    return QueueStatsResponse(**await engine.queue_stats())


@router.get("/health", response_model=ServiceHealthResponse)
async def service_health() -> ServiceHealthResponse:
    """Service health check."""
    return ServiceHealthResponse(
        status="healthy",
        service="order-execution-engine",
        timestamp=datetime.now(UTC).isoformat(),
        uptime=round(time.monotonic() - _PROCESS_START, 2),
        version=__version__,
    )
