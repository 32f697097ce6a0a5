"""
WebSocket routes.

/ws/{order_id} streams status events for one order. /ws registers a
generic observer that only receives events fanned out when an order has
no dedicated subscriber (and fallback broadcasting is enabled).
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from swap_engine import __version__
from swap_engine.logging import get_logger
from swap_engine.streaming.hub import BroadcastHub

router = APIRouter(tags=["WebSocket"])
logger = get_logger(__name__)


def _hub(websocket: WebSocket) -> BroadcastHub:
    return websocket.app.state.engine.hub


@router.websocket("/ws/{order_id}")
async def order_updates(websocket: WebSocket, order_id: str) -> None:
    """Stream status updates for one order."""
    hub = _hub(websocket)
    await websocket.accept()
    await hub.subscribe(order_id, websocket)

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except ValueError:
                logger.warning("Ignoring malformed WebSocket message for %s", order_id)
                continue
            await handle_ws_message(hub, websocket, data)
    finally:
        await hub.unsubscribe(order_id, websocket)


@router.websocket("/ws")
async def all_updates(websocket: WebSocket) -> None:
    """Generic observer connection."""
    hub = _hub(websocket)
    await websocket.accept()
    await websocket.send_json(
        {
            "type": "connected",
            "version": __version__,
            "fallback": hub.fallback_to_all,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )
    await hub.watch_all(websocket)
    logger.info("Generic observer connected (%d connections)", hub.subscriber_count())

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except ValueError:
                continue
            await handle_ws_message(hub, websocket, data)
    finally:
        await hub.unwatch(websocket)
        logger.info("Generic observer disconnected (%d connections)", hub.subscriber_count())


async def handle_ws_message(hub: BroadcastHub, websocket: WebSocket, data: Any) -> None:
    """
    Handle incoming WebSocket messages.

    Args:
        hub: Hub the connection is registered with
        websocket: WebSocket connection
        data: Message data
    """
    msg_type = data.get("type") if isinstance(data, dict) else None

    if msg_type == "ping":
        await hub.reply(
            websocket,
            {
                "type": "pong",
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )
    else:
        logger.warning("Unknown WebSocket message type: %s", msg_type)
