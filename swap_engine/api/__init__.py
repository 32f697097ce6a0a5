"""
HTTP and WebSocket API routers.
"""

from swap_engine.api.order_routes import router as order_router
from swap_engine.api.ws_routes import router as ws_router

__all__ = ["order_router", "ws_router"]
