"""
Swap Order Execution Engine

An asynchronous swap execution service supporting:
- Best-price routing across two competing DEX venues
- Durable, retryable, concurrency-bounded order processing
- Live per-order status streaming over WebSocket
- REST submission and lookup via FastAPI
"""

__version__ = "1.0.0"
__author__ = "Swap Engine Development Team"

from swap_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
