"""
Structured logging configuration for the swap execution engine.

Provides consistent logging format across all modules with:
- JSON structured output for production
- Human-readable output for development
- Order ID tracking so every line a job emits can be correlated
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import UTC, datetime

# Context variable for tracking the order being processed across awaits
current_order_id: ContextVar[str | None] = ContextVar("current_order_id", default=None)


class SwapFormatter(logging.Formatter):
    """
    Custom formatter for engine logs.

    Includes timestamp, level, module, order_id (if set), and message.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.timestamp = datetime.now(UTC).isoformat()

        order_id = current_order_id.get()
        record.order_id = f"[{order_id}] " if order_id else ""

        return super().format(record)


class JSONLineFormatter(SwapFormatter):
    """Formatter emitting one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        super().format(record)
        payload = {
            "timestamp": record.timestamp,
            "level": record.levelname,
            "module": record.name,
            "order_id": current_order_id.get(),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Configure logging for the engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON lines (for production)

    Returns:
        Configured root logger
    """
    root = logging.getLogger()
    root.handlers.clear()

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    formatter: logging.Formatter
    if json_output:
        formatter = JSONLineFormatter()
    else:
        formatter = SwapFormatter(
            "%(timestamp)s | %(levelname)-8s | %(name)s | %(order_id)s%(message)s"
        )
    handler.setFormatter(formatter)
    root.addHandler(handler)

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def set_order_id(order_id: str) -> None:
    """Set the current order ID for log correlation."""
    current_order_id.set(order_id)


def clear_order_id() -> None:
    """Clear the current order ID."""
    current_order_id.set(None)
