"""
Exception hierarchy for the swap execution engine.

- OrderValidationError: rejected at submission, never enqueued or retried
- TransientExecutionError: raised inside a pipeline stage, retried with backoff
- TerminalExecutionError: attempts exhausted, recorded as a failed order
- BroadcastDeliveryError: observer delivery problem, logged and never propagated
"""

from typing import Any


class SwapEngineError(Exception):
    """Base class for engine errors."""


class OrderValidationError(SwapEngineError):
    """Raised when a submission fails validation."""

    def __init__(
        self,
        error: str,
        message: str,
        code: str,
        field: str | None = None,
        **details: Any,
    ):
        super().__init__(message)
        self.error = error
        self.message = message
        self.code = code
        self.field = field
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Response body for the HTTP layer."""
        body: dict[str, Any] = {
            "error": self.error,
            "message": self.message,
            "code": self.code,
        }
        if self.field is not None:
            body["field"] = self.field
        body.update(self.details)
        return body


class TransientExecutionError(SwapEngineError):
    """A pipeline stage failed in a way that may succeed on retry."""


class QuoteUnavailableError(TransientExecutionError):
    """A venue could not produce a quote."""

    def __init__(self, venue: str, reason: str):
        super().__init__(f"{venue} quote unavailable: {reason}")
        self.venue = venue
        self.reason = reason


class PersistenceError(TransientExecutionError):
    """The order store rejected or failed a write."""


class TerminalExecutionError(SwapEngineError):
    """An order exhausted its attempts and was marked failed."""

    def __init__(self, order_id: str, attempts: int, last_error: str):
        super().__init__(f"Order {order_id} failed after {attempts} attempts: {last_error}")
        self.order_id = order_id
        self.attempts = attempts
        self.last_error = last_error


class BroadcastDeliveryError(SwapEngineError):
    """An event could not be delivered to a connected observer."""


class OrderNotFoundError(SwapEngineError):
    """No order exists with the requested identifier."""

    def __init__(self, order_id: str):
        super().__init__(f"Order with ID '{order_id}' does not exist")
        self.order_id = order_id


class QueueClosedError(SwapEngineError):
    """The work queue is shutting down and no longer accepts jobs."""
