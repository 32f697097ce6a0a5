"""
Job handler results.

Handlers report their outcome as a value instead of raising, and the
scheduler branches on the variant:

- Ok: acknowledge the job
- Retryable: count the attempt, retry after backoff while attempts remain
- Fatal: fail the job permanently without further attempts
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Ok:
    """The job succeeded."""

    value: Any = None


@dataclass(frozen=True)
class Retryable:
    """The attempt failed; another attempt may succeed."""

    error: BaseException | str

    @property
    def message(self) -> str:
        return error_message(self.error)


@dataclass(frozen=True)
class Fatal:
    """The job can never succeed; do not retry."""

    error: BaseException | str

    @property
    def message(self) -> str:
        return error_message(self.error)


JobResult = Ok | Retryable | Fatal


def error_message(error: BaseException | str) -> str:
    """Human-readable message for an error value."""
    if isinstance(error, str):
        return error
    return str(error) or type(error).__name__
