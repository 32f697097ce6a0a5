"""
Work queue models.

A Job wraps one order's payload with retry metadata. Attempt numbering
starts at 1; `attempts_made` counts attempts that have already failed.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class JobState(str, Enum):
    """
    Job lifecycle state.

    - WAITING -> ACTIVE (dispatched to a worker, lease held)
    - ACTIVE -> COMPLETED (ack)
    - ACTIVE -> DELAYED (failed, retry scheduled after backoff)
    - ACTIVE -> WAITING (lease expired, made visible again)
    - ACTIVE -> FAILED (attempts exhausted, fatal error, or stall limit)
    - DELAYED -> ACTIVE (backoff elapsed)

    Terminal states: COMPLETED, FAILED
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)

    @property
    def is_pending(self) -> bool:
        """Waiting for dispatch (immediately or after a delay)."""
        return self in (JobState.WAITING, JobState.DELAYED)


class BackoffType(str, Enum):
    """Retry delay strategy."""

    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class BackoffPolicy(BaseModel):
    """Delay between a failed attempt and the next one."""

    type: BackoffType = BackoffType.EXPONENTIAL
    delay: int = Field(default=2000, ge=0, description="Base delay in milliseconds")

    def delay_ms(self, attempt: int) -> int:
        """
        Delay after the given failed attempt.

        Exponential: delay * 2^(attempt - 1), i.e. 2s, 4s, 8s for the
        default base of 2000ms.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        if self.type == BackoffType.FIXED:
            return self.delay
        return self.delay * 2 ** (attempt - 1)


class RetentionPolicy(BaseModel):
    """How long finished jobs are kept before removal."""

    age: int | None = Field(default=None, ge=0, description="Seconds to keep")
    count: int | None = Field(default=None, ge=0, description="Most recent jobs to keep")


class JobOptions(BaseModel):
    """Options accepted at enqueue time."""

    attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    remove_on_complete: RetentionPolicy | None = Field(
        default_factory=lambda: RetentionPolicy(age=3600, count=100),
        alias="removeOnComplete",
    )
    remove_on_fail: RetentionPolicy | None = Field(
        default_factory=lambda: RetentionPolicy(age=86400),
        alias="removeOnFail",
    )

    model_config = {"populate_by_name": True}


class Job(BaseModel):
    """A queue-tracked unit of work."""

    id: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)

    state: JobState = JobState.WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    last_error: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    available_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    processed_at: datetime | None = None
    finished_at: datetime | None = None

    # Lease held by the worker currently executing the job
    lease_token: str | None = None
    lease_expires_at: datetime | None = None

    # Tie-breaker for dispatch order among equally-ready jobs
    sequence: int = 0

    @property
    def attempt(self) -> int:
        """Number of the current (or next) attempt, starting at 1."""
        return self.attempts_made + 1

    @property
    def max_attempts(self) -> int:
        return self.options.attempts


class FailureDecision(BaseModel):
    """What the scheduler decided after a failed attempt."""

    job_id: str
    attempt: int
    max_attempts: int
    error: str
    will_retry: bool
    delay_ms: int | None = None
    retry_at: datetime | None = None

    @property
    def delay_label(self) -> str | None:
        return format_delay(self.delay_ms) if self.delay_ms is not None else None


def format_delay(delay_ms: int) -> str:
    """Render a delay as seconds with one decimal, e.g. 2000 -> '2.0s'."""
    return f"{delay_ms / 1000:.1f}s"
