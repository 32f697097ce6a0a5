"""
Work queue: durable jobs, retry scheduling and bounded dispatch.
"""

from swap_engine.jobs.models import (
    BackoffPolicy,
    BackoffType,
    FailureDecision,
    Job,
    JobOptions,
    JobState,
    RetentionPolicy,
    format_delay,
)
from swap_engine.jobs.results import Fatal, JobResult, Ok, Retryable
from swap_engine.jobs.scheduler import STALLED_LIMIT_MESSAGE, JobHandler, WorkQueue
from swap_engine.jobs.store import JobStore

__all__ = [
    "BackoffPolicy",
    "BackoffType",
    "FailureDecision",
    "Fatal",
    "Job",
    "JobHandler",
    "JobOptions",
    "JobResult",
    "JobState",
    "JobStore",
    "Ok",
    "RetentionPolicy",
    "Retryable",
    "STALLED_LIMIT_MESSAGE",
    "WorkQueue",
    "format_delay",
]
