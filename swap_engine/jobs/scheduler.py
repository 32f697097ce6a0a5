"""
Work queue and retry scheduler.

Dispatches jobs to an async handler with:
- Bounded concurrency (at most `concurrency` jobs in flight)
- A lease per dispatch; a job whose lease expires is considered stalled,
  its holder is cancelled and the job is made visible again
- Exponential backoff between attempts, up to the job's attempt ceiling
- Single flight per job: a job is never dispatched while a previous
  attempt's task is still alive
- Retention of finished jobs per the job's removal policies
- Lifecycle events published to an EventBus

Delivery is at-least-once: a job may run again after a stall or a restart,
so handlers must be safe to re-run from the start.
"""

import asyncio
import itertools
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from swap_engine.exceptions import PersistenceError, QueueClosedError
from swap_engine.jobs.models import FailureDecision, Job, JobOptions, JobState
from swap_engine.jobs.results import Fatal, JobResult, Ok, Retryable, error_message
from swap_engine.jobs.store import JobStore
from swap_engine.logging import get_logger
from swap_engine.runtime.event_bus import Event, EventBus, EventType

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[JobResult]]

STALLED_LIMIT_MESSAGE = "job stalled more than allowable limit"


def _now() -> datetime:
    return datetime.now(UTC)


class WorkQueue:
    """
    Durable job queue with retry scheduling.

    All job state changes happen under a single asyncio lock; lifecycle
    events are published after the lock is released.
    """

    def __init__(
        self,
        name: str,
        handler: JobHandler,
        *,
        concurrency: int = 10,
        lock_duration_s: float = 30.0,
        max_stalled_count: int = 1,
        poll_interval_s: float = 0.1,
        default_options: JobOptions | None = None,
        store: JobStore | None = None,
        event_bus: EventBus | None = None,
    ):
        """
        Initialize work queue.

        Args:
            name: Queue name (used in logs and task names)
            handler: Async callable run once per attempt
            concurrency: Maximum jobs executing at once
            lock_duration_s: Lease length per dispatch
            max_stalled_count: Stalls tolerated before a job is failed
            poll_interval_s: Upper bound on dispatcher sleep
            default_options: Options for jobs enqueued without any
            store: Job table (in-memory when not given)
            event_bus: Receiver of lifecycle events
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self._name = name
        self._handler = handler
        self._concurrency = concurrency
        self._lock_duration = timedelta(seconds=lock_duration_s)
        self._max_stalled_count = max_stalled_count
        self._poll_interval_s = poll_interval_s
        self._default_options = default_options or JobOptions()
        self._store = store or JobStore()
        self._event_bus = event_bus

        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._waiters: dict[str, asyncio.Event] = {}
        self._dispatcher: asyncio.Task[None] | None = None
        self._closed = False

        start = max((job.sequence for job in self._store.all()), default=-1) + 1
        self._sequence = itertools.count(start)

    @property
    def name(self) -> str:
        return self._name

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def in_flight(self) -> int:
        """Number of attempts currently executing."""
        return len(self._tasks)

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Public API
    # =========================================================================

    async def start(self) -> None:
        """Recover orphaned jobs and start dispatching."""
        if self._closed:
            raise QueueClosedError(f"Queue {self._name} is closed")
        if self._dispatcher is not None:
            return

        async with self._lock:
            events = self._reap_stalled(_now(), orphans_only=True)
        await self._publish_all(events)

        self._dispatcher = asyncio.create_task(
            self._dispatch_loop(),
            name=f"{self._name}:dispatcher",
        )
        logger.info(
            "Queue %s started (concurrency=%d, lease=%.1fs, %d jobs on record)",
            self._name,
            self._concurrency,
            self._lock_duration.total_seconds(),
            len(self._store),
        )

    async def enqueue(
        self,
        job_id: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
        name: str | None = None,
    ) -> Job:
        """
        Admit a job for dispatch.

        Enqueueing an ID that is already on record returns the existing
        job unchanged.

        Raises:
            QueueClosedError: if the queue is shutting down
        """
        if self._closed:
            raise QueueClosedError(f"Queue {self._name} is closed")

        async with self._lock:
            existing = self._store.get(job_id)
            if existing is not None:
                logger.info("Job %s already on record (%s)", job_id, existing.state.value)
                return existing.model_copy(deep=True)

            now = _now()
            job = Job(
                id=job_id,
                name=name or job_id,
                payload=payload,
                options=options or self._default_options,
                created_at=now,
                available_at=now,
                sequence=next(self._sequence),
            )
            self._store.save(job)

        logger.debug("Enqueued job %s", job_id)
        self._wakeup.set()
        return job.model_copy(deep=True)

    async def ack(self, job_id: str, token: str | None = None) -> bool:
        """
        Mark an active job completed.

        Args:
            job_id: Job to acknowledge
            token: Lease token of the attempt; a mismatch means the lease
                was lost and the call is ignored

        Returns:
            True if the job transitioned, False if the call was a no-op

        Raises:
            PersistenceError: if the job table cannot be written; the job
                keeps its previous state
        """
        async with self._lock:
            current = self._active_job(job_id, token, "ack")
            if current is None:
                return False

            job = current.model_copy(deep=True)
            job.state = JobState.COMPLETED
            job.finished_at = _now()
            self._release_lease(job)
            self._store.save(job)
            snapshot = job.model_copy(deep=True)

        await self._publish(EventType.JOB_COMPLETED, snapshot)
        self._notify_finished(job_id)
        self._wakeup.set()
        return True

    async def fail(
        self,
        job_id: str,
        error: BaseException | str,
        token: str | None = None,
        retryable: bool = True,
    ) -> FailureDecision | None:
        """
        Record a failed attempt.

        The attempt count is incremented; the job is re-queued after the
        backoff delay while attempts remain (and the error is retryable),
        otherwise it is marked permanently failed.

        Returns:
            The decision taken, or None if the call was a no-op

        Raises:
            PersistenceError: if the job table cannot be written; the job
                keeps its previous state
        """
        message = error_message(error)

        async with self._lock:
            current = self._active_job(job_id, token, "fail")
            if current is None:
                return None

            now = _now()
            job = current.model_copy(deep=True)
            job.attempts_made += 1
            job.last_error = message
            self._release_lease(job)

            will_retry = retryable and job.attempts_made < job.max_attempts
            decision = FailureDecision(
                job_id=job.id,
                attempt=job.attempts_made,
                max_attempts=job.max_attempts,
                error=message,
                will_retry=will_retry,
            )
            if will_retry:
                delay_ms = job.options.backoff.delay_ms(job.attempts_made)
                job.state = JobState.DELAYED
                job.available_at = now + timedelta(milliseconds=delay_ms)
                decision.delay_ms = delay_ms
                decision.retry_at = job.available_at
            else:
                job.state = JobState.FAILED
                job.finished_at = now

            self._store.save(job)
            snapshot = job.model_copy(deep=True)

        if will_retry:
            logger.debug(
                "Job %s attempt %d/%d failed, retrying in %s: %s",
                job_id,
                decision.attempt,
                decision.max_attempts,
                decision.delay_label,
                message,
            )
            await self._publish(EventType.JOB_RETRYING, snapshot, decision)
        else:
            logger.debug(
                "Job %s failed permanently after %d attempts: %s",
                job_id,
                decision.attempt,
                message,
            )
            await self._publish(EventType.JOB_FAILED, snapshot, decision)
            self._notify_finished(job_id)

        self._wakeup.set()
        return decision

    async def get_job(self, job_id: str) -> Job | None:
        """Get a copy of a job, or None if unknown or already removed."""
        async with self._lock:
            job = self._store.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def counts(self) -> dict[str, int]:
        """Number of jobs on record per state."""
        async with self._lock:
            counts = {state.value: 0 for state in JobState}
            for job in self._store.all():
                counts[job.state.value] += 1
        return counts

    async def wait_for(self, job_id: str, timeout: float | None = None) -> Job | None:
        """
        Wait until a job reaches a terminal state.

        Returns:
            The finished job, or None if it is unknown or was removed by
            retention before it could be read

        Raises:
            TimeoutError: if the job does not finish in time
        """
        async with self._lock:
            job = self._store.get(job_id)
            if job is None:
                return None
            if job.state.is_terminal:
                return job.model_copy(deep=True)
            waiter = self._waiters.setdefault(job_id, asyncio.Event())

        await asyncio.wait_for(waiter.wait(), timeout=timeout)
        return await self.get_job(job_id)

    async def close(self, grace_s: float = 10.0) -> None:
        """
        Stop the queue.

        Stops accepting and dispatching jobs, gives in-flight attempts up
        to `grace_s` to finish, then cancels the rest. Cancelled jobs stay
        ACTIVE on record and are recovered as stalled on the next start.
        Calling close again is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass

        in_flight = list(self._tasks.values())
        if in_flight:
            logger.info(
                "Queue %s waiting up to %.1fs for %d in-flight jobs",
                self._name,
                grace_s,
                len(in_flight),
            )
            _, pending = await asyncio.wait(in_flight, timeout=grace_s)
            if pending:
                for task in pending:
                    task.cancel()
                await asyncio.wait(pending, timeout=1.0)
                logger.warning(
                    "Queue %s abandoned %d in-flight jobs to lease recovery",
                    self._name,
                    len(pending),
                )

        logger.info("Queue %s closed", self._name)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _dispatch_loop(self) -> None:
        """Continuously hand ready jobs to the handler."""
        while not self._closed:
            self._wakeup.clear()
            events: list[tuple[EventType, Job, FailureDecision | None]] = []
            timeout = self._poll_interval_s

            try:
                async with self._lock:
                    now = _now()
                    events = self._reap_stalled(now)
                    self._prune_finished(now)
                    while len(self._tasks) < self._concurrency:
                        job = self._next_ready(now)
                        if job is None:
                            break
                        self._claim(job, now)
                    timeout = self._next_wakeup(now)
            except Exception:
                logger.exception("Queue %s dispatch iteration failed", self._name)

            await self._publish_all(events)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass

    def _next_ready(self, now: datetime) -> Job | None:
        """Earliest pending job whose delay has elapsed. Lock held."""
        ready = [
            job
            for job in self._store.all()
            if job.state.is_pending and job.available_at <= now and job.id not in self._tasks
        ]
        if not ready:
            return None
        return min(ready, key=lambda job: (job.available_at, job.sequence))

    def _next_wakeup(self, now: datetime) -> float:
        """Seconds until the dispatcher next has something to do. Lock held."""
        timeout = self._poll_interval_s
        for job in self._store.all():
            if job.state.is_pending:
                due = job.available_at
            elif job.state == JobState.ACTIVE and job.lease_expires_at is not None:
                due = job.lease_expires_at
            else:
                continue
            # Overdue work waits for a task to finish or the next poll
            if due > now:
                timeout = min(timeout, (due - now).total_seconds())
        return timeout

    def _claim(self, ready: Job, now: datetime) -> None:
        """Lease a job and start its attempt. Lock held."""
        job = ready.model_copy(deep=True)
        job.state = JobState.ACTIVE
        job.processed_at = now
        job.lease_token = uuid4().hex
        job.lease_expires_at = now + self._lock_duration
        self._store.save(job)

        snapshot = job.model_copy(deep=True)
        task = asyncio.create_task(self._execute(snapshot), name=f"{self._name}:{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda t, job_id=job.id: self._on_task_done(job_id, t))

    async def _execute(self, job: Job) -> None:
        """Run one attempt and report its outcome."""
        token = job.lease_token
        await self._publish(EventType.JOB_ACTIVE, job)

        try:
            result = await self._handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Handler raised for job %s", job.id)
            result = Retryable(e)

        try:
            if isinstance(result, Ok):
                await self.ack(job.id, token=token)
            elif isinstance(result, Fatal):
                await self.fail(job.id, result.error, token=token, retryable=False)
            else:
                await self.fail(job.id, result.error, token=token)
        except PersistenceError as e:
            # Job stays ACTIVE; lease expiry hands it back to the dispatcher
            logger.error("Could not record outcome of job %s: %s", job.id, e)

    def _on_task_done(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("Attempt task for job %s crashed: %s", job_id, task.exception())
        self._wakeup.set()

    # =========================================================================
    # Leases, stalls and retention
    # =========================================================================

    def _active_job(self, job_id: str, token: str | None, op: str) -> Job | None:
        """Resolve the job an ack/fail applies to. Lock held."""
        job = self._store.get(job_id)
        if job is None:
            logger.debug("%s for unknown job %s ignored", op, job_id)
            return None
        if job.state.is_terminal:
            logger.debug("%s for %s job %s ignored", op, job.state.value, job_id)
            return None
        if job.state != JobState.ACTIVE or (token is not None and job.lease_token != token):
            logger.warning("%s for job %s ignored: lease no longer held", op, job_id)
            return None
        return job

    @staticmethod
    def _release_lease(job: Job) -> None:
        job.lease_token = None
        job.lease_expires_at = None

    def _reap_stalled(
        self,
        now: datetime,
        orphans_only: bool = False,
    ) -> list[tuple[EventType, Job, FailureDecision | None]]:
        """
        Make jobs with expired leases visible again. Lock held.

        With `orphans_only`, every ACTIVE job without a live task is
        treated as stalled regardless of its lease (startup recovery).
        """
        events: list[tuple[EventType, Job, FailureDecision | None]] = []

        for current in self._store.all():
            if current.state != JobState.ACTIVE:
                continue
            if orphans_only:
                if current.id in self._tasks:
                    continue
            elif current.lease_expires_at is None or current.lease_expires_at > now:
                continue

            job = current.model_copy(deep=True)
            job.stalled_count += 1
            self._release_lease(job)

            decision: FailureDecision | None = None
            if job.stalled_count > self._max_stalled_count:
                job.state = JobState.FAILED
                job.finished_at = now
                job.last_error = STALLED_LIMIT_MESSAGE
                decision = FailureDecision(
                    job_id=job.id,
                    attempt=job.attempt,
                    max_attempts=job.max_attempts,
                    error=STALLED_LIMIT_MESSAGE,
                    will_retry=False,
                )
            else:
                job.state = JobState.WAITING
                job.available_at = now

            try:
                self._store.save(job)
            except PersistenceError as e:
                logger.error("Could not recover stalled job %s: %s", job.id, e)
                continue

            task = self._tasks.get(job.id)
            if task is not None:
                task.cancel()

            if decision is not None:
                logger.debug("Job %s %s", job.id, STALLED_LIMIT_MESSAGE)
                events.append((EventType.JOB_FAILED, job.model_copy(deep=True), decision))
            else:
                logger.debug(
                    "Job %s stalled (lease expired), made visible again (%d/%d)",
                    job.id,
                    job.stalled_count,
                    self._max_stalled_count,
                )
                events.append((EventType.JOB_STALLED, job.model_copy(deep=True), None))

        return events

    def _prune_finished(self, now: datetime) -> None:
        """Remove finished jobs past their retention. Lock held."""
        expired: list[str] = []

        for state, policy_attr in (
            (JobState.COMPLETED, "remove_on_complete"),
            (JobState.FAILED, "remove_on_fail"),
        ):
            finished = sorted(
                (job for job in self._store.all() if job.state == state),
                key=lambda job: job.finished_at or job.created_at,
                reverse=True,
            )
            for rank, job in enumerate(finished):
                policy = getattr(job.options, policy_attr)
                if policy is None:
                    continue
                finished_at = job.finished_at or job.created_at
                too_many = policy.count is not None and rank >= policy.count
                too_old = policy.age is not None and (now - finished_at).total_seconds() > policy.age
                if too_many or too_old:
                    expired.append(job.id)

        if not expired:
            return
        try:
            self._store.remove(expired)
        except PersistenceError as e:
            logger.warning("Could not prune finished jobs from %s: %s", self._name, e)
            return
        logger.debug("Pruned %d finished jobs from %s", len(expired), self._name)

    def _notify_finished(self, job_id: str) -> None:
        waiter = self._waiters.pop(job_id, None)
        if waiter is not None:
            waiter.set()

    # =========================================================================
    # Events
    # =========================================================================

    async def _publish(
        self,
        event_type: EventType,
        job: Job,
        decision: FailureDecision | None = None,
    ) -> None:
        if self._event_bus is None:
            return

        data: dict[str, Any] = {
            "job_id": job.id,
            "name": job.name,
            "queue": self._name,
            "state": job.state.value,
            "attempt": job.attempt,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "stalled_count": job.stalled_count,
            "payload": job.payload,
        }
        if decision is not None:
            data.update(
                {
                    "attempt": decision.attempt,
                    "error": decision.error,
                    "will_retry": decision.will_retry,
                    "delay_ms": decision.delay_ms,
                    "next_retry_in": decision.delay_label,
                }
            )

        await self._event_bus.publish(Event(type=event_type, data=data, job_id=job.id))

    async def _publish_all(
        self,
        events: list[tuple[EventType, Job, FailureDecision | None]],
    ) -> None:
        for event_type, job, decision in events:
            await self._publish(event_type, job, decision)
            if event_type == EventType.JOB_FAILED:
                self._notify_finished(job.id)
