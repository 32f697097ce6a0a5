"""
Job persistence.

Keeps the queue's job table and, when given a path, mirrors every change
to a JSON file so queued, delayed and in-flight jobs survive a restart.
"""

from pathlib import Path

from pydantic import ValidationError

from swap_engine.exceptions import PersistenceError
from swap_engine.jobs.models import Job
from swap_engine.logging import get_logger
from swap_engine.runtime.files import atomic_write_json, read_json

logger = get_logger(__name__)


class JobStore:
    """
    Job table with optional file durability.

    Not locked: the owning WorkQueue serializes access.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._jobs: dict[str, Job] = {}
        if path is not None:
            self._load(path)

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self, path: Path) -> None:
        try:
            raw = read_json(path, default=[])
            for item in raw:
                job = Job.model_validate(item)
                self._jobs[job.id] = job
        except (OSError, ValueError, ValidationError) as e:
            raise PersistenceError(f"Failed to load jobs from {path}: {e}") from e
        if self._jobs:
            logger.info("Loaded %d jobs from %s", len(self._jobs), path)

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def all(self) -> list[Job]:
        return list(self._jobs.values())

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def save(self, job: Job) -> None:
        """
        Insert or replace a job and flush.

        Raises:
            PersistenceError: if the flush fails; the table keeps the
                previous version of the job
        """
        previous = self._jobs.get(job.id)
        self._jobs[job.id] = job
        try:
            self.flush()
        except PersistenceError:
            if previous is None:
                del self._jobs[job.id]
            else:
                self._jobs[job.id] = previous
            raise

    def remove(self, job_ids: list[str]) -> None:
        """Remove jobs and flush, restoring them if the flush fails."""
        removed = {job_id: self._jobs.pop(job_id) for job_id in job_ids if job_id in self._jobs}
        if not removed:
            return
        try:
            self.flush()
        except PersistenceError:
            self._jobs.update(removed)
            raise

    def flush(self) -> None:
        if self._path is None:
            return
        records = [job.model_dump(mode="json", by_alias=True) for job in self._jobs.values()]
        try:
            atomic_write_json(self._path, records)
        except OSError as e:
            raise PersistenceError(f"Failed to write jobs to {self._path}: {e}") from e
