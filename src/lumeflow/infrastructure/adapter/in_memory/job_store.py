import threading

from lumeflow.application.port import JobStore
from lumeflow.domain.entity import Job


class InMemoryJobStore(JobStore):
    """Process-local job store. The job map and the active set share one lock."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._active: set[str] = set()
        self._lock = threading.Lock()

    def add(self, job: Job) -> None:
        """
        Store a new job.

        :param job: The job to store
        :type job: Job
        :raises ValueError: If a job with the same id is already stored
        """
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job '{job.id}' already exists")
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def list(self) -> list[Job]:
        with self._lock:
            return list(self._jobs.values())

    def count(self) -> int:
        with self._lock:
            return len(self._jobs)

    def try_activate(self, job_id: str) -> bool:
        with self._lock:
            if job_id in self._active:
                return False
            self._active.add(job_id)
            return True

    def deactivate(self, job_id: str) -> None:
        with self._lock:
            self._active.discard(job_id)

    def is_active(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._active

    def active_ids(self) -> set[str]:
        with self._lock:
            return set(self._active)
