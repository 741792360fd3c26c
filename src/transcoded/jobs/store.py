"""In-memory state store: queue, active set and history."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum

from transcoded.jobs.models import Job, JobStatus


class JobLocation(str, Enum):
    QUEUE = "queue"
    ACTIVE = "active"
    HISTORY = "history"


@dataclass(slots=True)
class StoreSnapshot:
    """Point-in-time copy of the whole store."""

    queue: list[Job] = field(default_factory=list)
    active: dict[str, Job] = field(default_factory=dict)
    history: list[Job] = field(default_factory=list)

    def job_ids(self) -> set[str]:
        ids = {job.job_id for job in self.queue}
        ids.update(self.active)
        ids.update(job.job_id for job in self.history)
        return ids


class StateStore:
    """Holds every job in exactly one of queue, active set or history.

    Not thread-safe: the scheduler thread is its only owner.
    """

    def __init__(self) -> None:
        self._queue: deque[Job] = deque()
        self._active: dict[str, Job] = {}
        self._history: list[Job] = []
        self._known_ids: set[str] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def is_known_id(self, job_id: str) -> bool:
        """True for any id ever held by this store, including deleted history."""

        return job_id in self._known_ids

    def enqueue(self, job: Job) -> None:
        if job.status is not JobStatus.QUEUED:
            raise ValueError(f"Only queued jobs can be enqueued, got {job.status.value}")
        self._register(job.job_id)
        self._queue.append(job)

    def pop_next(self) -> Job | None:
        if not self._queue:
            return None
        return self._queue.popleft()

    def remove_queued(self, job_id: str) -> Job | None:
        for index, job in enumerate(self._queue):
            if job.job_id == job_id:
                del self._queue[index]
                return job
        return None

    def activate(self, job: Job) -> None:
        if job.status is not JobStatus.ACTIVE:
            raise ValueError(f"Only active jobs can enter the active set, got {job.status.value}")
        self._active[job.job_id] = job

    def get_active(self, job_id: str) -> Job | None:
        return self._active.get(job_id)

    def release_active(self, job_id: str) -> Job | None:
        return self._active.pop(job_id, None)

    def append_history(self, job: Job) -> None:
        if not job.status.is_terminal:
            raise ValueError(f"Only terminal jobs belong in history, got {job.status.value}")
        self._history.append(job)

    def find(self, job_id: str) -> tuple[JobLocation, Job] | None:
        if job_id in self._active:
            return JobLocation.ACTIVE, self._active[job_id]
        for job in self._queue:
            if job.job_id == job_id:
                return JobLocation.QUEUE, job
        for job in self._history:
            if job.job_id == job_id:
                return JobLocation.HISTORY, job
        return None

    def delete_history(self, job_id: str) -> Job | None:
        for index, job in enumerate(self._history):
            if job.job_id == job_id:
                return self._history.pop(index)
        return None

    def clear_history(self) -> int:
        removed = len(self._history)
        self._history.clear()
        return removed

    def list_queue(self) -> list[Job]:
        return [job.copy() for job in self._queue]

    def list_active(self) -> list[Job]:
        return [job.copy() for job in self._active.values()]

    def list_history(self) -> list[Job]:
        return [job.copy() for job in self._history]

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            queue=self.list_queue(),
            active={job.job_id: job.copy() for job in self._active.values()},
            history=self.list_history(),
        )

    def restore(self, snapshot: StoreSnapshot) -> None:
        self._queue = deque(job.copy() for job in snapshot.queue)
        self._active = {job_id: job.copy() for job_id, job in snapshot.active.items()}
        self._history = [job.copy() for job in snapshot.history]
        self._known_ids = snapshot.job_ids()

    def _register(self, job_id: str) -> None:
        if job_id in self._known_ids:
            raise ValueError(f"Job id {job_id} was already used")
        self._known_ids.add(job_id)
