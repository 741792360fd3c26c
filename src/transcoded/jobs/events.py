"""Lifecycle and progress events broadcast to connected clients."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from transcoded.jobs.models import Job, JobProgress
from transcoded.jobs.store import StoreSnapshot


class EventKind(str, Enum):
    SNAPSHOT = "snapshot"
    JOB_ADDED = "job_added"
    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    DAEMON_SHUTDOWN = "daemon_shutdown"


@dataclass(slots=True, frozen=True)
class DaemonEvent:
    """One broadcast event; which fields are set depends on ``kind``."""

    kind: EventKind
    job: Job | None = None
    job_id: str | None = None
    progress: JobProgress | None = None
    detail: str | None = None
    snapshot: StoreSnapshot | None = None

    @classmethod
    def for_job(cls, kind: EventKind, job: Job) -> DaemonEvent:
        return cls(kind=kind, job=job.copy(), job_id=job.job_id, detail=job.failure_detail)

    @classmethod
    def for_progress(cls, job_id: str, progress: JobProgress) -> DaemonEvent:
        return cls(kind=EventKind.JOB_PROGRESS, job_id=job_id, progress=progress)
