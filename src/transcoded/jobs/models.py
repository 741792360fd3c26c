"""Domain models for transcoding jobs."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_job_id() -> str:
    return str(uuid4())


class JobStatus(str, Enum):
    """Job lifecycle states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.ACTIVE, JobStatus.CANCELLED}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class EncoderKind(str, Enum):
    """Supported video encoders."""

    SVT_AV1 = "svt-av1"
    AOM = "aom"


class AudioMode(str, Enum):
    """How audio tracks are carried into the output."""

    OPUS = "opus"
    COPY = "copy"
    CUSTOM = "custom"


class InvalidTransitionError(RuntimeError):
    """Status change not allowed by the job lifecycle."""

    def __init__(self, job_id: str, status_from: JobStatus, status_to: JobStatus) -> None:
        super().__init__(
            f"Job {job_id}: transition {status_from.value} -> {status_to.value} is not allowed",
        )
        self.job_id = job_id
        self.status_from = status_from
        self.status_to = status_to


@dataclass(slots=True, frozen=True)
class EncoderParams:
    """Quality/speed parameters passed to the video encoder."""

    crf: int = 30
    preset: int = 6
    threads: int | None = None
    extra_params: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class AudioSettings:
    """Audio handling mode; ``codec`` is only used by ``AudioMode.CUSTOM``."""

    mode: AudioMode = AudioMode.OPUS
    bitrate_kbps: int = 128
    codec: str | None = None


@dataclass(slots=True, frozen=True)
class EncodingSpec:
    """Immutable encoding configuration fixed at enqueue time.

    ``audio_streams`` and ``subtitle_streams`` select source streams by their
    per-type index; ``None`` keeps all of them.
    """

    encoder: EncoderKind = EncoderKind.SVT_AV1
    encoder_params: EncoderParams = field(default_factory=EncoderParams)
    audio: AudioSettings = field(default_factory=AudioSettings)
    audio_streams: tuple[int, ...] | None = None
    subtitle_streams: tuple[int, ...] | None = None


@dataclass(slots=True)
class JobProgress:
    """Live progress of an active job."""

    frames_processed: int = 0
    total_frames: int | None = None
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    encoded_seconds: float = 0.0
    elapsed_seconds: float = 0.0
    eta_seconds: float | None = None
    percent: float = 0.0


@dataclass(slots=True)
class Job:
    """One transcoding request and its lifecycle record."""

    job_id: str
    source: str
    destination: str
    spec: EncodingSpec
    status: JobStatus = JobStatus.QUEUED
    enqueued_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: JobProgress | None = None
    failure_detail: str | None = None
    retry_of: str | None = None

    def mark_started(self, now: datetime | None = None) -> None:
        self._transition(JobStatus.ACTIVE)
        self.started_at = now or utc_now()
        self.progress = JobProgress()

    def mark_completed(self, now: datetime | None = None) -> None:
        self._finish(JobStatus.COMPLETED, now)

    def mark_failed(self, detail: str, now: datetime | None = None) -> None:
        self._finish(JobStatus.FAILED, now)
        self.failure_detail = detail

    def mark_cancelled(self, now: datetime | None = None) -> None:
        self._finish(JobStatus.CANCELLED, now)

    def apply_progress(self, progress: JobProgress) -> bool:
        """Store a progress tick; ticks that would move frames backwards are ignored."""

        if self.status is not JobStatus.ACTIVE:
            return False
        if self.progress is not None and progress.frames_processed < self.progress.frames_processed:
            return False
        self.progress = replace(progress)
        return True

    def copy(self) -> Job:
        return replace(self, progress=replace(self.progress) if self.progress else None)

    def _finish(self, status: JobStatus, now: datetime | None) -> None:
        self._transition(status)
        self.finished_at = now or utc_now()
        self.progress = None

    def _transition(self, status: JobStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.job_id, self.status, status)
        self.status = status
