"""Controllers for transcoded CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from transcoded.config import Settings
from transcoded.daemon import Daemon
from transcoded.ipc.client import IpcClient
from transcoded.jobs.events import DaemonEvent, EventKind
from transcoded.jobs.models import Job, JobProgress, JobStatus


class DaemonUnavailableError(RuntimeError):
    """No daemon answers on the configured socket."""


@dataclass(slots=True)
class DaemonCommand:
    """CLI inputs for running the daemon in the foreground."""

    data_dir: Path | None
    max_concurrent_jobs: int | None
    log_level: str | None


@dataclass(slots=True)
class AddJobCommand:
    """CLI inputs for enqueueing a job; ``None`` fields use the daemon defaults."""

    data_dir: Path | None
    source: Path
    destination: Path
    encoder: str | None = None
    crf: int | None = None
    preset: int | None = None
    threads: int | None = None
    audio_mode: str | None = None
    audio_bitrate: int | None = None
    audio_codec: str | None = None


@dataclass(slots=True)
class JobIdCommand:
    """CLI inputs for commands addressing one job."""

    data_dir: Path | None
    job_id: str


@dataclass(slots=True)
class ListJobsCommand:
    """CLI inputs for queue / active / history listings."""

    data_dir: Path | None
    section: str


@dataclass(slots=True)
class WatchCommand:
    """CLI inputs for the event stream."""

    data_dir: Path | None
    max_events: int | None = None


class TranscodeCliController:
    """Coordinates CLI command execution against the daemon socket."""

    def run_daemon(self, command: DaemonCommand) -> list[str]:
        settings = Settings.from_env(data_dir=command.data_dir)
        if command.max_concurrent_jobs is not None:
            settings.daemon.max_concurrent_jobs = command.max_concurrent_jobs
        if command.log_level is not None:
            settings.daemon.log_level = command.log_level.upper()
        settings.validate()
        logging.basicConfig(
            level=settings.daemon.log_level,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        daemon = Daemon(settings)
        daemon.start()
        daemon.serve_forever()
        return ["Daemon stopped."]

    def add(self, command: AddJobCommand) -> list[str]:
        with _client(command.data_dir) as client:
            job = client.add_job(
                str(command.source.expanduser().resolve()),
                str(command.destination.expanduser().resolve()),
                _partial_spec(command),
            )
        return [f"Job added: {job.job_id}", format_job(job)]

    def cancel(self, command: JobIdCommand) -> list[str]:
        with _client(command.data_dir) as client:
            client.cancel_job(command.job_id)
        return [f"Cancel requested: {command.job_id}"]

    def retry(self, command: JobIdCommand) -> list[str]:
        with _client(command.data_dir) as client:
            job = client.retry_job(command.job_id)
        return [f"Job {command.job_id} re-enqueued as {job.job_id}"]

    def show(self, command: JobIdCommand) -> list[str]:
        with _client(command.data_dir) as client:
            job = client.get_job(command.job_id)
        return format_job_details(job)

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        with _client(command.data_dir) as client:
            listing: dict[str, Callable[[], list[Job]]] = {
                "queue": client.list_queue,
                "active": client.list_active,
                "history": client.list_history,
            }
            jobs = listing[command.section]()
        if not jobs:
            return [f"No jobs in {command.section}."]
        return [f"{command.section}: {len(jobs)} job(s)", *(format_job(job) for job in jobs)]

    def delete_history_entry(self, command: JobIdCommand) -> list[str]:
        with _client(command.data_dir) as client:
            client.delete_history_entry(command.job_id)
        return [f"History entry deleted: {command.job_id}"]

    def clear_history(self, data_dir: Path | None) -> list[str]:
        with _client(data_dir) as client:
            message = client.clear_history()
        return [message or "History cleared."]

    def shutdown(self, data_dir: Path | None) -> list[str]:
        with _client(data_dir) as client:
            client.shutdown()
        return ["Daemon shutdown requested."]

    def watch(self, command: WatchCommand, emit: Callable[[str], None]) -> None:
        """Stream events as lines until the daemon stops or ``max_events`` is reached."""

        seen = 0
        with _client(command.data_dir) as client:
            for event in client.events():
                for line in format_event(event):
                    emit(line)
                seen += 1
                if event.kind is EventKind.DAEMON_SHUTDOWN:
                    return
                if command.max_events is not None and seen >= command.max_events:
                    return


@contextmanager
def _client(data_dir: Path | None) -> Iterator[IpcClient]:
    settings = Settings.from_env(data_dir=data_dir)
    client = IpcClient(settings.socket_path)
    try:
        client.connect()
    except OSError as error:
        raise DaemonUnavailableError(
            f"Daemon is not running at {settings.socket_path}: {error}",
        ) from error
    try:
        yield client
    finally:
        client.close()


def _partial_spec(command: AddJobCommand) -> dict[str, Any]:
    spec: dict[str, Any] = {}
    if command.encoder is not None:
        spec["encoder"] = command.encoder
    params = {
        key: value
        for key, value in (
            ("crf", command.crf),
            ("preset", command.preset),
            ("threads", command.threads),
        )
        if value is not None
    }
    if params:
        spec["encoder_params"] = params
    audio = {
        key: value
        for key, value in (
            ("mode", command.audio_mode),
            ("bitrate_kbps", command.audio_bitrate),
            ("codec", command.audio_codec),
        )
        if value is not None
    }
    if audio:
        spec["audio"] = audio
    return spec


def format_job(job: Job) -> str:
    line = f"{job.job_id}  {job.status.value:<9}  {job.source} -> {job.destination}"
    if job.progress is not None:
        line = f"{line}  {format_progress(job.progress)}"
    if job.status is JobStatus.FAILED and job.failure_detail:
        line = f"{line}  [{job.failure_detail.splitlines()[0]}]"
    if job.retry_of:
        line = f"{line}  (retry of {job.retry_of})"
    return line


def format_job_details(job: Job) -> list[str]:
    spec = job.spec
    lines = [
        f"id:          {job.job_id}",
        f"status:      {job.status.value}",
        f"source:      {job.source}",
        f"destination: {job.destination}",
        f"encoder:     {spec.encoder.value} crf={spec.encoder_params.crf} "
        f"preset={spec.encoder_params.preset}",
        f"audio:       {spec.audio.mode.value} {spec.audio.bitrate_kbps}k",
        f"enqueued:    {job.enqueued_at.isoformat()}",
    ]
    if job.started_at is not None:
        lines.append(f"started:     {job.started_at.isoformat()}")
    if job.finished_at is not None:
        lines.append(f"finished:    {job.finished_at.isoformat()}")
    if job.progress is not None:
        lines.append(f"progress:    {format_progress(job.progress)}")
    if job.retry_of:
        lines.append(f"retry of:    {job.retry_of}")
    if job.failure_detail:
        lines.append("failure:")
        lines.extend(f"  {line}" for line in job.failure_detail.splitlines())
    return lines


def format_progress(progress: JobProgress) -> str:
    total = progress.total_frames if progress.total_frames is not None else "?"
    eta = _format_duration(progress.eta_seconds) if progress.eta_seconds is not None else "--"
    return (
        f"{progress.percent:5.1f}% frame {progress.frames_processed}/{total} "
        f"{progress.fps:.1f} fps {progress.bitrate_kbps:.0f} kbps eta {eta}"
    )


def format_event(event: DaemonEvent) -> list[str]:
    if event.kind is EventKind.SNAPSHOT and event.snapshot is not None:
        snapshot = event.snapshot
        lines = [
            f"snapshot: {len(snapshot.queue)} queued, {len(snapshot.active)} active, "
            f"{len(snapshot.history)} in history",
        ]
        lines.extend(f"  {format_job(job)}" for job in snapshot.active.values())
        return lines
    if event.kind is EventKind.JOB_PROGRESS and event.progress is not None:
        return [f"progress {event.job_id}: {format_progress(event.progress)}"]
    if event.kind is EventKind.DAEMON_SHUTDOWN:
        return ["daemon shutting down"]
    if event.job is not None:
        line = f"{event.kind.value} {format_job(event.job)}"
        return [line]
    return [event.kind.value]


def _format_duration(seconds: float) -> str:
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:d}:{minutes:02d}:{secs:02d}"
