"""Supervision of one job's stage processes."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import IO

from transcoded.errors import PipelineIOError, SpawnError, StageFailure
from transcoded.jobs.models import Job, JobProgress, JobStatus
from transcoded.pipeline.probe import MediaInfo, ProbeInterrupted, probe_media
from transcoded.pipeline.progress import ProgressMonitor, iter_lines
from transcoded.pipeline.stages import PipelinePlan, Stage, StreamMode, build_pipeline_plan
from transcoded.pipeline.toolchain import Toolchain

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
_READER_JOIN_SECONDS = 2.0


class ExecutorState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class PipelineOutcome:
    """Terminal result reported to the scheduler."""

    status: JobStatus
    failure_detail: str | None = None


class _PipelineCancelled(Exception):
    pass


@dataclass(slots=True)
class _RunningStage:
    stage: Stage
    process: subprocess.Popen[bytes]
    reader: threading.Thread
    tail: deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    returncode: int | None = None

    def diagnostic(self) -> str:
        self.reader.join(timeout=_READER_JOIN_SECONDS)
        return "\n".join(self.tail)


class PipelineExecutor:
    """Runs the stage graph of one job and reports a single outcome.

    ``run`` blocks until the job is terminal; ``start`` runs it on its own thread and
    hands the outcome to ``on_finished``. Stage failures never escape: they become a
    ``Failed`` outcome carrying the failing stage's stderr tail.
    """

    def __init__(  # noqa: PLR0913
        self,
        job: Job,
        *,
        toolchain: Toolchain,
        workdir_root: Path,
        on_progress: Callable[[JobProgress], None],
        on_finished: Callable[[PipelineOutcome], None] | None = None,
        terminate_grace_seconds: float = 5.0,
        progress_interval_seconds: float = 0.5,
        precise_frame_count: bool = False,
        probe_timeout_seconds: float = 180.0,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self._job = job.copy()
        self._toolchain = toolchain
        self._workdir = workdir_root / job.job_id
        self._on_progress = on_progress
        self._on_finished = on_finished
        self._terminate_grace = terminate_grace_seconds
        self._progress_interval = progress_interval_seconds
        self._precise_frame_count = precise_frame_count
        self._probe_timeout = probe_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._cancel = threading.Event()
        self._force = threading.Event()
        self._lock = threading.Lock()
        self._live: list[_RunningStage] = []
        self._state = ExecutorState.STARTING
        self._source_fps: float | None = None
        self._thread: threading.Thread | None = None

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def state(self) -> ExecutorState:
        return self._state

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run_and_report,
            name=f"job-{self._job.job_id[:8]}",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    def cancel(self) -> None:
        """Ask the pipeline to stop: SIGTERM now, SIGKILL after the grace period."""

        self._cancel.set()

    def force_kill(self) -> None:
        """SIGKILL every live stage without waiting for it to exit."""

        self._force.set()
        self._cancel.set()
        with self._lock:
            live = list(self._live)
        for running in reversed(live):
            _send_kill(running.process)

    def run(self) -> PipelineOutcome:
        destination = Path(self._job.destination)
        plan: PipelinePlan | None = None
        try:
            media = self._probe()
            plan = build_pipeline_plan(self._job, self._toolchain, media, self._workdir)
            self._workdir.mkdir(parents=True, exist_ok=True)
            destination.parent.mkdir(parents=True, exist_ok=True)
            self._state = ExecutorState.RUNNING
            total_frames = media.total_frames_estimate
            self._source_fps = media.fps
            for index, group in enumerate(plan.groups):
                if self._cancel.is_set():
                    raise _PipelineCancelled
                if index == len(plan.groups) - 1:
                    self._state = ExecutorState.FINALIZING
                self._run_group(plan, group, total_frames)
            if not destination.exists():
                raise PipelineIOError(f"{destination} was not written")
        except _PipelineCancelled:
            self._remove_artifacts(plan)
            self._state = ExecutorState.CANCELLED
            logger.info("Job %s cancelled", self._job.job_id)
            return PipelineOutcome(JobStatus.CANCELLED)
        except (SpawnError, StageFailure, PipelineIOError) as error:
            return self._fail(plan, str(error))
        except OSError as error:
            return self._fail(plan, f"I/O error: {error}")
        finally:
            shutil.rmtree(self._workdir, ignore_errors=True)

        self._state = ExecutorState.COMPLETED
        logger.info("Job %s completed: %s", self._job.job_id, destination)
        return PipelineOutcome(JobStatus.COMPLETED)

    def _run_and_report(self) -> None:
        try:
            outcome = self.run()
        except Exception as error:
            logger.exception("Executor for job %s crashed", self._job.job_id)
            self._state = ExecutorState.FAILED
            outcome = PipelineOutcome(JobStatus.FAILED, f"internal error: {error}")
        if self._on_finished is not None:
            self._on_finished(outcome)

    def _probe(self) -> MediaInfo:
        try:
            return probe_media(
                self._toolchain.ffprobe,
                self._job.source,
                precise_frame_count=self._precise_frame_count,
                timeout_seconds=self._probe_timeout,
                stop_requested=self._cancel.is_set,
            )
        except ProbeInterrupted as error:
            raise _PipelineCancelled from error

    def _run_group(self, plan: PipelinePlan, group: list[Stage], total_frames: int | None) -> None:
        running: list[_RunningStage] = []
        try:
            self._spawn_group(plan, group, total_frames, running)
            self._supervise(running)
        finally:
            self._stop_all(running)
            with self._lock:
                self._live = []

    def _spawn_group(
        self,
        plan: PipelinePlan,
        group: list[Stage],
        total_frames: int | None,
        running: list[_RunningStage],
    ) -> None:
        names = {stage.name for stage in group}
        read_ends: dict[str, int] = {}
        write_ends: dict[str, int] = {}
        try:
            for producer, consumer in plan.pipes:
                if producer in names and consumer in names:
                    read_fd, write_fd = os.pipe()
                    read_ends[consumer] = read_fd
                    write_ends[producer] = write_fd

            for stage in group:
                stdin = read_ends.pop(stage.name, subprocess.DEVNULL)
                if stage.stdin is StreamMode.PIPE and stdin == subprocess.DEVNULL:
                    raise PipelineIOError(f"{stage.name} expects a pipe but has no producer")
                stdout = write_ends.pop(stage.name, subprocess.DEVNULL)
                try:
                    running_stage = self._spawn(stage, stdin, stdout, plan, total_frames)
                finally:
                    # the child holds its own copies; parent copies would keep the pipe open
                    for fd in (stdin, stdout):
                        if isinstance(fd, int) and fd >= 0:
                            os.close(fd)
                running.append(running_stage)
                with self._lock:
                    self._live = list(running)
        finally:
            for fd in (*read_ends.values(), *write_ends.values()):
                os.close(fd)

    def _spawn(
        self,
        stage: Stage,
        stdin: int,
        stdout: int,
        plan: PipelinePlan,
        total_frames: int | None,
    ) -> _RunningStage:
        argv = stage.build_invocation()
        logger.debug("Job %s: starting %s: %s", self._job.job_id, stage.name, argv)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdin=stdin,
                stdout=stdout,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            raise SpawnError(stage.name, str(error)) from error

        tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        consume: Callable[[IO[bytes]], None]
        if stage.name == plan.primary:
            monitor = ProgressMonitor(
                parse_line=stage.parse_progress_line,
                total_frames=total_frames,
                emit=self._on_progress,
                min_interval_seconds=self._progress_interval,
                on_line=tail.append,
                source_fps=self._source_fps,
            )
            consume = monitor.consume
        else:
            consume = partial(_drain_into, tail)
        reader = threading.Thread(
            target=_consume,
            args=(process.stderr, consume),
            name=f"job-{self._job.job_id[:8]}-{stage.name}-stderr",
            daemon=True,
        )
        reader.start()
        return _RunningStage(stage=stage, process=process, reader=reader, tail=tail)

    def _supervise(self, running: list[_RunningStage]) -> None:
        while True:
            for item in running:
                if item.returncode is not None:
                    continue
                code = item.process.poll()
                if code is None:
                    continue
                item.returncode = code
                logger.debug(
                    "Job %s: %s exited with %s",
                    self._job.job_id,
                    item.stage.name,
                    code,
                )
                if not item.stage.interpret_exit_code(code):
                    if self._cancel.is_set():
                        raise _PipelineCancelled
                    raise StageFailure(item.stage.name, code, item.diagnostic())
            if all(item.returncode is not None for item in running):
                for item in running:
                    item.reader.join(timeout=_READER_JOIN_SECONDS)
                return
            if self._cancel.wait(self._poll_interval):
                raise _PipelineCancelled

    def _stop_all(self, running: list[_RunningStage]) -> None:
        """Stop live stages downstream first, SIGTERM then SIGKILL after the grace period."""

        live = [item for item in reversed(running) if item.process.poll() is None]
        if live:
            grace = 0.0 if self._force.is_set() else self._terminate_grace
            for item in live:
                logger.debug("Job %s: stopping %s", self._job.job_id, item.stage.name)
                _terminate(item.process)
            deadline = time.monotonic() + grace
            for item in live:
                remaining = max(deadline - time.monotonic(), 0.0)
                try:
                    item.process.wait(timeout=remaining)
                except subprocess.TimeoutExpired:
                    logger.warning(
                        "Job %s: %s ignored SIGTERM, killing",
                        self._job.job_id,
                        item.stage.name,
                    )
                    _kill(item.process)
        for item in running:
            item.reader.join(timeout=_READER_JOIN_SECONDS)

    def _fail(self, plan: PipelinePlan | None, detail: str) -> PipelineOutcome:
        self._remove_artifacts(plan)
        self._state = ExecutorState.FAILED
        logger.warning("Job %s failed: %s", self._job.job_id, detail)
        return PipelineOutcome(JobStatus.FAILED, detail)

    def _remove_artifacts(self, plan: PipelinePlan | None) -> None:
        """Delete intermediates, and the destination once the mux stage has touched it."""

        if plan is None:
            return
        paths = list(plan.intermediates)
        if self._state is ExecutorState.FINALIZING and plan.destination is not None:
            paths.append(plan.destination)
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as error:
                logger.warning("Cannot remove partial artifact %s: %s", path, error)


def _drain_into(tail: deque[str], stream: IO[bytes]) -> None:
    tail.extend(iter_lines(stream))


def _consume(stream: IO[bytes] | None, reader: Callable[[IO[bytes]], None]) -> None:
    if stream is None:
        return
    try:
        reader(stream)
    except (OSError, ValueError):
        logger.debug("stderr reader stopped", exc_info=True)
    finally:
        stream.close()


def _terminate(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return


def _send_kill(process: subprocess.Popen[bytes]) -> None:
    """Signal only; the executor thread reaps the process."""

    try:
        process.kill()
    except OSError:
        return


def _kill(process: subprocess.Popen[bytes]) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        logger.error("Process %s did not exit after SIGKILL", process.pid)
