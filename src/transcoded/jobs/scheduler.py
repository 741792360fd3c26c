"""Single-owner scheduler: the only code that mutates the state store."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from functools import partial
from typing import Any, Protocol

from transcoded.ipc.bus import EventBus, Subscriber
from transcoded.jobs.events import DaemonEvent, EventKind
from transcoded.jobs.models import (
    RETRYABLE_STATUSES,
    EncodingSpec,
    Job,
    JobProgress,
    JobStatus,
    new_job_id,
)
from transcoded.jobs.store import JobLocation, StateStore, StoreSnapshot
from transcoded.pipeline.executor import PipelineOutcome

logger = logging.getLogger(__name__)

_CLOSE_JOIN_SECONDS = 10.0


class SchedulerError(RuntimeError):
    """Request rejected by the scheduler; ``kind`` is sent to the client."""

    kind = "scheduler_error"


class JobNotFoundError(SchedulerError):
    kind = "not_found"


class JobAlreadyTerminalError(SchedulerError):
    kind = "already_terminal"


class JobNotRetryableError(SchedulerError):
    kind = "not_retryable"


class SchedulerClosedError(SchedulerError):
    kind = "shutting_down"


class JobExecution(Protocol):
    """Handle on one running pipeline."""

    def start(self) -> None: ...

    def cancel(self) -> None: ...

    def force_kill(self) -> None: ...


ExecutorFactory = Callable[
    [Job, Callable[[JobProgress], None], Callable[[PipelineOutcome], None]],
    JobExecution,
]


@dataclass(slots=True)
class _Command:
    action: Callable[[], Any]
    future: Future[Any] | None = None


class QueueScheduler:
    """Actor owning the queue, active set and history.

    Every public method posts a command to the scheduler thread and returns a
    ``Future``. Commands run one at a time in arrival order, and every event is
    published from that thread, so responses and events are never reordered.
    Free slots are filled after a job is enqueued and after an active job finishes.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        bus: EventBus,
        executor_factory: ExecutorFactory,
        max_concurrent_jobs: int,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self._store = store
        self._bus = bus
        self._executor_factory = executor_factory
        self._max_concurrent_jobs = max_concurrent_jobs
        self._inbox: queue.Queue[_Command | None] = queue.Queue()
        self._executions: dict[str, JobExecution] = {}
        self._cancel_requested: set[str] = set()
        self._admission_open = True
        self._closed = False
        self._idle = threading.Event()
        self._idle.set()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, daemon=True, name="scheduler")
        self._thread.start()
        self._submit(self._fill_slots)

    def close(self) -> None:
        """Stop the scheduler thread; pending commands fail with ``shutting_down``."""

        if self._closed:
            return
        self._closed = True
        self._inbox.put(None)
        if self._thread is not None:
            self._thread.join(timeout=_CLOSE_JOIN_SECONDS)
            self._thread = None

    # -- requests ---------------------------------------------------------------

    def enqueue(self, source: str, destination: str, spec: EncodingSpec) -> Future[Job]:
        return self._submit(partial(self._do_enqueue, source, destination, spec))

    def cancel(self, job_id: str) -> Future[None]:
        return self._submit(partial(self._do_cancel, job_id))

    def retry(self, job_id: str) -> Future[Job]:
        return self._submit(partial(self._do_retry, job_id))

    def get_job(self, job_id: str) -> Future[Job]:
        return self._submit(partial(self._do_get_job, job_id))

    def list_queue(self) -> Future[list[Job]]:
        return self._submit(self._store.list_queue)

    def list_active(self) -> Future[list[Job]]:
        return self._submit(self._store.list_active)

    def list_history(self) -> Future[list[Job]]:
        return self._submit(self._store.list_history)

    def delete_history_entry(self, job_id: str) -> Future[None]:
        return self._submit(partial(self._do_delete_history, job_id))

    def clear_history(self) -> Future[int]:
        return self._submit(self._do_clear_history)

    def snapshot(self) -> Future[StoreSnapshot]:
        return self._submit(self._store.snapshot)

    def subscribe(self, name: str = "") -> Future[Subscriber]:
        """Attach a subscriber whose first item is a snapshot taken atomically with attach."""

        return self._submit(partial(self._do_subscribe, name))

    # -- executor callbacks (any thread) ------------------------------------------

    def post_progress(self, job_id: str, progress: JobProgress) -> None:
        self._post(partial(self._do_progress, job_id, progress))

    def post_finished(self, job_id: str, outcome: PipelineOutcome) -> None:
        self._post(partial(self._do_finished, job_id, outcome))

    # -- shutdown -----------------------------------------------------------------

    def stop_admission(self) -> Future[None]:
        return self._submit(self._do_stop_admission)

    def shutdown(self, *, policy: str, grace_seconds: float, kill_wait_seconds: float = 10.0) -> bool:
        """Stop admission, then cancel or drain active jobs within ``grace_seconds``.

        Stragglers are force-killed. Returns ``True`` when every active job reported
        its outcome. The scheduler thread keeps running so a final snapshot can be
        taken; call ``close`` afterwards.
        """

        self.stop_admission().result()
        if policy == "cancel":
            self._submit(self._do_cancel_all).result()
        logger.info("Waiting up to %.1fs for active jobs", grace_seconds)
        if self._idle.wait(timeout=grace_seconds):
            return True
        logger.warning("Active jobs still running after %.1fs, force-killing", grace_seconds)
        self._submit(self._do_force_kill_all).result()
        return self._idle.wait(timeout=kill_wait_seconds)

    # -- actor internals ------------------------------------------------------------

    def _submit(self, action: Callable[[], Any]) -> Future[Any]:
        future: Future[Any] = Future()
        if self._closed:
            future.set_exception(SchedulerClosedError("scheduler is closed"))
            return future
        self._inbox.put(_Command(action, future))
        return future

    def _post(self, action: Callable[[], Any]) -> None:
        if self._closed:
            logger.debug("Scheduler closed, dropping executor message")
            return
        self._inbox.put(_Command(action))

    def _loop(self) -> None:
        while True:
            command = self._inbox.get()
            if command is None:
                break
            self._execute(command)
        self._drain_after_stop()

    def _execute(self, command: _Command) -> None:
        future = command.future
        if future is not None and not future.set_running_or_notify_cancel():
            return
        try:
            result = command.action()
        except SchedulerError as error:
            if future is None:
                logger.warning("Scheduler message rejected: %s", error)
            else:
                future.set_exception(error)
        except Exception as error:
            logger.exception("Scheduler command failed")
            if future is not None:
                future.set_exception(error)
        else:
            if future is not None:
                future.set_result(result)

    def _drain_after_stop(self) -> None:
        while True:
            try:
                item = self._inbox.get_nowait()
            except queue.Empty:
                return
            if item is not None and item.future is not None:
                item.future.set_exception(SchedulerClosedError("scheduler is closed"))

    def _do_enqueue(self, source: str, destination: str, spec: EncodingSpec) -> Job:
        self._require_admission()
        job = Job(job_id=self._fresh_id(), source=source, destination=destination, spec=spec)
        return self._add(job)

    def _do_retry(self, job_id: str) -> Job:
        self._require_admission()
        found = self._store.find(job_id)
        if found is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        location, original = found
        if location is not JobLocation.HISTORY or original.status not in RETRYABLE_STATUSES:
            raise JobNotRetryableError(
                f"Job {job_id} is {original.status.value}; only failed or cancelled jobs can be retried",
            )
        job = Job(
            job_id=self._fresh_id(),
            source=original.source,
            destination=original.destination,
            spec=original.spec,
            retry_of=original.job_id,
        )
        return self._add(job)

    def _do_cancel(self, job_id: str) -> None:
        found = self._store.find(job_id)
        if found is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        location, job = found
        if location is JobLocation.HISTORY:
            raise JobAlreadyTerminalError(f"Job {job_id} is already {job.status.value}")
        if location is JobLocation.QUEUE:
            self._store.remove_queued(job_id)
            job.mark_cancelled()
            self._store.append_history(job)
            logger.info("Job %s cancelled while queued", job_id)
            self._publish(DaemonEvent.for_job(EventKind.JOB_CANCELLED, job))
            return
        if job_id in self._cancel_requested:
            return
        self._cancel_requested.add(job_id)
        logger.info("Cancelling active job %s", job_id)
        self._executions[job_id].cancel()

    def _do_get_job(self, job_id: str) -> Job:
        found = self._store.find(job_id)
        if found is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return found[1].copy()

    def _do_delete_history(self, job_id: str) -> None:
        if self._store.delete_history(job_id) is None:
            raise JobNotFoundError(f"No history entry for job {job_id}")

    def _do_clear_history(self) -> int:
        removed = self._store.clear_history()
        logger.info("History cleared, %d entries removed", removed)
        return removed

    def _do_subscribe(self, name: str) -> Subscriber:
        first = DaemonEvent(kind=EventKind.SNAPSHOT, snapshot=self._store.snapshot())
        return self._bus.attach(first, name=name)

    def _do_progress(self, job_id: str, progress: JobProgress) -> None:
        job = self._store.get_active(job_id)
        if job is None or not job.apply_progress(progress):
            return
        self._publish(DaemonEvent.for_progress(job_id, progress))

    def _do_finished(self, job_id: str, outcome: PipelineOutcome) -> None:
        self._executions.pop(job_id, None)
        self._cancel_requested.discard(job_id)
        job = self._store.release_active(job_id)
        if job is None:
            logger.warning("Outcome for unknown active job %s ignored", job_id)
        else:
            if outcome.status is JobStatus.COMPLETED:
                job.mark_completed()
                kind = EventKind.JOB_COMPLETED
            elif outcome.status is JobStatus.CANCELLED:
                job.mark_cancelled()
                kind = EventKind.JOB_CANCELLED
            else:
                job.mark_failed(outcome.failure_detail or "pipeline failed")
                kind = EventKind.JOB_FAILED
            self._store.append_history(job)
            logger.info("Job %s finished: %s", job_id, job.status.value)
            self._publish(DaemonEvent.for_job(kind, job))
        if not self._executions:
            self._idle.set()
        self._fill_slots()

    def _do_stop_admission(self) -> None:
        if self._admission_open:
            logger.info("Admission stopped, %d jobs stay queued", self._store.queued_count)
        self._admission_open = False

    def _do_cancel_all(self) -> None:
        for job_id, execution in self._executions.items():
            if job_id not in self._cancel_requested:
                self._cancel_requested.add(job_id)
                execution.cancel()

    def _do_force_kill_all(self) -> None:
        for execution in self._executions.values():
            execution.force_kill()

    def _require_admission(self) -> None:
        if not self._admission_open:
            raise SchedulerClosedError("daemon is shutting down")

    def _fresh_id(self) -> str:
        job_id = new_job_id()
        while self._store.is_known_id(job_id):
            job_id = new_job_id()
        return job_id

    def _add(self, job: Job) -> Job:
        """Queue ``job`` and return the record as it was added, before any slot fills."""

        self._store.enqueue(job)
        logger.info("Job %s enqueued: %s -> %s", job.job_id, job.source, job.destination)
        added = job.copy()
        self._publish(DaemonEvent.for_job(EventKind.JOB_ADDED, job))
        self._fill_slots()
        return added

    def _fill_slots(self) -> None:
        while (
            self._admission_open
            and self._store.active_count < self._max_concurrent_jobs
            and self._store.queued_count > 0
        ):
            job = self._store.pop_next()
            if job is None:
                return
            job.mark_started()
            self._store.activate(job)
            self._publish(DaemonEvent.for_job(EventKind.JOB_STARTED, job))
            try:
                execution = self._executor_factory(
                    job.copy(),
                    partial(self.post_progress, job.job_id),
                    partial(self.post_finished, job.job_id),
                )
                self._executions[job.job_id] = execution
                self._idle.clear()
                execution.start()
            except Exception as error:
                logger.exception("Cannot start executor for job %s", job.job_id)
                self._executions.pop(job.job_id, None)
                if not self._executions:
                    self._idle.set()
                self._store.release_active(job.job_id)
                job.mark_failed(f"cannot start pipeline: {error}")
                self._store.append_history(job)
                self._publish(DaemonEvent.for_job(EventKind.JOB_FAILED, job))
            else:
                logger.info("Job %s started", job.job_id)

    def _publish(self, event: DaemonEvent) -> None:
        self._bus.publish(event)
