"""Daemon wiring: state restore, scheduler, persistence, IPC and ordered shutdown."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from transcoded.config import Settings
from transcoded.errors import PersistenceError
from transcoded.ipc.bus import EventBus
from transcoded.ipc.server import IpcServer
from transcoded.jobs.events import DaemonEvent, EventKind
from transcoded.jobs.models import InvalidTransitionError, Job, JobProgress
from transcoded.jobs.persistence import SnapshotWriter, StatePersistence, reconcile_after_restart
from transcoded.jobs.scheduler import ExecutorFactory, JobExecution, QueueScheduler
from transcoded.jobs.store import StateStore, StoreSnapshot
from transcoded.pipeline.executor import PipelineExecutor, PipelineOutcome
from transcoded.pipeline.toolchain import Toolchain

logger = logging.getLogger(__name__)

_SNAPSHOT_TIMEOUT_SECONDS = 10.0


class Daemon:
    """Owns every long-lived component of one daemon process."""

    def __init__(self, settings: Settings, *, executor_factory: ExecutorFactory | None = None) -> None:
        settings.validate()
        self.settings = settings
        daemon_settings = settings.daemon
        self.toolchain = Toolchain.from_settings(settings.toolchain)
        self.persistence = StatePersistence(settings.state_file)
        self.store = StateStore()
        self.bus = EventBus(capacity=daemon_settings.event_buffer_size)
        self.scheduler = QueueScheduler(
            store=self.store,
            bus=self.bus,
            executor_factory=executor_factory or self._create_executor,
            max_concurrent_jobs=daemon_settings.max_concurrent_jobs,
        )
        self.snapshot_writer = SnapshotWriter(
            persistence=self.persistence,
            snapshot_source=self._current_snapshot,
            interval_seconds=daemon_settings.autosave_interval_seconds,
        )
        self.server = IpcServer(
            socket_path=settings.socket_path,
            scheduler=self.scheduler,
            bus=self.bus,
            spec_defaults=settings.encoding.to_spec(),
            on_shutdown_request=self.request_stop,
        )
        self._stop_requested = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    def start(self) -> None:
        self.server.ensure_available()
        missing = self.toolchain.missing()
        if missing:
            logger.warning("Toolchain executables not found: %s", ", ".join(missing))
        self._restore_state()
        self.scheduler.start()
        self.snapshot_writer.start()
        self.server.start()
        logger.info(
            "Daemon started: %d job slots, state in %s",
            self.settings.daemon.max_concurrent_jobs,
            self.settings.state_file,
        )

    def serve_forever(self, poll_seconds: float = 0.5) -> None:
        """Block until SIGINT, SIGTERM or a Shutdown request, then shut down."""

        with self._signal_handlers():
            while not self._stop_requested.wait(timeout=poll_seconds):
                pass
        self.shutdown()

    def request_stop(self) -> None:
        self._stop_requested.set()

    def shutdown(self) -> None:
        """Stop admission, settle active jobs, flush state, close the listener last."""

        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        daemon_settings = self.settings.daemon
        logger.info("Shutting down (policy: %s)", daemon_settings.shutdown_policy)
        settled = self.scheduler.shutdown(
            policy=daemon_settings.shutdown_policy,
            grace_seconds=daemon_settings.shutdown_grace_seconds,
            kill_wait_seconds=daemon_settings.stage_terminate_grace_seconds + 5.0,
        )
        if not settled:
            logger.error("Some jobs did not report an outcome; they will reload as interrupted")
        logger.info("Writing final snapshot")
        self.snapshot_writer.stop(final_flush=True)
        self.scheduler.close()
        self.bus.publish(DaemonEvent(kind=EventKind.DAEMON_SHUTDOWN))
        self.server.close()
        logger.info("Daemon stopped")

    def _restore_state(self) -> None:
        try:
            snapshot = reconcile_after_restart(self.persistence.load())
        except PersistenceError as error:
            logger.error("%s; starting with an empty store", error)
            self._set_snapshot_aside()
            snapshot = StoreSnapshot()
        except (TypeError, ValueError, InvalidTransitionError) as error:
            logger.error(
                "Snapshot %s cannot be reconciled: %s; starting with an empty store",
                self.persistence.state_file,
                error,
            )
            self._set_snapshot_aside()
            snapshot = StoreSnapshot()
        self.store.restore(snapshot)

    def _set_snapshot_aside(self) -> None:
        try:
            moved_to = self.persistence.quarantine()
        except PersistenceError as error:
            logger.error("%s", error)
            return
        if moved_to is not None:
            logger.warning("Unusable snapshot moved to %s", moved_to)

    def _current_snapshot(self) -> StoreSnapshot:
        return self.scheduler.snapshot().result(timeout=_SNAPSHOT_TIMEOUT_SECONDS)

    def _create_executor(
        self,
        job: Job,
        on_progress: Callable[[JobProgress], None],
        on_finished: Callable[[PipelineOutcome], None],
    ) -> JobExecution:
        daemon_settings = self.settings.daemon
        return PipelineExecutor(
            job,
            toolchain=self.toolchain,
            workdir_root=self.settings.data_dir / "work",
            on_progress=on_progress,
            on_finished=on_finished,
            terminate_grace_seconds=daemon_settings.stage_terminate_grace_seconds,
            progress_interval_seconds=daemon_settings.progress_interval_seconds,
            precise_frame_count=self.settings.toolchain.precise_frame_count,
            probe_timeout_seconds=self.settings.toolchain.probe_timeout_seconds,
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s", name)
            self.request_stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Signal handlers not installed outside the main thread")
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
