"""Durable snapshots of the state store."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from transcoded.errors import PersistenceError
from transcoded.jobs.contracts import job_from_dict, job_to_dict
from transcoded.jobs.models import Job, JobStatus, utc_now
from transcoded.jobs.store import StoreSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_SCHEMA_VERSION = 1
INTERRUPTED_DETAIL = "interrupted by daemon restart"


class StatePersistence:
    """Reads and atomically writes the snapshot document."""

    def __init__(self, state_file: Path) -> None:
        self.state_file = state_file

    def save(self, snapshot: StoreSnapshot) -> None:
        document = snapshot_to_document(snapshot)
        temp_file = self.state_file.with_name(f"{self.state_file.name}.tmp")
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True)
            with temp_file.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_file, self.state_file)
        except (OSError, TypeError, ValueError) as error:
            raise PersistenceError(f"Cannot write snapshot {self.state_file}: {error}") from error

    def load(self) -> StoreSnapshot:
        """Load the snapshot; a missing file yields an empty store."""

        if not self.state_file.exists():
            logger.info("No snapshot at %s, starting with an empty store", self.state_file)
            return StoreSnapshot()
        try:
            raw = json.loads(self.state_file.read_text("utf-8"))
        except (OSError, ValueError) as error:
            raise PersistenceError(f"Cannot read snapshot {self.state_file}: {error}") from error
        try:
            snapshot = snapshot_from_document(raw)
        except (TypeError, ValueError) as error:
            raise PersistenceError(f"Invalid snapshot {self.state_file}: {error}") from error
        logger.info(
            "Snapshot loaded: %d queued, %d active, %d in history",
            len(snapshot.queue),
            len(snapshot.active),
            len(snapshot.history),
        )
        return snapshot

    def quarantine(self, now: datetime | None = None) -> Path | None:
        """Move an unusable snapshot aside so the next save does not overwrite it."""

        if not self.state_file.exists():
            return None
        stamp = (now or utc_now()).strftime("%Y%m%dT%H%M%S")
        target = self.state_file.with_name(f"{self.state_file.name}.rejected-{stamp}")
        try:
            os.replace(self.state_file, target)
        except OSError as error:
            raise PersistenceError(f"Cannot move snapshot aside: {error}") from error
        return target


def snapshot_to_document(snapshot: StoreSnapshot) -> dict[str, Any]:
    return {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "saved_at": utc_now().isoformat(),
        "queue": [job_to_dict(job) for job in snapshot.queue],
        "active": {job_id: job_to_dict(job) for job_id, job in snapshot.active.items()},
        "history": [job_to_dict(job) for job in snapshot.history],
    }


def snapshot_from_document(raw: Any) -> StoreSnapshot:
    """Validate a snapshot document, migrating older schema versions."""

    if not isinstance(raw, dict):
        raise TypeError("snapshot must be a JSON object")
    version = raw.get("schema_version", 0)
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        raise ValueError(f"snapshot.schema_version must be a non-negative integer: {version!r}")
    if version > SNAPSHOT_SCHEMA_VERSION:
        raise ValueError(
            f"snapshot schema version {version} is newer than supported "
            f"{SNAPSHOT_SCHEMA_VERSION}",
        )
    while version < SNAPSHOT_SCHEMA_VERSION:
        raw = _MIGRATIONS[version](raw)
        version = raw["schema_version"]

    queue_raw = raw.get("queue", [])
    active_raw = raw.get("active", {})
    history_raw = raw.get("history", [])
    if not isinstance(queue_raw, list):
        raise TypeError("snapshot.queue must be an array")
    if not isinstance(active_raw, dict):
        raise TypeError("snapshot.active must be an object")
    if not isinstance(history_raw, list):
        raise TypeError("snapshot.history must be an array")

    queue = [_expect_status(job_from_dict(item), "queue") for item in queue_raw]
    active: dict[str, Job] = {}
    for job_id, item in active_raw.items():
        job = _expect_status(job_from_dict(item), "active")
        if job.job_id != job_id:
            raise ValueError(f"snapshot.active key {job_id} does not match job id {job.job_id}")
        active[job_id] = job
    history = [_expect_status(job_from_dict(item), "history") for item in history_raw]

    snapshot = StoreSnapshot(queue=queue, active=active, history=history)
    total = len(queue) + len(active) + len(history)
    if len(snapshot.job_ids()) != total:
        raise ValueError("snapshot contains duplicate job ids")
    return snapshot


def reconcile_after_restart(snapshot: StoreSnapshot, now: datetime | None = None) -> StoreSnapshot:
    """Demote jobs recorded as active to failed; their processes did not survive."""

    finished_at = now or utc_now()
    history = [job.copy() for job in snapshot.history]
    interrupted = sorted(
        (job.copy() for job in snapshot.active.values()),
        key=lambda job: job.started_at or job.enqueued_at,
    )
    for job in interrupted:
        job.mark_failed(INTERRUPTED_DETAIL, now=finished_at)
        history.append(job)
        logger.warning("Job %s was active at shutdown, marked failed", job.job_id)
    return StoreSnapshot(
        queue=[job.copy() for job in snapshot.queue],
        active={},
        history=history,
    )


class SnapshotWriter:
    """Writes a snapshot on a fixed interval and once more on stop."""

    def __init__(
        self,
        *,
        persistence: StatePersistence,
        snapshot_source: Callable[[], StoreSnapshot],
        interval_seconds: float,
    ) -> None:
        self._persistence = persistence
        self._snapshot_source = snapshot_source
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="snapshot-writer")
        self._thread.start()

    def flush(self) -> bool:
        """Write one snapshot now; failures are logged, never raised."""

        try:
            self._persistence.save(self._snapshot_source())
        except PersistenceError as error:
            logger.error("Snapshot write failed: %s", error)
            return False
        except Exception:
            logger.exception("Snapshot source failed")
            return False
        return True

    def stop(self, *, final_flush: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(5.0, self._interval))
            self._thread = None
        if final_flush:
            self.flush()

    def _loop(self) -> None:
        while not self._stop.wait(timeout=self._interval):
            self.flush()


def _migrate_v0(raw: dict[str, Any]) -> dict[str, Any]:
    active = raw.get("active", [])
    if isinstance(active, list):
        for index, item in enumerate(active):
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                raise ValueError(f"snapshot.active[{index}] has no job id")
        active = {item["id"]: item for item in active}
    return {
        "schema_version": 1,
        "queue": raw.get("queue", []),
        "active": active,
        "history": raw.get("history", []),
    }


_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {0: _migrate_v0}

_SECTION_STATUSES = {
    "queue": frozenset({JobStatus.QUEUED}),
    "active": frozenset({JobStatus.ACTIVE}),
    "history": frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
}


def _expect_status(job: Job, section: str) -> Job:
    if job.status not in _SECTION_STATUSES[section]:
        raise ValueError(
            f"snapshot.{section} holds job {job.job_id} with status {job.status.value}",
        )
    return job
