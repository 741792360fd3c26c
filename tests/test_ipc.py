from __future__ import annotations

import socket
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import allure
import pytest

from transcoded.config import Settings
from transcoded.daemon import Daemon
from transcoded.ipc.client import IpcClient, IpcRequestError
from transcoded.ipc.protocol import read_frame, write_frame
from transcoded.jobs.events import DaemonEvent, EventKind
from transcoded.jobs.models import JobStatus

pytestmark = [
    allure.epic("IPC"),
    allure.feature("Daemon Socket"),
]

_WAIT = 20.0


@pytest.fixture()
def daemon(daemon_settings: Settings) -> Iterator[Daemon]:
    instance = Daemon(daemon_settings)
    instance.start()
    yield instance
    instance.shutdown()


@pytest.fixture()
def client(daemon: Daemon) -> Iterator[IpcClient]:
    with IpcClient(daemon.settings.socket_path, timeout_seconds=_WAIT) as instance:
        yield instance


def _collect_until(
    client: IpcClient,
    predicate: Callable[[DaemonEvent], bool],
    timeout: float = _WAIT,
) -> list[DaemonEvent]:
    deadline = time.monotonic() + timeout
    seen: list[DaemonEvent] = []
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AssertionError(f"event not seen, got {[event.kind.value for event in seen]}")
        event = client.next_event(timeout=remaining)
        if event is None:
            raise AssertionError("connection closed before the event arrived")
        seen.append(event)
        if predicate(event):
            return seen


def _finished(job_id: str) -> Callable[[DaemonEvent], bool]:
    terminal = {EventKind.JOB_COMPLETED, EventKind.JOB_FAILED, EventKind.JOB_CANCELLED}
    return lambda event: event.kind in terminal and event.job_id == job_id


def _source(tmp_path: Path, name: str = "movie.mkv") -> str:
    path = tmp_path / name
    path.write_bytes(b"source")
    return str(path)


def test_connection_starts_with_snapshot_and_answers_ping(client: IpcClient) -> None:
    first = client.next_event(timeout=_WAIT)

    assert first is not None
    assert first.kind is EventKind.SNAPSHOT
    assert first.snapshot is not None
    client.ping()


def test_added_job_runs_to_completion_with_ordered_events(
    client: IpcClient,
    tmp_path: Path,
) -> None:
    destination = tmp_path / "out" / "movie.mkv"

    job = client.add_job(_source(tmp_path), str(destination), {"encoder_params": {"crf": 22}})

    assert job.status is JobStatus.QUEUED
    assert job.spec.encoder_params.crf == 22
    assert job.spec.encoder_params.preset == 6
    events = _collect_until(client, _finished(job.job_id))
    kinds = [event.kind for event in events if event.job_id == job.job_id]
    assert kinds[0] is EventKind.JOB_ADDED
    assert kinds[1] is EventKind.JOB_STARTED
    assert kinds[-1] is EventKind.JOB_COMPLETED
    assert EventKind.JOB_PROGRESS in kinds
    assert destination.read_bytes() == b"muxed"
    history = client.list_history()
    assert [(item.job_id, item.status) for item in history] == [(job.job_id, JobStatus.COMPLETED)]


def test_invalid_spec_is_rejected(client: IpcClient, tmp_path: Path) -> None:
    with pytest.raises(IpcRequestError) as raised:
        client.add_job(_source(tmp_path), str(tmp_path / "out.mkv"), {"encoder": "x265"})

    assert raised.value.kind == "invalid_request"
    assert client.list_queue() == []


def test_unknown_job_requests_report_not_found(client: IpcClient) -> None:
    for call in (client.cancel_job, client.get_job, client.retry_job, client.delete_history_entry):
        with pytest.raises(IpcRequestError) as raised:
            call("no-such-job")
        assert raised.value.kind == "not_found"


def test_cancel_active_job(client: IpcClient, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_FRAMES", "400")
    monkeypatch.setenv("FAKE_SLEEP", "0.05")
    job = client.add_job(_source(tmp_path), str(tmp_path / "out.mkv"))
    _collect_until(
        client,
        lambda event: event.kind is EventKind.JOB_PROGRESS and event.job_id == job.job_id,
    )

    client.cancel_job(job.job_id)
    events = _collect_until(client, _finished(job.job_id))

    assert events[-1].kind is EventKind.JOB_CANCELLED
    assert not (tmp_path / "out.mkv").exists()
    with pytest.raises(IpcRequestError) as raised:
        client.cancel_job(job.job_id)
    assert raised.value.kind == "already_terminal"


def test_failed_job_can_be_retried(client: IpcClient, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_FAIL_STAGE", "svt-av1")
    job = client.add_job(_source(tmp_path), str(tmp_path / "out.mkv"))
    failed = _collect_until(client, _finished(job.job_id))[-1]

    assert failed.kind is EventKind.JOB_FAILED
    assert failed.detail is not None
    assert "svt-av1 failed with exit code 1" in failed.detail

    monkeypatch.delenv("FAKE_FAIL_STAGE")
    retried = client.retry_job(job.job_id)
    done = _collect_until(client, _finished(retried.job_id))[-1]

    assert retried.retry_of == job.job_id
    assert done.kind is EventKind.JOB_COMPLETED
    assert client.get_job(job.job_id).status is JobStatus.FAILED


def test_history_delete_and_clear(client: IpcClient, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_FAIL_STAGE", "probe")
    first = client.add_job(_source(tmp_path, "a.mkv"), str(tmp_path / "a-out.mkv"))
    _collect_until(client, _finished(first.job_id))
    second = client.add_job(_source(tmp_path, "b.mkv"), str(tmp_path / "b-out.mkv"))
    _collect_until(client, _finished(second.job_id))

    client.delete_history_entry(first.job_id)
    assert [job.job_id for job in client.list_history()] == [second.job_id]
    assert client.clear_history() == "1 history entries removed"
    assert client.list_history() == []


def test_every_client_receives_events(daemon: Daemon, client: IpcClient, tmp_path: Path) -> None:
    with IpcClient(daemon.settings.socket_path, timeout_seconds=_WAIT) as watcher:
        assert watcher.next_event(timeout=_WAIT) is not None
        job = client.add_job(_source(tmp_path), str(tmp_path / "out.mkv"))

        events = _collect_until(watcher, _finished(job.job_id))

    assert events[0].kind is EventKind.JOB_ADDED
    assert events[-1].kind is EventKind.JOB_COMPLETED


def test_bad_envelope_gets_error_response_and_connection_survives(daemon: Daemon) -> None:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(_WAIT)
        sock.connect(str(daemon.settings.socket_path))
        snapshot = read_frame(sock)
        assert snapshot is not None
        assert snapshot["event"]["kind"] == "snapshot"

        write_frame(sock, {"v": 2, "type": "request", "id": "r1", "request": {"op": "ping"}})
        error = read_frame(sock)
        write_frame(sock, {"v": 1, "type": "request", "id": "r2", "request": {"op": "ping"}})
        pong = read_frame(sock)

    assert error is not None
    assert error["id"] == "r1"
    assert error["response"]["error_kind"] == "unsupported_version"
    assert pong is not None
    assert pong["response"] == {"kind": "ok", "message": "pong"}


def test_shutdown_request_stops_daemon(daemon_settings: Settings) -> None:
    daemon = Daemon(daemon_settings)
    daemon.start()
    runner = threading.Thread(target=daemon.serve_forever, kwargs={"poll_seconds": 0.05})
    runner.start()

    with IpcClient(daemon_settings.socket_path, timeout_seconds=_WAIT) as client:
        client.shutdown()
        events = list(client.events())

    runner.join(timeout=_WAIT)
    assert not runner.is_alive()
    assert events[-1].kind is EventKind.DAEMON_SHUTDOWN
    assert not daemon_settings.socket_path.exists()
    assert daemon_settings.state_file.exists()
