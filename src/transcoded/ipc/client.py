"""Client side of the daemon socket."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from collections.abc import Iterator
from concurrent.futures import Future
from pathlib import Path
from types import TracebackType
from typing import Any
from uuid import uuid4

from transcoded.ipc.protocol import (
    MessageType,
    ProtocolError,
    Request,
    RequestOp,
    Response,
    ResponseKind,
    decode_event,
    decode_response,
    encode_request,
    message_type,
    read_frame,
    write_frame,
)
from transcoded.jobs.events import DaemonEvent
from transcoded.jobs.models import Job

logger = logging.getLogger(__name__)


class IpcRequestError(RuntimeError):
    """The daemon answered a request with an error response."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message


class IpcClient:
    """One connection to the daemon.

    Responses are matched to requests by id; events (starting with the snapshot the
    daemon sends on connect) are buffered for ``next_event`` / ``events``.
    """

    def __init__(self, socket_path: Path, *, timeout_seconds: float = 30.0) -> None:
        self.socket_path = socket_path
        self.timeout_seconds = timeout_seconds
        self._sock: socket.socket | None = None
        self._reader: threading.Thread | None = None
        self._pending: dict[str, Future[Response]] = {}
        self._pending_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._events: queue.Queue[DaemonEvent | None] = queue.Queue()

    def __enter__(self) -> IpcClient:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(str(self.socket_path))
        except OSError:
            sock.close()
            raise
        self._sock = sock
        self._reader = threading.Thread(target=self._read_loop, daemon=True, name="ipc-client")
        self._reader.start()

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()
        if self._reader is not None:
            self._reader.join(timeout=2)

    # -- requests -------------------------------------------------------------------

    def add_job(self, source: str, destination: str, spec: dict[str, Any] | None = None) -> Job:
        response = self.request(
            RequestOp.ADD_JOB,
            source=source,
            destination=destination,
            spec=spec or {},
        )
        return _expect_job(response)

    def cancel_job(self, job_id: str) -> None:
        self.request(RequestOp.CANCEL_JOB, job_id=job_id)

    def retry_job(self, job_id: str) -> Job:
        return _expect_job(self.request(RequestOp.RETRY_JOB, job_id=job_id))

    def get_job(self, job_id: str) -> Job:
        return _expect_job(self.request(RequestOp.GET_JOB, job_id=job_id))

    def list_queue(self) -> list[Job]:
        return list(self.request(RequestOp.LIST_QUEUE).jobs)

    def list_active(self) -> list[Job]:
        return list(self.request(RequestOp.LIST_ACTIVE).jobs)

    def list_history(self) -> list[Job]:
        return list(self.request(RequestOp.LIST_HISTORY).jobs)

    def delete_history_entry(self, job_id: str) -> None:
        self.request(RequestOp.DELETE_HISTORY_ENTRY, job_id=job_id)

    def clear_history(self) -> str:
        return self.request(RequestOp.CLEAR_HISTORY).message or ""

    def ping(self) -> None:
        self.request(RequestOp.PING)

    def shutdown(self) -> None:
        self.request(RequestOp.SHUTDOWN)

    def request(self, op: RequestOp, **fields: Any) -> Response:
        """Send a request and wait for its response; error responses raise."""

        if self._sock is None:
            raise ConnectionError("client is not connected")
        request = Request(op=op, request_id=uuid4().hex, **fields)
        future: Future[Response] = Future()
        with self._pending_lock:
            self._pending[request.request_id] = future
        try:
            with self._send_lock:
                write_frame(self._sock, encode_request(request))
            response = future.result(timeout=self.timeout_seconds)
        finally:
            with self._pending_lock:
                self._pending.pop(request.request_id, None)
        if response.kind is ResponseKind.ERROR:
            raise IpcRequestError(response.error_kind or "unknown", response.message or "")
        return response

    # -- events ---------------------------------------------------------------------

    def next_event(self, timeout: float | None = None) -> DaemonEvent | None:
        """Next buffered event; ``None`` on timeout or after the connection closed."""

        try:
            event = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        if event is None:
            self._events.put(None)
        return event

    def events(self) -> Iterator[DaemonEvent]:
        """Yield events until the daemon closes the connection."""

        while True:
            event = self.next_event()
            if event is None:
                return
            yield event

    def _read_loop(self) -> None:
        sock = self._sock
        try:
            while sock is not None:
                message = read_frame(sock)
                if message is None:
                    break
                self._dispatch(message)
        except (OSError, ProtocolError) as error:
            logger.debug("Connection to daemon ended: %s", error)
        finally:
            self._events.put(None)
            with self._pending_lock:
                pending = list(self._pending.values())
                self._pending.clear()
            for future in pending:
                if not future.done():
                    future.set_exception(ConnectionError("daemon closed the connection"))

    def _dispatch(self, message: dict[str, Any]) -> None:
        kind = message_type(message)
        if kind is MessageType.EVENT:
            self._events.put(decode_event(message))
            return
        if kind is not MessageType.RESPONSE:
            logger.warning("Ignoring unexpected %s message from daemon", kind.value)
            return
        response = decode_response(message)
        with self._pending_lock:
            future = self._pending.get(response.request_id)
        if future is None:
            logger.warning(
                "Daemon error without a matching request: %s %s",
                response.error_kind,
                response.message,
            )
            return
        future.set_result(response)


def _expect_job(response: Response) -> Job:
    if response.job is None:
        raise IpcRequestError("invalid_response", f"expected a job, got {response.kind.value}")
    return response.job
