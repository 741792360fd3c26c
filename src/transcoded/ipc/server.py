"""Unix socket listener serving requests and streaming events."""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Callable
from concurrent.futures import Future
from functools import partial
from itertools import count
from pathlib import Path
from typing import Any

from transcoded.ipc.bus import EventBus, Subscriber
from transcoded.ipc.protocol import (
    MessageType,
    ProtocolError,
    Request,
    RequestOp,
    Response,
    decode_request,
    encode_event,
    encode_response,
    message_type,
    read_frame,
    write_frame,
)
from transcoded.jobs.contracts import spec_from_dict
from transcoded.jobs.events import DaemonEvent
from transcoded.jobs.models import EncodingSpec, Job
from transcoded.jobs.scheduler import QueueScheduler, SchedulerError

logger = logging.getLogger(__name__)

_ACCEPT_TIMEOUT_SECONDS = 0.5
_WRITER_POLL_SECONDS = 0.5
_SUBSCRIBE_TIMEOUT_SECONDS = 10.0
_DRAIN_TIMEOUT_SECONDS = 5.0


class DaemonAlreadyRunningError(RuntimeError):
    """Another daemon answers on the socket path."""


class IpcServer:
    """Accepts client connections on a Unix socket.

    Each connection is attached to the event bus on connect (its first message is a
    snapshot) and gets a reader thread for requests and a writer thread that sends
    responses and events in the order they were produced.
    """

    def __init__(
        self,
        *,
        socket_path: Path,
        scheduler: QueueScheduler,
        bus: EventBus,
        spec_defaults: EncodingSpec,
        on_shutdown_request: Callable[[], None],
    ) -> None:
        self.socket_path = socket_path
        self._scheduler = scheduler
        self._bus = bus
        self._spec_defaults = spec_defaults
        self._on_shutdown_request = on_shutdown_request
        self._listener: socket.socket | None = None
        self._accept_thread: threading.Thread | None = None
        self._closing = threading.Event()
        self._connections: set[_Connection] = set()
        self._lock = threading.Lock()
        self._ids = count(1)

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def start(self) -> None:
        self.ensure_available()
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(str(self.socket_path))
            os.chmod(self.socket_path, 0o600)
            listener.listen()
            listener.settimeout(_ACCEPT_TIMEOUT_SECONDS)
        except OSError:
            listener.close()
            raise
        self._listener = listener
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            daemon=True,
            name="ipc-accept",
        )
        self._accept_thread.start()
        logger.info("Listening on %s", self.socket_path)

    def close(self) -> None:
        """Stop accepting, flush every outbox, then close connections and the socket."""

        self._closing.set()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=_ACCEPT_TIMEOUT_SECONDS * 4)
            self._accept_thread = None
        with self._lock:
            connections = list(self._connections)
        for connection in connections:
            connection.close()
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("Cannot remove socket %s: %s", self.socket_path, error)
        logger.info("IPC listener closed")

    def ensure_available(self) -> None:
        """Remove a stale socket file; raise if a live daemon still answers on it."""

        if not self.socket_path.exists():
            return
        probe = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            probe.connect(str(self.socket_path))
        except OSError:
            logger.info("Removing stale socket %s", self.socket_path)
            self.socket_path.unlink(missing_ok=True)
            return
        finally:
            probe.close()
        raise DaemonAlreadyRunningError(f"A daemon is already listening on {self.socket_path}")

    def _accept_loop(self) -> None:
        listener = self._listener
        if listener is None:
            return
        while not self._closing.is_set():
            try:
                sock, _ = listener.accept()
            except TimeoutError:
                continue
            except OSError as error:
                if not self._closing.is_set():
                    logger.error("Accept failed: %s", error)
                return
            sock.settimeout(None)
            connection = _Connection(self, sock, f"client-{next(self._ids)}")
            with self._lock:
                self._connections.add(connection)
            connection.start()

    def _forget(self, connection: _Connection) -> None:
        with self._lock:
            self._connections.discard(connection)

    # -- request dispatch --------------------------------------------------------------

    def dispatch(self, request: Request, reply: Callable[[Response], None]) -> None:
        """Route one request; ``reply`` is called exactly once, possibly from another thread."""

        rid = request.request_id
        scheduler = self._scheduler
        op = request.op
        if op is RequestOp.PING:
            reply(Response.ok(rid, "pong"))
            return
        if op is RequestOp.SHUTDOWN:
            reply(Response.ok(rid, "shutting down"))
            self._on_shutdown_request()
            return

        future: Future[Any]
        render: Callable[[Any], Response]
        if op is RequestOp.ADD_JOB:
            try:
                spec = spec_from_dict(request.spec, defaults=self._spec_defaults)
            except (TypeError, ValueError) as error:
                reply(Response.error(rid, "invalid_request", str(error)))
                return
            future = scheduler.enqueue(request.source or "", request.destination or "", spec)
            render = partial(_job_response, rid)
        elif op is RequestOp.CANCEL_JOB:
            future = scheduler.cancel(request.job_id or "")
            render = partial(_ok_response, rid)
        elif op is RequestOp.RETRY_JOB:
            future = scheduler.retry(request.job_id or "")
            render = partial(_job_response, rid)
        elif op is RequestOp.GET_JOB:
            future = scheduler.get_job(request.job_id or "")
            render = partial(_job_response, rid)
        elif op is RequestOp.LIST_QUEUE:
            future = scheduler.list_queue()
            render = partial(Response.for_jobs, rid)
        elif op is RequestOp.LIST_ACTIVE:
            future = scheduler.list_active()
            render = partial(Response.for_jobs, rid)
        elif op is RequestOp.LIST_HISTORY:
            future = scheduler.list_history()
            render = partial(Response.for_jobs, rid)
        elif op is RequestOp.DELETE_HISTORY_ENTRY:
            future = scheduler.delete_history_entry(request.job_id or "")
            render = partial(_ok_response, rid)
        else:
            future = scheduler.clear_history()
            render = partial(_cleared_response, rid)
        future.add_done_callback(partial(_reply_from_future, rid, render, reply))


class _Connection:
    def __init__(self, server: IpcServer, sock: socket.socket, name: str) -> None:
        self._server = server
        self._sock = sock
        self.name = name
        self._subscriber: Subscriber | None = None
        self._reader: threading.Thread | None = None
        self._writer: threading.Thread | None = None
        self._closed = threading.Event()

    def start(self) -> None:
        self._reader = threading.Thread(
            target=self._read_loop,
            daemon=True,
            name=f"ipc-{self.name}-reader",
        )
        self._reader.start()

    def close(self) -> None:
        """Let the writer drain queued items, then close the socket."""

        if self._subscriber is not None:
            self._subscriber.close()
        if self._writer is not None and self._writer is not threading.current_thread():
            self._writer.join(timeout=_DRAIN_TIMEOUT_SECONDS)
        self._shutdown_socket()

    def _read_loop(self) -> None:
        try:
            self._subscriber = self._server._scheduler.subscribe(self.name).result(
                timeout=_SUBSCRIBE_TIMEOUT_SECONDS,
            )
        except SchedulerError as error:
            self._send_direct(Response.error("", error.kind, str(error)))
            self._finish()
            return
        except TimeoutError:
            logger.error("Scheduler did not accept subscriber %s", self.name)
            self._finish()
            return

        self._writer = threading.Thread(
            target=self._write_loop,
            daemon=True,
            name=f"ipc-{self.name}-writer",
        )
        self._writer.start()
        logger.debug("Client %s connected", self.name)
        try:
            while not self._closed.is_set():
                try:
                    message = read_frame(self._sock)
                except ProtocolError as error:
                    # the stream position is unknown after a bad frame
                    self._reply(Response.error("", error.kind, str(error)))
                    break
                if message is None:
                    break
                self._handle(message)
        except OSError as error:
            if not self._closed.is_set():
                logger.debug("Client %s read failed: %s", self.name, error)
        finally:
            self._finish()

    def _handle(self, message: dict[str, Any]) -> None:
        try:
            if message_type(message) is not MessageType.REQUEST:
                raise ProtocolError("clients may only send requests")
            request = decode_request(message)
        except ProtocolError as error:
            request_id = error.request_id
            if request_id is None and isinstance(message.get("id"), str):
                request_id = message["id"]
            self._reply(Response.error(request_id or "", error.kind, str(error)))
            return
        self._server.dispatch(request, self._reply)

    def _reply(self, response: Response) -> None:
        if self._subscriber is not None:
            self._subscriber.put(response)

    def _write_loop(self) -> None:
        subscriber = self._subscriber
        if subscriber is None:
            return
        while True:
            item = subscriber.get(timeout=_WRITER_POLL_SECONDS)
            if item is None:
                if subscriber.closed:
                    return
                continue
            try:
                write_frame(self._sock, _encode(item))
            except ProtocolError:
                logger.exception("Cannot encode message for %s", self.name)
            except OSError as error:
                logger.debug("Client %s write failed: %s", self.name, error)
                self._server._bus.detach(subscriber)
                self._shutdown_socket()
                return

    def _send_direct(self, response: Response) -> None:
        try:
            write_frame(self._sock, encode_response(response))
        except OSError:
            return

    def _finish(self) -> None:
        if self._subscriber is not None:
            self._server._bus.detach(self._subscriber)
        if self._writer is not None:
            self._writer.join(timeout=_DRAIN_TIMEOUT_SECONDS)
        self._shutdown_socket()
        self._server._forget(self)
        logger.debug("Client %s disconnected", self.name)

    def _shutdown_socket(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


def _encode(item: Any) -> dict[str, Any]:
    if isinstance(item, Response):
        return encode_response(item)
    if isinstance(item, DaemonEvent):
        return encode_event(item)
    raise ProtocolError(f"cannot encode {type(item).__name__}")


def _job_response(request_id: str, job: Job) -> Response:
    return Response.for_job(request_id, job)


def _ok_response(request_id: str, _: object) -> Response:
    return Response.ok(request_id)


def _cleared_response(request_id: str, removed: int) -> Response:
    return Response.ok(request_id, f"{removed} history entries removed")


def _reply_from_future(
    request_id: str,
    render: Callable[[Any], Response],
    reply: Callable[[Response], None],
    future: Future[Any],
) -> None:
    error = future.exception()
    if error is None:
        reply(render(future.result()))
    elif isinstance(error, SchedulerError):
        reply(Response.error(request_id, error.kind, str(error)))
    else:
        logger.error("Request %s failed: %s", request_id, error)
        reply(Response.error(request_id, "internal", str(error)))
