"""Wire protocol: length-prefixed JSON envelopes over a stream socket.

Every frame is a 4-byte big-endian length followed by a UTF-8 JSON object::

    {"v": 1, "type": "request",  "id": "...", "request":  {"op": "add_job", ...}}
    {"v": 1, "type": "response", "id": "...", "response": {"kind": "job", ...}}
    {"v": 1, "type": "event",                 "event":    {"kind": "job_progress", ...}}

Responses carry the id of the request they answer; events carry no id.
"""

from __future__ import annotations

import json
import socket
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from transcoded.jobs.contracts import (
    job_from_dict,
    job_to_dict,
    progress_from_dict,
    progress_to_dict,
)
from transcoded.jobs.events import DaemonEvent, EventKind
from transcoded.jobs.models import Job
from transcoded.jobs.store import StoreSnapshot

PROTOCOL_VERSION = 1
MAX_FRAME_BYTES = 16 * 1024 * 1024
_HEADER = struct.Struct(">I")


class ProtocolError(ValueError):
    """Frame or message that cannot be accepted."""

    def __init__(
        self,
        message: str,
        *,
        kind: str = "invalid_request",
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.request_id = request_id


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"


class RequestOp(str, Enum):
    ADD_JOB = "add_job"
    CANCEL_JOB = "cancel_job"
    RETRY_JOB = "retry_job"
    GET_JOB = "get_job"
    LIST_QUEUE = "list_queue"
    LIST_ACTIVE = "list_active"
    LIST_HISTORY = "list_history"
    DELETE_HISTORY_ENTRY = "delete_history_entry"
    CLEAR_HISTORY = "clear_history"
    PING = "ping"
    SHUTDOWN = "shutdown"


_OPS_WITH_JOB_ID = frozenset(
    {
        RequestOp.CANCEL_JOB,
        RequestOp.RETRY_JOB,
        RequestOp.GET_JOB,
        RequestOp.DELETE_HISTORY_ENTRY,
    },
)


class ResponseKind(str, Enum):
    OK = "ok"
    ERROR = "error"
    JOB = "job"
    JOB_LIST = "job_list"


@dataclass(slots=True, frozen=True)
class Request:
    """Client request; ``spec`` is the partial encoding spec of an AddJob."""

    op: RequestOp
    request_id: str
    job_id: str | None = None
    source: str | None = None
    destination: str | None = None
    spec: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Response:
    request_id: str
    kind: ResponseKind
    job: Job | None = None
    jobs: tuple[Job, ...] = ()
    error_kind: str | None = None
    message: str | None = None

    @classmethod
    def ok(cls, request_id: str, message: str | None = None) -> Response:
        return cls(request_id=request_id, kind=ResponseKind.OK, message=message)

    @classmethod
    def error(cls, request_id: str, error_kind: str, message: str) -> Response:
        return cls(
            request_id=request_id,
            kind=ResponseKind.ERROR,
            error_kind=error_kind,
            message=message,
        )

    @classmethod
    def for_job(cls, request_id: str, job: Job) -> Response:
        return cls(request_id=request_id, kind=ResponseKind.JOB, job=job)

    @classmethod
    def for_jobs(cls, request_id: str, jobs: list[Job]) -> Response:
        return cls(request_id=request_id, kind=ResponseKind.JOB_LIST, jobs=tuple(jobs))


# -- framing --------------------------------------------------------------------


def encode_frame(message: dict[str, Any]) -> bytes:
    payload = json.dumps(message, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    if len(payload) > MAX_FRAME_BYTES:
        raise ProtocolError(f"frame of {len(payload)} bytes exceeds {MAX_FRAME_BYTES}")
    return _HEADER.pack(len(payload)) + payload


def write_frame(sock: socket.socket, message: dict[str, Any]) -> None:
    sock.sendall(encode_frame(message))


def read_frame(sock: socket.socket) -> dict[str, Any] | None:
    """Read one frame; ``None`` on a clean end of stream between frames."""

    header = _recv_exact(sock, _HEADER.size, allow_eof=True)
    if header is None:
        return None
    (length,) = _HEADER.unpack(header)
    if length > MAX_FRAME_BYTES:
        raise ProtocolError(f"frame of {length} bytes exceeds {MAX_FRAME_BYTES}")
    payload = _recv_exact(sock, length, allow_eof=False) or b""
    try:
        message = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as error:
        raise ProtocolError(f"frame is not valid JSON: {error}") from error
    if not isinstance(message, dict):
        raise ProtocolError("frame must hold a JSON object")
    return message


def _recv_exact(sock: socket.socket, size: int, *, allow_eof: bool) -> bytes | None:
    chunks: list[bytes] = []
    remaining = size
    while remaining:
        chunk = sock.recv(min(remaining, 65536))
        if not chunk:
            if allow_eof and remaining == size:
                return None
            raise ConnectionError("connection closed mid-frame")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


# -- envelopes ------------------------------------------------------------------


def message_type(message: dict[str, Any]) -> MessageType:
    """Validate the envelope version and return its type."""

    request_id = message.get("id") if isinstance(message.get("id"), str) else None
    version = message.get("v")
    if version != PROTOCOL_VERSION:
        raise ProtocolError(
            f"unsupported protocol version {version!r}, expected {PROTOCOL_VERSION}",
            kind="unsupported_version",
            request_id=request_id,
        )
    try:
        return MessageType(message.get("type"))
    except ValueError as error:
        raise ProtocolError(
            f"unknown message type {message.get('type')!r}",
            request_id=request_id,
        ) from error


def encode_request(request: Request) -> dict[str, Any]:
    body: dict[str, Any] = {"op": request.op.value}
    if request.job_id is not None:
        body["job_id"] = request.job_id
    if request.op is RequestOp.ADD_JOB:
        body["source"] = request.source
        body["destination"] = request.destination
        body["spec"] = dict(request.spec)
    return {
        "v": PROTOCOL_VERSION,
        "type": MessageType.REQUEST.value,
        "id": request.request_id,
        "request": body,
    }


def decode_request(message: dict[str, Any]) -> Request:
    request_id = message.get("id")
    if not isinstance(request_id, str) or not request_id:
        raise ProtocolError("request.id must be a non-empty string")
    body = message.get("request")
    if not isinstance(body, dict):
        raise ProtocolError("request body must be an object", request_id=request_id)
    try:
        op = RequestOp(body.get("op"))
    except ValueError as error:
        raise ProtocolError(
            f"unknown request op {body.get('op')!r}",
            request_id=request_id,
        ) from error

    job_id: str | None = None
    if op in _OPS_WITH_JOB_ID:
        job_id = _required_str(body, "job_id", request_id)
    if op is not RequestOp.ADD_JOB:
        return Request(op=op, request_id=request_id, job_id=job_id)

    spec = body.get("spec") or {}
    if not isinstance(spec, dict):
        raise ProtocolError("request.spec must be an object", request_id=request_id)
    return Request(
        op=op,
        request_id=request_id,
        source=_required_str(body, "source", request_id),
        destination=_required_str(body, "destination", request_id),
        spec=spec,
    )


def encode_response(response: Response) -> dict[str, Any]:
    body: dict[str, Any] = {"kind": response.kind.value}
    if response.kind is ResponseKind.ERROR:
        body["error_kind"] = response.error_kind
        body["message"] = response.message
    elif response.kind is ResponseKind.JOB and response.job is not None:
        body["job"] = job_to_dict(response.job)
    elif response.kind is ResponseKind.JOB_LIST:
        body["jobs"] = [job_to_dict(job) for job in response.jobs]
    elif response.message is not None:
        body["message"] = response.message
    return {
        "v": PROTOCOL_VERSION,
        "type": MessageType.RESPONSE.value,
        "id": response.request_id,
        "response": body,
    }


def decode_response(message: dict[str, Any]) -> Response:
    request_id = message.get("id")
    body = message.get("response")
    if not isinstance(request_id, str) or not isinstance(body, dict):
        raise ProtocolError("malformed response envelope")
    try:
        kind = ResponseKind(body.get("kind"))
        if kind is ResponseKind.ERROR:
            return Response.error(
                request_id,
                str(body.get("error_kind") or "unknown"),
                str(body.get("message") or ""),
            )
        if kind is ResponseKind.JOB:
            return Response.for_job(request_id, job_from_dict(body.get("job")))
        if kind is ResponseKind.JOB_LIST:
            jobs = body.get("jobs")
            if not isinstance(jobs, list):
                raise TypeError("response.jobs must be an array")
            return Response.for_jobs(request_id, [job_from_dict(item) for item in jobs])
        return Response.ok(request_id, body.get("message"))
    except (TypeError, ValueError) as error:
        raise ProtocolError(f"malformed response: {error}", request_id=request_id) from error


def encode_event(event: DaemonEvent) -> dict[str, Any]:
    body: dict[str, Any] = {"kind": event.kind.value}
    if event.job is not None:
        body["job"] = job_to_dict(event.job)
    if event.job_id is not None:
        body["job_id"] = event.job_id
    if event.progress is not None:
        body["progress"] = progress_to_dict(event.progress)
    if event.detail is not None:
        body["detail"] = event.detail
    if event.snapshot is not None:
        body["snapshot"] = {
            "queue": [job_to_dict(job) for job in event.snapshot.queue],
            "active": [job_to_dict(job) for job in event.snapshot.active.values()],
            "history": [job_to_dict(job) for job in event.snapshot.history],
        }
    return {"v": PROTOCOL_VERSION, "type": MessageType.EVENT.value, "event": body}


def decode_event(message: dict[str, Any]) -> DaemonEvent:
    body = message.get("event")
    if not isinstance(body, dict):
        raise ProtocolError("malformed event envelope")
    try:
        kind = EventKind(body.get("kind"))
        job = job_from_dict(body["job"]) if "job" in body else None
        progress = progress_from_dict(body["progress"]) if "progress" in body else None
        snapshot = _snapshot_from_body(body["snapshot"]) if "snapshot" in body else None
    except (KeyError, TypeError, ValueError) as error:
        raise ProtocolError(f"malformed event: {error}") from error
    return DaemonEvent(
        kind=kind,
        job=job,
        job_id=body.get("job_id"),
        progress=progress,
        detail=body.get("detail"),
        snapshot=snapshot,
    )


def _snapshot_from_body(raw: Any) -> StoreSnapshot:
    if not isinstance(raw, dict):
        raise TypeError("event.snapshot must be an object")
    active = [job_from_dict(item) for item in raw.get("active", [])]
    return StoreSnapshot(
        queue=[job_from_dict(item) for item in raw.get("queue", [])],
        active={job.job_id: job for job in active},
        history=[job_from_dict(item) for item in raw.get("history", [])],
    )


def _required_str(body: dict[str, Any], key: str, request_id: str) -> str:
    value = body.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"request.{key} must be a non-empty string", request_id=request_id)
    return value
