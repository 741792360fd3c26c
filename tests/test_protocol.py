from __future__ import annotations

import socket
import struct

import allure
import pytest

from transcoded.ipc.protocol import (
    MAX_FRAME_BYTES,
    MessageType,
    ProtocolError,
    Request,
    RequestOp,
    Response,
    ResponseKind,
    decode_event,
    decode_request,
    decode_response,
    encode_event,
    encode_request,
    encode_response,
    message_type,
    read_frame,
    write_frame,
)
from transcoded.jobs.events import DaemonEvent, EventKind
from transcoded.jobs.models import EncodingSpec, Job, JobProgress
from transcoded.jobs.store import StoreSnapshot

pytestmark = [
    allure.epic("IPC"),
    allure.feature("Wire Protocol"),
]


def _job(job_id: str = "j1") -> Job:
    return Job(job_id=job_id, source="/in.mkv", destination="/out.mkv", spec=EncodingSpec())


@pytest.fixture()
def pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()


def test_frames_are_length_prefixed_json(pair) -> None:
    left, right = pair
    write_frame(left, {"v": 1, "type": "event", "event": {"kind": "snapshot"}})
    write_frame(left, {"v": 1, "type": "event", "event": {"kind": "daemon_shutdown"}})
    left.shutdown(socket.SHUT_WR)

    assert read_frame(right) == {"v": 1, "type": "event", "event": {"kind": "snapshot"}}
    assert read_frame(right)["event"] == {"kind": "daemon_shutdown"}
    assert read_frame(right) is None


def test_oversized_frame_header_is_rejected(pair) -> None:
    left, right = pair
    left.sendall(struct.pack(">I", MAX_FRAME_BYTES + 1))

    with pytest.raises(ProtocolError, match="exceeds"):
        read_frame(right)


def test_non_object_payload_is_rejected(pair) -> None:
    left, right = pair
    payload = b"[1, 2]"
    left.sendall(struct.pack(">I", len(payload)) + payload)

    with pytest.raises(ProtocolError, match="JSON object"):
        read_frame(right)


def test_truncated_frame_is_a_connection_error(pair) -> None:
    left, right = pair
    left.sendall(struct.pack(">I", 10) + b"{}")
    left.shutdown(socket.SHUT_WR)

    with pytest.raises(ConnectionError, match="mid-frame"):
        read_frame(right)


def test_version_mismatch_is_reported_with_request_id() -> None:
    with pytest.raises(ProtocolError) as raised:
        message_type({"v": 2, "type": "request", "id": "r1"})

    assert raised.value.kind == "unsupported_version"
    assert raised.value.request_id == "r1"


def test_add_job_request_round_trip() -> None:
    request = Request(
        op=RequestOp.ADD_JOB,
        request_id="r1",
        source="/in.mkv",
        destination="/out.mkv",
        spec={"encoder_params": {"crf": 24}},
    )
    message = encode_request(request)

    assert message_type(message) is MessageType.REQUEST
    assert decode_request(message) == request


@pytest.mark.parametrize(
    ("body", "error"),
    [
        ({"op": "cancel_job"}, "request.job_id"),
        ({"op": "add_job", "source": "/in.mkv"}, "request.destination"),
        ({"op": "pause_job"}, "unknown request op"),
        ({"op": "add_job", "source": "a", "destination": "b", "spec": [1]}, "request.spec"),
    ],
)
def test_malformed_requests_are_rejected(body: dict, error: str) -> None:
    with pytest.raises(ProtocolError, match=error) as raised:
        decode_request({"v": 1, "type": "request", "id": "r9", "request": body})
    assert raised.value.request_id == "r9"


def test_responses_round_trip() -> None:
    for response in (
        Response.ok("r1", "pong"),
        Response.error("r2", "not_found", "Job x not found"),
        Response.for_job("r3", _job()),
        Response.for_jobs("r4", [_job("a"), _job("b")]),
    ):
        assert decode_response(encode_response(response)) == response


def test_error_response_body() -> None:
    message = encode_response(Response.error("r2", "already_terminal", "Job j1 is already completed"))

    assert message["response"] == {
        "kind": ResponseKind.ERROR.value,
        "error_kind": "already_terminal",
        "message": "Job j1 is already completed",
    }


def test_snapshot_event_round_trip() -> None:
    active = _job("a")
    active.mark_started()
    snapshot = StoreSnapshot(queue=[_job("q")], active={"a": active}, history=[])
    event = DaemonEvent(kind=EventKind.SNAPSHOT, snapshot=snapshot)

    decoded = decode_event(encode_event(event))

    assert decoded.kind is EventKind.SNAPSHOT
    assert decoded.snapshot == snapshot


def test_progress_event_round_trip() -> None:
    event = DaemonEvent.for_progress("a", JobProgress(frames_processed=5, total_frames=10, percent=50.0))
    assert decode_event(encode_event(event)) == event


def test_unknown_event_kind_is_rejected() -> None:
    with pytest.raises(ProtocolError, match="malformed event"):
        decode_event({"v": 1, "type": "event", "event": {"kind": "job_paused"}})
