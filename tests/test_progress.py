from __future__ import annotations

import io

import allure
import pytest

from transcoded.jobs.models import JobProgress
from transcoded.pipeline.progress import (
    AOMENC_GRAMMAR,
    SVT_AV1_GRAMMAR,
    ProgressMonitor,
    compute_eta,
    iter_lines,
)

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Progress Parsing"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _svt_line(frame: int) -> str:
    return f"Encoding frame {frame:>5} 812.50 kbps 24.00 fps"


def test_svt_av1_grammar_reads_newer_format() -> None:
    sample = SVT_AV1_GRAMMAR.parse(
        "Encoding:   120/  240 Frames @ 45.12 fps | 1234.56 kbps | Time: 0:00:02",
    )

    assert sample is not None
    assert sample.frame == 120
    assert sample.total_frames == 240
    assert sample.fps == pytest.approx(45.12)
    assert sample.bitrate_kbps == pytest.approx(1234.56)


def test_svt_av1_grammar_reads_older_format() -> None:
    sample = SVT_AV1_GRAMMAR.parse(_svt_line(37))

    assert sample is not None
    assert sample.frame == 37
    assert sample.total_frames is None
    assert sample.fps == pytest.approx(24.0)


def test_aomenc_grammar_uses_encoded_frame_count_and_scales_bitrate() -> None:
    sample = AOMENC_GRAMMAR.parse(
        "Pass 1/1 frame  120/119    166208B   11081b/f  332439b/s    4000 ms (30.00 fps)",
    )

    assert sample is not None
    assert sample.frame == 119
    assert sample.fps == pytest.approx(30.0)
    assert sample.bitrate_kbps == pytest.approx(332.439)


@pytest.mark.parametrize("line", ["", "Svt[info]: SVT [version]", "Pass 1/1 frame"])
def test_lines_without_progress_are_ignored(line: str) -> None:
    assert SVT_AV1_GRAMMAR.parse(line) is None
    assert AOMENC_GRAMMAR.parse(line) is None


@pytest.mark.parametrize(
    "line",
    [
        "Encoding frame    12 812.50 kbps 24.00 fps",
        "Warning: keyframe at frame 12 forced",
    ],
)
def test_aomenc_grammar_requires_pass_prefix(line: str) -> None:
    assert AOMENC_GRAMMAR.parse(line) is None


def test_iter_lines_splits_on_carriage_returns_and_newlines() -> None:
    stream = io.BytesIO(b"first\rsecond\r\n\nthird \xff")

    assert list(iter_lines(stream, chunk_size=3)) == ["first", "second", "third \ufffd"]


def test_compute_eta() -> None:
    assert compute_eta(10.0, 25, 100) == pytest.approx(30.0)
    assert compute_eta(10.0, 0, 100) is None
    assert compute_eta(10.0, 25, None) is None
    assert compute_eta(10.0, 120, 100) == 0.0


def test_monitor_rate_limits_and_flushes_latest_tick() -> None:
    clock = _Clock()
    emitted: list[JobProgress] = []
    monitor = ProgressMonitor(
        parse_line=SVT_AV1_GRAMMAR.parse,
        total_frames=48,
        emit=emitted.append,
        min_interval_seconds=0.5,
        clock=clock,
    )

    for at, frame in ((1.0, 10), (1.2, 20), (1.3, 15), (1.6, 30), (1.7, 40)):
        clock.now = at
        monitor.feed_line(_svt_line(frame))
    assert [tick.frames_processed for tick in emitted] == [10, 30]

    monitor.flush()
    assert [tick.frames_processed for tick in emitted] == [10, 30, 40]
    last = emitted[-1]
    assert last.percent == pytest.approx(40 / 48 * 100)
    assert last.elapsed_seconds == pytest.approx(1.7)
    assert last.eta_seconds == pytest.approx(1.7 / 40 * 8)


def test_monitor_caps_percent_and_derives_encoded_seconds() -> None:
    clock = _Clock()
    emitted: list[JobProgress] = []
    monitor = ProgressMonitor(
        parse_line=SVT_AV1_GRAMMAR.parse,
        total_frames=40,
        emit=emitted.append,
        min_interval_seconds=0.0,
        clock=clock,
        source_fps=24.0,
    )
    clock.now = 2.0
    monitor.feed_line(_svt_line(48))

    assert emitted[-1].percent == 100.0
    assert emitted[-1].encoded_seconds == pytest.approx(2.0)
    assert emitted[-1].eta_seconds == 0.0


def test_monitor_derives_fps_when_tool_does_not_report_it() -> None:
    clock = _Clock()
    emitted: list[JobProgress] = []
    monitor = ProgressMonitor(
        parse_line=AOMENC_GRAMMAR.parse,
        total_frames=None,
        emit=emitted.append,
        min_interval_seconds=0.0,
        clock=clock,
    )
    clock.now = 2.0
    monitor.feed_line("Pass 1/1 frame   12/12")

    tick = emitted[-1]
    assert tick.fps == pytest.approx(6.0)
    assert tick.total_frames is None
    assert tick.percent == 0.0
    assert tick.eta_seconds is None


def test_consume_forwards_every_line_and_flushes_at_eof() -> None:
    seen: list[str] = []
    emitted: list[JobProgress] = []
    monitor = ProgressMonitor(
        parse_line=SVT_AV1_GRAMMAR.parse,
        total_frames=3,
        emit=emitted.append,
        min_interval_seconds=60.0,
        on_line=seen.append,
    )
    payload = "\r".join(["Svt[info]: starting", _svt_line(1), _svt_line(2), _svt_line(3)])

    monitor.consume(io.BytesIO(payload.encode()))

    assert seen[0] == "Svt[info]: starting"
    assert len(seen) == 4
    assert [tick.frames_processed for tick in emitted] == [1, 3]
    assert monitor.latest is not None
    assert monitor.latest.percent == pytest.approx(100.0)
