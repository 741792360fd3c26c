from __future__ import annotations

from pathlib import Path

import allure
import pytest

from transcoded.errors import SpawnError, StageFailure
from transcoded.pipeline.probe import (
    DEFAULT_FPS,
    ProbeInterrupted,
    parse_frame_rate,
    parse_probe_output,
    probe_media,
)
from transcoded.pipeline.toolchain import Toolchain

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Media Probe"),
]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("24000/1001", 24000 / 1001), ("25", 25.0), ("0/0", None), ("", None), ("abc", None)],
)
def test_parse_frame_rate(raw: str, expected: float | None) -> None:
    assert parse_frame_rate(raw) == (pytest.approx(expected) if expected else None)


def test_parse_probe_output_counts_streams_and_estimates_frames() -> None:
    info = parse_probe_output(
        {
            "streams": [
                {"codec_type": "video", "width": 1280, "height": 720, "r_frame_rate": "25/1"},
                {"codec_type": "audio"},
                {"codec_type": "audio"},
                {"codec_type": "subtitle"},
            ],
            "format": {"duration": "12.0"},
        },
    )

    assert (info.width, info.height) == (1280, 720)
    assert info.audio_streams == 2
    assert info.subtitle_streams == 1
    assert info.frame_count is None
    assert info.total_frames_estimate == 300


def test_parse_probe_output_prefers_counted_frames_and_defaults_fps() -> None:
    info = parse_probe_output(
        {
            "streams": [
                {
                    "codec_type": "video",
                    "width": 640,
                    "height": 480,
                    "nb_frames": "100",
                    "nb_read_frames": "98",
                },
            ],
        },
    )

    assert info.fps == DEFAULT_FPS
    assert info.total_frames_estimate == 98


def test_parse_probe_output_requires_a_video_stream() -> None:
    with pytest.raises(ValueError, match="no video stream"):
        parse_probe_output({"streams": [{"codec_type": "audio"}]})


def test_probe_media_runs_ffprobe(toolchain: Toolchain, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_FRAMES", "72")
    monkeypatch.setenv("FAKE_SUBTITLES", "2")

    info = probe_media(toolchain.ffprobe, "/in/movie.mkv")

    assert info.frame_count == 72
    assert info.fps == pytest.approx(24.0)
    assert info.audio_streams == 1
    assert info.subtitle_streams == 2


def test_probe_media_failure_carries_stderr(toolchain: Toolchain, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_FAIL_STAGE", "probe")
    monkeypatch.setenv("FAKE_FAIL_CODE", "3")

    with pytest.raises(StageFailure, match="probe failed with exit code 3: probe: simulated failure"):
        probe_media(toolchain.ffprobe, "/in/movie.mkv")


def test_probe_media_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(SpawnError, match="cannot start probe"):
        probe_media(str(tmp_path / "missing-ffprobe"), "/in/movie.mkv")


def test_probe_media_stops_when_cancelled(toolchain: Toolchain, monkeypatch) -> None:
    monkeypatch.setenv("FAKE_PROBE_SLEEP", "10")

    with pytest.raises(ProbeInterrupted):
        probe_media(toolchain.ffprobe, "/in/movie.mkv", stop_requested=lambda: True)
