"""Source media inspection with ffprobe."""

from __future__ import annotations

import json
import logging
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from transcoded.errors import SpawnError, StageFailure

logger = logging.getLogger(__name__)

DEFAULT_FPS = 30.0
_POLL_SECONDS = 0.2


class ProbeInterrupted(RuntimeError):
    """Probe was stopped because the job was cancelled."""


@dataclass(slots=True, frozen=True)
class MediaInfo:
    """What the pipeline needs to know about a source file."""

    duration_seconds: float | None
    fps: float
    width: int
    height: int
    frame_count: int | None
    audio_streams: int
    subtitle_streams: int

    @property
    def total_frames_estimate(self) -> int | None:
        return estimate_total_frames(self)


def probe_media(
    ffprobe: str,
    source: str,
    *,
    precise_frame_count: bool = False,
    timeout_seconds: float = 180.0,
    stop_requested: Callable[[], bool] | None = None,
) -> MediaInfo:
    """Run ffprobe on ``source``.

    With ``precise_frame_count`` ffprobe decodes the video stream to count frames,
    which is exact but slow; otherwise the frame total is estimated from the
    container metadata.
    """

    args = [
        ffprobe,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_format",
        "-show_streams",
    ]
    if precise_frame_count:
        args.append("-count_frames")
    args.append(source)

    logger.debug("Probing %s", source)
    try:
        process = subprocess.Popen(  # noqa: S603
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as error:
        raise SpawnError("probe", str(error)) from error

    deadline = time.monotonic() + timeout_seconds
    while True:
        try:
            stdout, stderr = process.communicate(timeout=_POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            if stop_requested is not None and stop_requested():
                _kill(process)
                raise ProbeInterrupted("probe stopped") from None
            if time.monotonic() >= deadline:
                _kill(process)
                raise StageFailure(
                    "probe",
                    None,
                    f"timed out after {timeout_seconds:g}s",
                ) from None

    if process.returncode != 0:
        raise StageFailure("probe", process.returncode, _tail(stderr))
    try:
        payload = json.loads(stdout)
        return parse_probe_output(payload)
    except (TypeError, ValueError) as error:
        raise StageFailure("probe", process.returncode, f"unusable ffprobe output: {error}") from error


def parse_probe_output(payload: Any) -> MediaInfo:
    """Extract media facts from ``ffprobe -print_format json`` output."""

    if not isinstance(payload, dict):
        raise TypeError("ffprobe output must be a JSON object")
    streams = payload.get("streams", [])
    if not isinstance(streams, list):
        raise TypeError("ffprobe streams must be an array")
    fmt = payload.get("format", {})
    if not isinstance(fmt, dict):
        raise TypeError("ffprobe format must be an object")

    video = next(
        (s for s in streams if isinstance(s, dict) and s.get("codec_type") == "video"),
        None,
    )
    if video is None:
        raise ValueError("no video stream found")
    width = video.get("width")
    height = video.get("height")
    if not isinstance(width, int) or not isinstance(height, int):
        raise ValueError("video stream has no dimensions")

    fps = parse_frame_rate(str(video.get("r_frame_rate", ""))) or DEFAULT_FPS
    frame_count = _parse_int(video.get("nb_read_frames")) or _parse_int(video.get("nb_frames"))
    duration = _parse_float(fmt.get("duration")) or _parse_float(video.get("duration"))

    return MediaInfo(
        duration_seconds=duration,
        fps=fps,
        width=width,
        height=height,
        frame_count=frame_count,
        audio_streams=_count_streams(streams, "audio"),
        subtitle_streams=_count_streams(streams, "subtitle"),
    )


def parse_frame_rate(value: str) -> float | None:
    """Parse ``"24000/1001"`` or ``"24"``; return ``None`` when unusable."""

    value = value.strip()
    if not value:
        return None
    try:
        if "/" in value:
            numerator, denominator = value.split("/", 1)
            den = float(denominator)
            if den <= 0:
                return None
            rate = float(numerator) / den
        else:
            rate = float(value)
    except ValueError:
        return None
    return rate if rate > 0 else None


def estimate_total_frames(info: MediaInfo) -> int | None:
    if info.frame_count:
        return info.frame_count
    if info.duration_seconds and info.fps > 0:
        return round(info.duration_seconds * info.fps)
    return None


def _count_streams(streams: list[Any], codec_type: str) -> int:
    return sum(1 for s in streams if isinstance(s, dict) and s.get("codec_type") == codec_type)


def _parse_int(value: Any) -> int | None:
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _parse_float(value: Any) -> float | None:
    try:
        parsed = float(str(value))
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _tail(text: str, lines: int = 10) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def _kill(process: subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return
    process.communicate()
