"""Progress extraction from encoder output."""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import BinaryIO

from transcoded.jobs.models import JobProgress

_LINE_BREAK = re.compile(rb"[\r\n]")


@dataclass(slots=True, frozen=True)
class ProgressSample:
    """Fields parsed from one progress line."""

    frame: int
    total_frames: int | None = None
    fps: float | None = None
    bitrate_kbps: float | None = None


@dataclass(slots=True, frozen=True)
class ProgressGrammar:
    """Regex set describing how a tool reports progress.

    ``frame_pattern`` may have several groups; the last group that matched is the
    processed-frame count.
    """

    name: str
    frame_pattern: re.Pattern[str]
    total_pattern: re.Pattern[str] | None = None
    fps_pattern: re.Pattern[str] | None = None
    bitrate_pattern: re.Pattern[str] | None = None
    bitrate_scale: float = 1.0

    def parse(self, line: str) -> ProgressSample | None:
        match = self.frame_pattern.search(line)
        if match is None:
            return None
        frame = int(next(group for group in reversed(match.groups()) if group is not None))
        bitrate = _search_float(self.bitrate_pattern, line)
        total = _search_float(self.total_pattern, line)
        return ProgressSample(
            frame=frame,
            total_frames=int(total) if total else None,
            fps=_search_float(self.fps_pattern, line),
            bitrate_kbps=bitrate * self.bitrate_scale if bitrate is not None else None,
        )


# "Encoding:   120/  240 Frames @ 45.12 fps | 1234.56 kbps | Time: ..." (newer builds)
# "Encoding frame  120 1234.56 kbps 45.12 fps" (older builds)
SVT_AV1_GRAMMAR = ProgressGrammar(
    name="svt-av1",
    frame_pattern=re.compile(r"Encoding:?\s+(?:frame\s+)?(\d+)"),
    total_pattern=re.compile(r"/\s*(\d+)\s+Frames"),
    fps_pattern=re.compile(r"([\d.]+)\s*fps"),
    bitrate_pattern=re.compile(r"([\d.]+)\s*kbps"),
)

# "Pass 1/1 frame  120/119    166208B   11081b/f  332439b/s    4000 ms (30.00 fps)"
AOMENC_GRAMMAR = ProgressGrammar(
    name="aomenc",
    frame_pattern=re.compile(r"Pass\s+\d+/\d+\s+frame\s+(\d+)(?:/(\d+))?"),
    fps_pattern=re.compile(r"\(([\d.]+)\s*fps\)"),
    bitrate_pattern=re.compile(r"(\d+)b/s"),
    bitrate_scale=0.001,
)


def iter_lines(stream: BinaryIO, chunk_size: int = 4096) -> Iterator[str]:
    """Yield non-empty lines, treating both ``\\r`` and ``\\n`` as terminators."""

    buffer = b""
    read = getattr(stream, "read1", stream.read)
    while True:
        chunk = read(chunk_size)
        if not chunk:
            break
        buffer += chunk
        *complete, buffer = _LINE_BREAK.split(buffer)
        for raw in complete:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                yield line
    tail = buffer.decode("utf-8", errors="replace").strip()
    if tail:
        yield tail


def compute_eta(elapsed_seconds: float, frames_done: int, total_frames: int | None) -> float | None:
    if total_frames is None or frames_done <= 0 or elapsed_seconds <= 0:
        return None
    remaining = max(total_frames - frames_done, 0)
    return elapsed_seconds / frames_done * remaining


class ProgressMonitor:
    """Turns a stage's live output into rate-limited progress ticks.

    At most one tick is emitted per ``min_interval_seconds``; the newest tick held
    back by the limiter is emitted by ``flush``, which ``consume`` calls at EOF.
    """

    def __init__(
        self,
        *,
        parse_line: Callable[[str], ProgressSample | None],
        total_frames: int | None,
        emit: Callable[[JobProgress], None],
        min_interval_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        on_line: Callable[[str], None] | None = None,
        source_fps: float | None = None,
    ) -> None:
        self._parse_line = parse_line
        self._total_frames = total_frames
        self._emit = emit
        self._min_interval = min_interval_seconds
        self._clock = clock
        self._on_line = on_line
        self._source_fps = source_fps
        self._started_at = clock()
        self._last_emit_at: float | None = None
        self._pending: JobProgress | None = None
        self._latest: JobProgress | None = None

    @property
    def latest(self) -> JobProgress | None:
        return self._latest

    def consume(self, stream: BinaryIO) -> None:
        try:
            for line in iter_lines(stream):
                self.feed_line(line)
        finally:
            self.flush()

    def feed_line(self, line: str) -> JobProgress | None:
        if self._on_line is not None:
            self._on_line(line)
        sample = self._parse_line(line)
        if sample is None:
            return None
        if self._latest is not None and sample.frame < self._latest.frames_processed:
            return None

        now = self._clock()
        progress = self._build(sample, now)
        self._latest = progress
        if self._last_emit_at is None or now - self._last_emit_at >= self._min_interval:
            self._pending = None
            self._last_emit_at = now
            self._emit(progress)
        else:
            self._pending = progress
        return progress

    def flush(self) -> None:
        if self._pending is None:
            return
        pending, self._pending = self._pending, None
        self._last_emit_at = self._clock()
        self._emit(pending)

    def _build(self, sample: ProgressSample, now: float) -> JobProgress:
        elapsed = max(now - self._started_at, 0.0)
        total = self._total_frames if self._total_frames is not None else sample.total_frames
        frames = sample.frame
        fps = sample.fps
        if fps is None:
            fps = frames / elapsed if elapsed > 0 else 0.0
        percent = min(frames / total * 100.0, 100.0) if total else 0.0
        return JobProgress(
            frames_processed=frames,
            total_frames=total,
            fps=fps,
            bitrate_kbps=sample.bitrate_kbps or 0.0,
            encoded_seconds=frames / self._source_fps if self._source_fps else 0.0,
            elapsed_seconds=elapsed,
            eta_seconds=compute_eta(elapsed, frames, total),
            percent=percent,
        )


def _search_float(pattern: re.Pattern[str] | None, line: str) -> float | None:
    if pattern is None:
        return None
    match = pattern.search(line)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None
