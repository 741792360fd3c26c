"""Stage contracts: one external program invocation each, and the job pipeline plan."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from transcoded.jobs.models import AudioMode, AudioSettings, EncoderKind, EncoderParams, Job
from transcoded.pipeline.probe import MediaInfo
from transcoded.pipeline.progress import (
    AOMENC_GRAMMAR,
    SVT_AV1_GRAMMAR,
    ProgressGrammar,
    ProgressSample,
)
from transcoded.pipeline.toolchain import Toolchain

VIDEO_INTERMEDIATE = "video.ivf"
AUDIO_INTERMEDIATE = "audio.mka"


class StageKind(str, Enum):
    DEMUX = "demux"
    VIDEO_ENCODE = "video-encode"
    AUDIO_EXTRACT = "audio-extract"
    MUX = "mux"


class StreamMode(str, Enum):
    """How a stage's stdin or stdout is wired."""

    PIPE = "pipe"
    NULL = "null"


class Stage(Protocol):
    """Capabilities every stage variant provides to the executor."""

    name: str
    kind: StageKind
    stdin: StreamMode
    stdout: StreamMode

    def build_invocation(self) -> list[str]:
        """Return the full argv, executable first."""

    def interpret_exit_code(self, code: int) -> bool:
        """True when ``code`` means the stage succeeded."""

    def parse_progress_line(self, line: str) -> ProgressSample | None:
        """Parse one line of live output; ``None`` when it carries no progress."""

    def outputs(self) -> tuple[Path, ...]:
        """Files this stage writes."""


class _StageBase:
    __slots__ = ()

    success_codes: frozenset[int]
    grammar: ProgressGrammar | None = None

    def interpret_exit_code(self, code: int) -> bool:
        return code in self.success_codes

    def parse_progress_line(self, line: str) -> ProgressSample | None:
        if self.grammar is None:
            return None
        return self.grammar.parse(line)


@dataclass(slots=True, frozen=True)
class DemuxStage(_StageBase):
    """Decode the source video to a raw y4m stream on stdout."""

    ffmpeg: str
    source: str
    name: str = "demux"
    success_codes: frozenset[int] = frozenset({0})
    kind = StageKind.DEMUX
    stdin = StreamMode.NULL
    stdout = StreamMode.PIPE

    def build_invocation(self) -> list[str]:
        return [
            self.ffmpeg,
            "-nostats",
            "-loglevel",
            "error",
            "-i",
            self.source,
            "-f",
            "yuv4mpegpipe",
            "-pix_fmt",
            "yuv420p10le",
            "-strict",
            "-1",
            "-",
        ]

    def outputs(self) -> tuple[Path, ...]:
        return ()


@dataclass(slots=True, frozen=True)
class SvtAv1EncodeStage(_StageBase):
    """Encode a y4m stream from stdin with SvtAv1EncApp into an IVF file."""

    executable: str
    output: Path
    params: EncoderParams
    name: str = "svt-av1"
    success_codes: frozenset[int] = frozenset({0})
    grammar: ProgressGrammar | None = SVT_AV1_GRAMMAR
    kind = StageKind.VIDEO_ENCODE
    stdin = StreamMode.PIPE
    stdout = StreamMode.NULL

    def build_invocation(self) -> list[str]:
        argv = [
            self.executable,
            "-i",
            "stdin",
            "--crf",
            str(self.params.crf),
            "--preset",
            str(self.params.preset),
        ]
        if self.params.threads is not None:
            argv.extend(["--lp", str(self.params.threads)])
        argv.extend(["--progress", "2", "-b", str(self.output)])
        argv.extend(self.params.extra_params)
        return argv

    def outputs(self) -> tuple[Path, ...]:
        return (self.output,)


@dataclass(slots=True, frozen=True)
class AomEncodeStage(_StageBase):
    """Encode a y4m stream from stdin with aomenc into an IVF file."""

    executable: str
    output: Path
    params: EncoderParams
    name: str = "aomenc"
    success_codes: frozenset[int] = frozenset({0})
    grammar: ProgressGrammar | None = AOMENC_GRAMMAR
    kind = StageKind.VIDEO_ENCODE
    stdin = StreamMode.PIPE
    stdout = StreamMode.NULL

    def build_invocation(self) -> list[str]:
        argv = [
            self.executable,
            "-",
            "--cq-level",
            str(self.params.crf),
            "--cpu-used",
            str(self.params.preset),
            "--end-usage=q",
        ]
        if self.params.threads is not None:
            argv.extend(["--threads", str(self.params.threads)])
        argv.extend(["--ivf", "-o", str(self.output)])
        argv.extend(self.params.extra_params)
        return argv

    def outputs(self) -> tuple[Path, ...]:
        return (self.output,)


@dataclass(slots=True, frozen=True)
class AudioExtractStage(_StageBase):
    """Write the selected audio tracks to an intermediate Matroska audio file."""

    ffmpeg: str
    source: str
    output: Path
    audio: AudioSettings
    streams: tuple[int, ...] | None = None
    name: str = "audio"
    success_codes: frozenset[int] = frozenset({0})
    kind = StageKind.AUDIO_EXTRACT
    stdin = StreamMode.NULL
    stdout = StreamMode.NULL

    def build_invocation(self) -> list[str]:
        argv = [
            self.ffmpeg,
            "-y",
            "-nostats",
            "-loglevel",
            "error",
            "-i",
            self.source,
            "-vn",
        ]
        if self.streams is None:
            argv.extend(["-map", "0:a"])
        else:
            for index in self.streams:
                argv.extend(["-map", f"0:a:{index}"])

        if self.audio.mode is AudioMode.COPY:
            argv.extend(["-c:a", "copy"])
        else:
            codec = "libopus" if self.audio.mode is AudioMode.OPUS else self.audio.codec
            if not codec:
                raise ValueError("custom audio mode requires a codec")
            argv.extend(["-c:a", codec, "-b:a", f"{self.audio.bitrate_kbps}k"])
        argv.append(str(self.output))
        return argv

    def outputs(self) -> tuple[Path, ...]:
        return (self.output,)


@dataclass(slots=True, frozen=True)
class MuxStage(_StageBase):
    """Combine encoded video, audio and source subtitles into the destination."""

    ffmpeg: str
    video: Path
    destination: Path
    audio: Path | None = None
    subtitle_source: str | None = None
    subtitle_streams: tuple[int, ...] | None = None
    name: str = "mux"
    success_codes: frozenset[int] = frozenset({0})
    kind = StageKind.MUX
    stdin = StreamMode.NULL
    stdout = StreamMode.NULL

    def build_invocation(self) -> list[str]:
        argv = [self.ffmpeg, "-y", "-nostats", "-loglevel", "error", "-i", str(self.video)]
        if self.audio is not None:
            argv.extend(["-i", str(self.audio)])
        if self.subtitle_source is not None:
            argv.extend(["-i", self.subtitle_source])

        argv.extend(["-map", "0:v:0"])
        if self.audio is not None:
            argv.extend(["-map", "1:a?"])
        if self.subtitle_source is not None:
            input_index = 2 if self.audio is not None else 1
            if self.subtitle_streams is None:
                argv.extend(["-map", f"{input_index}:s?"])
            else:
                for index in self.subtitle_streams:
                    argv.extend(["-map", f"{input_index}:s:{index}"])
        argv.extend(["-c", "copy", str(self.destination)])
        return argv

    def outputs(self) -> tuple[Path, ...]:
        return (self.destination,)


EncoderStageFactory = Callable[[Toolchain, Path, EncoderParams], Stage]

ENCODER_STAGES: dict[EncoderKind, EncoderStageFactory] = {
    EncoderKind.SVT_AV1: lambda toolchain, output, params: SvtAv1EncodeStage(
        executable=toolchain.svt_av1,
        output=output,
        params=params,
    ),
    EncoderKind.AOM: lambda toolchain, output, params: AomEncodeStage(
        executable=toolchain.aomenc,
        output=output,
        params=params,
    ),
}


@dataclass(slots=True)
class PipelinePlan:
    """Stage graph of one job.

    Stages inside a group start together, in list order; a group starts only after
    every stage of the previous group has succeeded. ``pipes`` connects a producer's
    stdout to a consumer's stdin, both in the same group.
    """

    groups: list[list[Stage]]
    pipes: list[tuple[str, str]] = field(default_factory=list)
    primary: str | None = None
    intermediates: list[Path] = field(default_factory=list)
    destination: Path | None = None


def build_pipeline_plan(
    job: Job,
    toolchain: Toolchain,
    media: MediaInfo,
    workdir: Path,
) -> PipelinePlan:
    """Build demux -> encode (piped) with parallel audio extraction, then mux."""

    spec = job.spec
    video_path = workdir / VIDEO_INTERMEDIATE
    encoder = ENCODER_STAGES[spec.encoder](toolchain, video_path, spec.encoder_params)
    demux = DemuxStage(ffmpeg=toolchain.ffmpeg, source=job.source)

    # consumer before producer so the pipe always has a reader
    first_group: list[Stage] = [encoder, demux]
    intermediates = list(encoder.outputs())

    audio_path: Path | None = None
    if media.audio_streams > 0 and spec.audio_streams != ():
        audio_path = workdir / AUDIO_INTERMEDIATE
        audio_stage = AudioExtractStage(
            ffmpeg=toolchain.ffmpeg,
            source=job.source,
            output=audio_path,
            audio=spec.audio,
            streams=spec.audio_streams,
        )
        first_group.append(audio_stage)
        intermediates.extend(audio_stage.outputs())

    with_subtitles = media.subtitle_streams > 0 and spec.subtitle_streams != ()
    destination = Path(job.destination)
    mux = MuxStage(
        ffmpeg=toolchain.ffmpeg,
        video=video_path,
        destination=destination,
        audio=audio_path,
        subtitle_source=job.source if with_subtitles else None,
        subtitle_streams=spec.subtitle_streams if with_subtitles else None,
    )
    return PipelinePlan(
        groups=[first_group, [mux]],
        pipes=[(demux.name, encoder.name)],
        primary=encoder.name,
        intermediates=intermediates,
        destination=destination,
    )
