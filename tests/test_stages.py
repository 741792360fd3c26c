from __future__ import annotations

from pathlib import Path

import allure
import pytest

from transcoded.jobs.models import (
    AudioMode,
    AudioSettings,
    EncoderKind,
    EncoderParams,
    EncodingSpec,
    Job,
)
from transcoded.pipeline.probe import MediaInfo
from transcoded.pipeline.stages import (
    AomEncodeStage,
    AudioExtractStage,
    DemuxStage,
    MuxStage,
    StageKind,
    StreamMode,
    SvtAv1EncodeStage,
    build_pipeline_plan,
)
from transcoded.pipeline.toolchain import Toolchain

pytestmark = [
    allure.epic("Pipeline"),
    allure.feature("Stage Contracts"),
]

_TOOLS = Toolchain(ffmpeg="ffmpeg", ffprobe="ffprobe", svt_av1="SvtAv1EncApp", aomenc="aomenc")


def _media(audio: int = 1, subtitles: int = 0) -> MediaInfo:
    return MediaInfo(
        duration_seconds=10.0,
        fps=24.0,
        width=1920,
        height=1080,
        frame_count=240,
        audio_streams=audio,
        subtitle_streams=subtitles,
    )


def _job(spec: EncodingSpec | None = None) -> Job:
    return Job(job_id="j1", source="/in/movie.mkv", destination="/out/movie.mkv", spec=spec or EncodingSpec())


def test_demux_writes_y4m_to_stdout() -> None:
    stage = DemuxStage(ffmpeg="ffmpeg", source="/in/movie.mkv")
    argv = stage.build_invocation()

    assert argv[:2] == ["ffmpeg", "-nostats"]
    assert argv[argv.index("-f") + 1] == "yuv4mpegpipe"
    assert argv[-1] == "-"
    assert stage.stdout is StreamMode.PIPE
    assert stage.outputs() == ()


def test_svt_av1_invocation_maps_params() -> None:
    stage = SvtAv1EncodeStage(
        executable="SvtAv1EncApp",
        output=Path("/work/video.ivf"),
        params=EncoderParams(crf=28, preset=4, threads=8, extra_params=("--tune", "0")),
    )

    assert stage.build_invocation() == [
        "SvtAv1EncApp",
        "-i",
        "stdin",
        "--crf",
        "28",
        "--preset",
        "4",
        "--lp",
        "8",
        "--progress",
        "2",
        "-b",
        "/work/video.ivf",
        "--tune",
        "0",
    ]
    assert stage.kind is StageKind.VIDEO_ENCODE
    assert stage.stdin is StreamMode.PIPE


def test_aomenc_invocation_maps_crf_to_cq_level() -> None:
    stage = AomEncodeStage(
        executable="aomenc",
        output=Path("/work/video.ivf"),
        params=EncoderParams(crf=30, preset=6),
    )
    argv = stage.build_invocation()

    assert argv[:2] == ["aomenc", "-"]
    assert argv[argv.index("--cq-level") + 1] == "30"
    assert argv[argv.index("--cpu-used") + 1] == "6"
    assert "--threads" not in argv
    assert argv[-2:] == ["-o", "/work/video.ivf"]


def test_encoder_parses_its_own_progress_format() -> None:
    svt = SvtAv1EncodeStage(executable="x", output=Path("o"), params=EncoderParams())
    aom = AomEncodeStage(executable="x", output=Path("o"), params=EncoderParams())
    line = "Encoding frame    12 812.50 kbps 24.00 fps"

    sample = svt.parse_progress_line(line)
    assert sample is not None
    assert sample.frame == 12
    assert aom.parse_progress_line(line) is None
    assert DemuxStage(ffmpeg="ffmpeg", source="s").parse_progress_line(line) is None


def test_exit_codes_are_judged_by_the_stage() -> None:
    stage = MuxStage(
        ffmpeg="ffmpeg",
        video=Path("v.ivf"),
        destination=Path("out.mkv"),
        success_codes=frozenset({0, 1}),
    )

    assert stage.interpret_exit_code(0)
    assert stage.interpret_exit_code(1)
    assert not stage.interpret_exit_code(2)
    assert not DemuxStage(ffmpeg="ffmpeg", source="s").interpret_exit_code(1)


@pytest.mark.parametrize(
    ("audio", "streams", "expected_tail"),
    [
        (AudioSettings(), None, ["-map", "0:a", "-c:a", "libopus", "-b:a", "128k"]),
        (AudioSettings(mode=AudioMode.COPY), (1,), ["-map", "0:a:1", "-c:a", "copy"]),
        (
            AudioSettings(mode=AudioMode.CUSTOM, bitrate_kbps=192, codec="aac"),
            (0, 2),
            ["-map", "0:a:0", "-map", "0:a:2", "-c:a", "aac", "-b:a", "192k"],
        ),
    ],
)
def test_audio_extract_modes(
    audio: AudioSettings,
    streams: tuple[int, ...] | None,
    expected_tail: list[str],
) -> None:
    stage = AudioExtractStage(
        ffmpeg="ffmpeg",
        source="/in/movie.mkv",
        output=Path("/work/audio.mka"),
        audio=audio,
        streams=streams,
    )
    argv = stage.build_invocation()

    assert argv[argv.index("-vn") + 1 : -1] == expected_tail
    assert argv[-1] == "/work/audio.mka"


def test_custom_audio_without_codec_cannot_build() -> None:
    stage = AudioExtractStage(
        ffmpeg="ffmpeg",
        source="s",
        output=Path("a.mka"),
        audio=AudioSettings(mode=AudioMode.CUSTOM),
    )
    with pytest.raises(ValueError, match="requires a codec"):
        stage.build_invocation()


def test_mux_maps_video_audio_and_selected_subtitles() -> None:
    stage = MuxStage(
        ffmpeg="ffmpeg",
        video=Path("/work/video.ivf"),
        destination=Path("/out/movie.mkv"),
        audio=Path("/work/audio.mka"),
        subtitle_source="/in/movie.mkv",
        subtitle_streams=(1,),
    )

    assert stage.build_invocation() == [
        "ffmpeg",
        "-y",
        "-nostats",
        "-loglevel",
        "error",
        "-i",
        "/work/video.ivf",
        "-i",
        "/work/audio.mka",
        "-i",
        "/in/movie.mkv",
        "-map",
        "0:v:0",
        "-map",
        "1:a?",
        "-map",
        "2:s:1",
        "-c",
        "copy",
        "/out/movie.mkv",
    ]


def test_plan_pipes_demux_into_encoder_and_runs_audio_alongside(tmp_path: Path) -> None:
    plan = build_pipeline_plan(_job(), _TOOLS, _media(audio=2), tmp_path)

    first, second = plan.groups
    assert [stage.name for stage in first] == ["svt-av1", "demux", "audio"]
    assert [stage.name for stage in second] == ["mux"]
    assert plan.pipes == [("demux", "svt-av1")]
    assert plan.primary == "svt-av1"
    assert plan.intermediates == [tmp_path / "video.ivf", tmp_path / "audio.mka"]
    assert plan.destination == Path("/out/movie.mkv")


def test_plan_skips_audio_when_source_has_none_or_selection_is_empty(tmp_path: Path) -> None:
    silent = build_pipeline_plan(_job(), _TOOLS, _media(audio=0), tmp_path)
    deselected = build_pipeline_plan(
        _job(EncodingSpec(audio_streams=())),
        _TOOLS,
        _media(audio=2),
        tmp_path,
    )

    for plan in (silent, deselected):
        assert [stage.name for stage in plan.groups[0]] == ["svt-av1", "demux"]
        mux = plan.groups[1][0]
        assert isinstance(mux, MuxStage)
        assert mux.audio is None


def test_plan_uses_aomenc_and_carries_subtitles(tmp_path: Path) -> None:
    plan = build_pipeline_plan(
        _job(EncodingSpec(encoder=EncoderKind.AOM)),
        _TOOLS,
        _media(audio=0, subtitles=2),
        tmp_path,
    )

    assert plan.primary == "aomenc"
    mux = plan.groups[1][0]
    assert isinstance(mux, MuxStage)
    assert mux.subtitle_source == "/in/movie.mkv"
    assert "1:s?" in mux.build_invocation()
