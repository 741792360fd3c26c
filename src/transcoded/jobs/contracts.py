"""JSON-compatible contracts for job records and encoding specs."""

from __future__ import annotations

from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from transcoded.jobs.models import (
    AudioMode,
    AudioSettings,
    EncoderKind,
    EncoderParams,
    EncodingSpec,
    Job,
    JobProgress,
    JobStatus,
)


def spec_to_dict(spec: EncodingSpec) -> dict[str, Any]:
    return {
        "encoder": spec.encoder.value,
        "encoder_params": {
            "crf": spec.encoder_params.crf,
            "preset": spec.encoder_params.preset,
            "threads": spec.encoder_params.threads,
            "extra_params": list(spec.encoder_params.extra_params),
        },
        "audio": {
            "mode": spec.audio.mode.value,
            "bitrate_kbps": spec.audio.bitrate_kbps,
            "codec": spec.audio.codec,
        },
        "audio_streams": _optional_list(spec.audio_streams),
        "subtitle_streams": _optional_list(spec.subtitle_streams),
    }


def spec_from_dict(raw: Any, *, defaults: EncodingSpec | None = None) -> EncodingSpec:
    """Deserialize an encoding spec; missing fields fall back to ``defaults``."""

    if not isinstance(raw, dict):
        raise TypeError("spec must be an object")
    base = defaults or EncodingSpec()

    encoder_raw = raw.get("encoder", base.encoder.value)
    try:
        encoder = EncoderKind(encoder_raw)
    except ValueError as error:
        raise ValueError(f"spec.encoder is not supported: {encoder_raw!r}") from error

    params_raw = raw.get("encoder_params", {})
    if not isinstance(params_raw, dict):
        raise TypeError("spec.encoder_params must be an object")
    encoder_params = EncoderParams(
        crf=_int_field(params_raw, "crf", base.encoder_params.crf, minimum=0, maximum=63),
        preset=_int_field(params_raw, "preset", base.encoder_params.preset, minimum=0),
        threads=_optional_int_field(params_raw, "threads", base.encoder_params.threads),
        extra_params=_str_tuple_field(
            params_raw,
            "extra_params",
            base.encoder_params.extra_params if encoder is base.encoder else (),
        ),
    )

    audio_raw = raw.get("audio", {})
    if not isinstance(audio_raw, dict):
        raise TypeError("spec.audio must be an object")
    mode_raw = audio_raw.get("mode", base.audio.mode.value)
    try:
        mode = AudioMode(mode_raw)
    except ValueError as error:
        raise ValueError(f"spec.audio.mode is not supported: {mode_raw!r}") from error
    codec = audio_raw.get("codec", base.audio.codec)
    if codec is not None and (not isinstance(codec, str) or not codec.strip()):
        raise ValueError("spec.audio.codec must be a non-empty string when provided")
    if mode is AudioMode.CUSTOM and codec is None:
        raise ValueError("spec.audio.codec is required for custom audio mode")
    audio = AudioSettings(
        mode=mode,
        bitrate_kbps=_int_field(audio_raw, "bitrate_kbps", base.audio.bitrate_kbps, minimum=1),
        codec=codec,
    )

    return EncodingSpec(
        encoder=encoder,
        encoder_params=encoder_params,
        audio=audio,
        audio_streams=_stream_selection(raw, "audio_streams", base.audio_streams),
        subtitle_streams=_stream_selection(raw, "subtitle_streams", base.subtitle_streams),
    )


def progress_to_dict(progress: JobProgress) -> dict[str, Any]:
    return asdict(progress)


def progress_from_dict(raw: Any) -> JobProgress:
    if not isinstance(raw, dict):
        raise TypeError("progress must be an object")
    total_frames = raw.get("total_frames")
    eta_seconds = raw.get("eta_seconds")
    try:
        return JobProgress(
            frames_processed=int(raw.get("frames_processed", 0)),
            total_frames=int(total_frames) if total_frames is not None else None,
            fps=float(raw.get("fps", 0.0)),
            bitrate_kbps=float(raw.get("bitrate_kbps", 0.0)),
            encoded_seconds=float(raw.get("encoded_seconds", 0.0)),
            elapsed_seconds=float(raw.get("elapsed_seconds", 0.0)),
            eta_seconds=float(eta_seconds) if eta_seconds is not None else None,
            percent=float(raw.get("percent", 0.0)),
        )
    except (TypeError, ValueError) as error:
        raise ValueError("progress contains non-numeric values") from error


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.job_id,
        "source": job.source,
        "destination": job.destination,
        "spec": spec_to_dict(job.spec),
        "status": job.status.value,
        "enqueued_at": job.enqueued_at.isoformat(),
        "started_at": _optional_iso(job.started_at),
        "finished_at": _optional_iso(job.finished_at),
        "progress": progress_to_dict(job.progress) if job.progress is not None else None,
        "failure_detail": job.failure_detail,
        "retry_of": job.retry_of,
    }


def job_from_dict(raw: Any) -> Job:
    """Deserialize and validate a job record."""

    if not isinstance(raw, dict):
        raise TypeError("job must be an object")
    required = {"id", "source", "destination", "spec", "status", "enqueued_at"}
    missing = [key for key in sorted(required) if key not in raw]
    if missing:
        raise ValueError(f"job record missing required fields: {', '.join(missing)}")

    job_id = raw["id"]
    if not isinstance(job_id, str) or not job_id.strip():
        raise ValueError("job.id must be a non-empty string")
    for key in ("source", "destination"):
        if not isinstance(raw[key], str) or not raw[key]:
            raise ValueError(f"job.{key} must be a non-empty string")
    try:
        status = JobStatus(raw["status"])
    except ValueError as error:
        raise ValueError(f"job.status is not supported: {raw['status']!r}") from error
    for key in ("failure_detail", "retry_of"):
        if raw.get(key) is not None and not isinstance(raw[key], str):
            raise ValueError(f"job.{key} must be a string when provided")

    progress_raw = raw.get("progress")
    return Job(
        job_id=job_id,
        source=raw["source"],
        destination=raw["destination"],
        spec=spec_from_dict(raw["spec"]),
        status=status,
        enqueued_at=_parse_datetime(raw["enqueued_at"], "enqueued_at"),
        started_at=_parse_optional_datetime(raw.get("started_at"), "started_at"),
        finished_at=_parse_optional_datetime(raw.get("finished_at"), "finished_at"),
        progress=progress_from_dict(progress_raw) if progress_raw is not None else None,
        failure_detail=raw.get("failure_detail"),
        retry_of=raw.get("retry_of"),
    )


def _optional_list(values: tuple[int, ...] | None) -> list[int] | None:
    return list(values) if values is not None else None


def _optional_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Any, name: str) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"job.{name} must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as error:
        raise ValueError(f"job.{name} is not a valid ISO-8601 timestamp: {value!r}") from error
    # timestamps without an offset were written as UTC
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_optional_datetime(value: Any, name: str) -> datetime | None:
    if value is None:
        return None
    return _parse_datetime(value, name)


def _int_field(
    raw: dict[str, Any],
    key: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"spec field {key} must be an integer")
    if minimum is not None and value < minimum:
        raise ValueError(f"spec field {key} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValueError(f"spec field {key} must be <= {maximum}")
    return value


def _optional_int_field(raw: dict[str, Any], key: str, default: int | None) -> int | None:
    value = raw.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"spec field {key} must be a positive integer when provided")
    return value


def _str_tuple_field(raw: dict[str, Any], key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return tuple(default)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TypeError(f"spec field {key} must be an array of strings")
    return tuple(value)


def _stream_selection(
    raw: dict[str, Any],
    key: str,
    default: tuple[int, ...] | None,
) -> tuple[int, ...] | None:
    if key not in raw:
        return default
    value = raw[key]
    if value is None:
        return None
    if not isinstance(value, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) and item >= 0 for item in value
    ):
        raise ValueError(f"spec.{key} must be an array of non-negative integers")
    return tuple(value)
