"""Runtime configuration for the transcoding daemon."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from transcoded.errors import ConfigError
from transcoded.jobs.models import (
    AudioMode,
    AudioSettings,
    EncoderKind,
    EncoderParams,
    EncodingSpec,
)

SHUTDOWN_POLICIES = ("cancel", "finish")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "transcoded"


@dataclass(slots=True)
class DaemonSettings:
    """Scheduling, persistence and IPC settings."""

    max_concurrent_jobs: int = 1
    socket_path: Path | None = None
    state_file: Path | None = None
    autosave_interval_seconds: float = 10.0
    shutdown_policy: str = "cancel"
    shutdown_grace_seconds: float = 30.0
    stage_terminate_grace_seconds: float = 5.0
    progress_interval_seconds: float = 0.5
    event_buffer_size: int = 256
    log_level: str = "INFO"


@dataclass(slots=True)
class ToolchainSettings:
    """Where the external encoding tools live."""

    bin_dir: Path | None = None
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    svt_av1: str = "SvtAv1EncApp"
    aomenc: str = "aomenc"
    precise_frame_count: bool = False
    probe_timeout_seconds: float = 180.0


@dataclass(slots=True)
class EncodingDefaults:
    """Encoding parameters applied when a request leaves them out."""

    encoder: str = EncoderKind.SVT_AV1.value
    crf: int = 30
    preset: int = 6
    audio_mode: str = AudioMode.OPUS.value
    audio_bitrate_kbps: int = 128
    svt_av1_params: tuple[str, ...] = ("--keyint", "240", "--tune", "3")
    aom_params: tuple[str, ...] = ()

    def to_spec(self) -> EncodingSpec:
        encoder = EncoderKind(self.encoder)
        extra = self.svt_av1_params if encoder is EncoderKind.SVT_AV1 else self.aom_params
        return EncodingSpec(
            encoder=encoder,
            encoder_params=EncoderParams(
                crf=self.crf,
                preset=self.preset,
                extra_params=tuple(extra),
            ),
            audio=AudioSettings(
                mode=AudioMode(self.audio_mode),
                bitrate_kbps=self.audio_bitrate_kbps,
            ),
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    data_dir: Path = field(default_factory=default_data_dir)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    toolchain: ToolchainSettings = field(default_factory=ToolchainSettings)
    encoding: EncodingDefaults = field(default_factory=EncodingDefaults)

    @property
    def socket_path(self) -> Path:
        return self.daemon.socket_path or self.data_dir / "daemon.sock"

    @property
    def state_file(self) -> Path:
        return self.daemon.state_file or self.data_dir / "state.json"

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from ``TRANSCODED_*`` environment variables."""

        resolved_data_dir = data_dir or _env_path("TRANSCODED_DATA_DIR") or default_data_dir()
        return cls(
            data_dir=resolved_data_dir,
            daemon=DaemonSettings(
                max_concurrent_jobs=_env_int("TRANSCODED_MAX_CONCURRENT_JOBS", 1),
                socket_path=_env_path("TRANSCODED_SOCKET_PATH"),
                state_file=_env_path("TRANSCODED_STATE_FILE"),
                autosave_interval_seconds=_env_float(
                    "TRANSCODED_AUTOSAVE_INTERVAL_SECONDS",
                    10.0,
                ),
                shutdown_policy=os.getenv("TRANSCODED_SHUTDOWN_POLICY", "cancel").strip().lower(),
                shutdown_grace_seconds=_env_float("TRANSCODED_SHUTDOWN_GRACE_SECONDS", 30.0),
                stage_terminate_grace_seconds=_env_float(
                    "TRANSCODED_STAGE_TERMINATE_GRACE_SECONDS",
                    5.0,
                ),
                progress_interval_seconds=_env_float(
                    "TRANSCODED_PROGRESS_INTERVAL_SECONDS",
                    0.5,
                ),
                event_buffer_size=_env_int("TRANSCODED_EVENT_BUFFER_SIZE", 256),
                log_level=os.getenv("TRANSCODED_LOG_LEVEL", "INFO").strip().upper(),
            ),
            toolchain=ToolchainSettings(
                bin_dir=_env_path("TRANSCODED_BIN_DIR"),
                ffmpeg=os.getenv("TRANSCODED_FFMPEG", "ffmpeg"),
                ffprobe=os.getenv("TRANSCODED_FFPROBE", "ffprobe"),
                svt_av1=os.getenv("TRANSCODED_SVT_AV1", "SvtAv1EncApp"),
                aomenc=os.getenv("TRANSCODED_AOMENC", "aomenc"),
                precise_frame_count=_env_bool("TRANSCODED_PRECISE_FRAME_COUNT", default=False),
                probe_timeout_seconds=_env_float("TRANSCODED_PROBE_TIMEOUT_SECONDS", 180.0),
            ),
            encoding=EncodingDefaults(
                encoder=os.getenv("TRANSCODED_DEFAULT_ENCODER", "svt-av1").strip().lower(),
                crf=_env_int("TRANSCODED_DEFAULT_CRF", 30),
                preset=_env_int("TRANSCODED_DEFAULT_PRESET", 6),
                audio_mode=os.getenv("TRANSCODED_DEFAULT_AUDIO_MODE", "opus").strip().lower(),
                audio_bitrate_kbps=_env_int("TRANSCODED_DEFAULT_AUDIO_BITRATE", 128),
            ),
        )

    def validate(self) -> None:
        """Raise ``ConfigError`` when a setting is out of range."""

        daemon = self.daemon
        if daemon.max_concurrent_jobs < 1:
            raise ConfigError("TRANSCODED_MAX_CONCURRENT_JOBS must be >= 1.")
        if daemon.autosave_interval_seconds <= 0:
            raise ConfigError("TRANSCODED_AUTOSAVE_INTERVAL_SECONDS must be > 0.")
        if daemon.shutdown_policy not in SHUTDOWN_POLICIES:
            raise ConfigError(
                "TRANSCODED_SHUTDOWN_POLICY must be one of: "
                f"{', '.join(SHUTDOWN_POLICIES)} (got {daemon.shutdown_policy!r}).",
            )
        if daemon.shutdown_grace_seconds < 0:
            raise ConfigError("TRANSCODED_SHUTDOWN_GRACE_SECONDS must be >= 0.")
        if daemon.stage_terminate_grace_seconds < 0:
            raise ConfigError("TRANSCODED_STAGE_TERMINATE_GRACE_SECONDS must be >= 0.")
        if daemon.progress_interval_seconds < 0:
            raise ConfigError("TRANSCODED_PROGRESS_INTERVAL_SECONDS must be >= 0.")
        if daemon.event_buffer_size < 1:
            raise ConfigError("TRANSCODED_EVENT_BUFFER_SIZE must be >= 1.")
        if daemon.log_level not in _LOG_LEVELS:
            raise ConfigError(f"Invalid TRANSCODED_LOG_LEVEL: {daemon.log_level!r}")
        if self.toolchain.probe_timeout_seconds <= 0:
            raise ConfigError("TRANSCODED_PROBE_TIMEOUT_SECONDS must be > 0.")

        try:
            EncoderKind(self.encoding.encoder)
        except ValueError as error:
            raise ConfigError(
                f"Unsupported TRANSCODED_DEFAULT_ENCODER: {self.encoding.encoder!r}",
            ) from error
        try:
            AudioMode(self.encoding.audio_mode)
        except ValueError as error:
            raise ConfigError(
                f"Unsupported TRANSCODED_DEFAULT_AUDIO_MODE: {self.encoding.audio_mode!r}",
            ) from error
        if not 0 <= self.encoding.crf <= 63:
            raise ConfigError("TRANSCODED_DEFAULT_CRF must be within 0..63.")
        if self.encoding.preset < 0:
            raise ConfigError("TRANSCODED_DEFAULT_PRESET must be >= 0.")
        if self.encoding.audio_bitrate_kbps <= 0:
            raise ConfigError("TRANSCODED_DEFAULT_AUDIO_BITRATE must be > 0.")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ConfigError(f"Invalid numeric value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")
