"""Resolved locations of the external encoding tools."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from transcoded.config import ToolchainSettings


@dataclass(slots=True, frozen=True)
class Toolchain:
    """Executable paths used to build stage command lines."""

    ffmpeg: str
    ffprobe: str
    svt_av1: str
    aomenc: str

    @classmethod
    def from_settings(cls, settings: ToolchainSettings) -> Toolchain:
        return cls(
            ffmpeg=_resolve(settings.ffmpeg, settings.bin_dir),
            ffprobe=_resolve(settings.ffprobe, settings.bin_dir),
            svt_av1=_resolve(settings.svt_av1, settings.bin_dir),
            aomenc=_resolve(settings.aomenc, settings.bin_dir),
        )

    def missing(self) -> list[str]:
        """Names of tools that cannot be found or executed."""

        missing: list[str] = []
        for name in ("ffmpeg", "ffprobe", "svt_av1", "aomenc"):
            executable = getattr(self, name)
            if shutil.which(executable) is None:
                missing.append(name)
        return missing


def _resolve(executable: str, bin_dir: Path | None) -> str:
    if bin_dir is None or os.sep in executable:
        return executable
    suffix = ".exe" if os.name == "nt" and not executable.endswith(".exe") else ""
    return str(bin_dir / f"{executable}{suffix}")
