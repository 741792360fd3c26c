"""Shared test fixtures."""

from __future__ import annotations

import os
import shutil
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from transcoded.config import DaemonSettings, Settings, ToolchainSettings
from transcoded.jobs.models import EncodingSpec, Job
from transcoded.pipeline.toolchain import Toolchain

_FAKE_TOOL = Path(__file__).with_name("fake_tool.py")
_TOOL_NAMES = ("ffmpeg", "ffprobe", "SvtAv1EncApp", "aomenc")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Drop daemon and fake-tool settings inherited from the caller's shell."""
    for name in list(os.environ):
        if name.startswith(("TRANSCODED_", "FAKE_")):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="session")
def fake_bin(tmp_path_factory) -> Path:
    """Directory of shell wrappers that run ``fake_tool.py`` under each tool name."""
    bin_dir = tmp_path_factory.mktemp("fake-bin")
    for name in _TOOL_NAMES:
        wrapper = bin_dir / name
        wrapper.write_text(
            f'#!/bin/sh\nexec "{sys.executable}" "{_FAKE_TOOL}" {name} "$@"\n',
            encoding="utf-8",
        )
        wrapper.chmod(0o755)
    return bin_dir


@pytest.fixture()
def toolchain(fake_bin: Path) -> Toolchain:
    return Toolchain.from_settings(ToolchainSettings(bin_dir=fake_bin))


@pytest.fixture()
def short_dir() -> Iterator[Path]:
    """Data directory short enough for a Unix socket path."""
    path = Path(tempfile.mkdtemp(prefix="tcd-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture()
def daemon_settings(short_dir: Path, fake_bin: Path) -> Settings:
    return Settings(
        data_dir=short_dir,
        daemon=DaemonSettings(
            autosave_interval_seconds=0.2,
            shutdown_grace_seconds=5.0,
            stage_terminate_grace_seconds=1.0,
            progress_interval_seconds=0.0,
        ),
        toolchain=ToolchainSettings(bin_dir=fake_bin),
    )


@pytest.fixture()
def make_job(tmp_path: Path) -> Callable[..., Job]:
    counter = iter(range(1, 10_000))

    def _make(job_id: str | None = None, spec: EncodingSpec | None = None) -> Job:
        index = next(counter)
        source = tmp_path / f"source-{index}.mkv"
        source.write_bytes(b"source")
        return Job(
            job_id=job_id or f"job-{index:04d}",
            source=str(source),
            destination=str(tmp_path / "out" / f"result-{index}.mkv"),
            spec=spec or EncodingSpec(),
        )

    return _make
