"""CLI entrypoint for transcoded."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from transcoded import __version__
from transcoded.controllers import (
    AddJobCommand,
    DaemonCommand,
    DaemonUnavailableError,
    JobIdCommand,
    ListJobsCommand,
    TranscodeCliController,
    WatchCommand,
)
from transcoded.errors import ConfigError
from transcoded.ipc.client import IpcRequestError
from transcoded.ipc.server import DaemonAlreadyRunningError
from transcoded.jobs.models import AudioMode, EncoderKind

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TranscodeCliController()
T = TypeVar("T")

_DATA_DIR_OPTION = click.option(
    "--data-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Daemon data directory (socket, state file, work files).",
)


@click.group()
@click.version_option(version=__version__, prog_name="transcoded")
def transcoded() -> None:
    """Local video transcoding daemon and its client commands."""


@transcoded.command("daemon")
@_DATA_DIR_OPTION
@click.option(
    "--max-jobs",
    "max_concurrent_jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent job slots (overrides TRANSCODED_MAX_CONCURRENT_JOBS).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Root log level (overrides TRANSCODED_LOG_LEVEL).",
)
def daemon(data_dir: Path | None, max_concurrent_jobs: int | None, log_level: str | None) -> None:
    """Run the daemon in the foreground until SIGINT, SIGTERM or `transcoded shutdown`.

    Shutdown policy is read from `TRANSCODED_SHUTDOWN_POLICY`.
    """

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_daemon(
                DaemonCommand(
                    data_dir=data_dir,
                    max_concurrent_jobs=max_concurrent_jobs,
                    log_level=log_level,
                ),
            ),
        ),
    )


@transcoded.command("add")
@_DATA_DIR_OPTION
@click.argument("source", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.argument("destination", type=click.Path(path_type=Path, dir_okay=False))
@click.option(
    "--encoder",
    type=click.Choice([kind.value for kind in EncoderKind]),
    default=None,
    help="Video encoder.",
)
@click.option("--crf", type=click.IntRange(min=0, max=63), default=None, help="Quality (CRF).")
@click.option("--preset", type=click.IntRange(min=0), default=None, help="Speed preset.")
@click.option("--threads", type=click.IntRange(min=1), default=None, help="Encoder threads.")
@click.option(
    "--audio-mode",
    type=click.Choice([mode.value for mode in AudioMode]),
    default=None,
    help="Audio handling.",
)
@click.option(
    "--audio-bitrate",
    type=click.IntRange(min=1),
    default=None,
    help="Audio bitrate in kbps.",
)
@click.option("--audio-codec", default=None, help="ffmpeg audio codec for --audio-mode custom.")
def add(  # noqa: PLR0913
    data_dir: Path | None,
    source: Path,
    destination: Path,
    encoder: str | None,
    crf: int | None,
    preset: int | None,
    threads: int | None,
    audio_mode: str | None,
    audio_bitrate: int | None,
    audio_codec: str | None,
) -> None:
    """Enqueue SOURCE for transcoding into DESTINATION."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.add(
                AddJobCommand(
                    data_dir=data_dir,
                    source=source,
                    destination=destination,
                    encoder=encoder,
                    crf=crf,
                    preset=preset,
                    threads=threads,
                    audio_mode=audio_mode,
                    audio_bitrate=audio_bitrate,
                    audio_codec=audio_codec,
                ),
            ),
        ),
    )


@transcoded.command("cancel")
@_DATA_DIR_OPTION
@click.argument("job_id")
def cancel(data_dir: Path | None, job_id: str) -> None:
    """Cancel a queued or active job."""

    _emit_lines(_guarded(lambda: CONTROLLER.cancel(JobIdCommand(data_dir=data_dir, job_id=job_id))))


@transcoded.command("retry")
@_DATA_DIR_OPTION
@click.argument("job_id")
def retry(data_dir: Path | None, job_id: str) -> None:
    """Re-enqueue a failed or cancelled job under a new id."""

    _emit_lines(_guarded(lambda: CONTROLLER.retry(JobIdCommand(data_dir=data_dir, job_id=job_id))))


@transcoded.command("show")
@_DATA_DIR_OPTION
@click.argument("job_id")
def show(data_dir: Path | None, job_id: str) -> None:
    """Show one job in detail."""

    _emit_lines(_guarded(lambda: CONTROLLER.show(JobIdCommand(data_dir=data_dir, job_id=job_id))))


@transcoded.command("queue")
@_DATA_DIR_OPTION
def queue(data_dir: Path | None) -> None:
    """List queued jobs in admission order."""

    _list(data_dir, "queue")


@transcoded.command("active")
@_DATA_DIR_OPTION
def active(data_dir: Path | None) -> None:
    """List running jobs with progress."""

    _list(data_dir, "active")


@transcoded.command("history")
@_DATA_DIR_OPTION
def history(data_dir: Path | None) -> None:
    """List finished jobs."""

    _list(data_dir, "history")


@transcoded.command("history-delete")
@_DATA_DIR_OPTION
@click.argument("job_id")
def history_delete(data_dir: Path | None, job_id: str) -> None:
    """Delete one history entry."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.delete_history_entry(JobIdCommand(data_dir=data_dir, job_id=job_id)),
        ),
    )


@transcoded.command("history-clear")
@_DATA_DIR_OPTION
def history_clear(data_dir: Path | None) -> None:
    """Delete every history entry."""

    _emit_lines(_guarded(lambda: CONTROLLER.clear_history(data_dir)))


@transcoded.command("watch")
@_DATA_DIR_OPTION
@click.option(
    "--max-events",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many events (the initial snapshot counts as one).",
)
def watch(data_dir: Path | None, max_events: int | None) -> None:
    """Print the snapshot and then live events until interrupted."""

    try:
        _guarded(
            lambda: CONTROLLER.watch(
                WatchCommand(data_dir=data_dir, max_events=max_events),
                click.echo,
            ),
        )
    except KeyboardInterrupt:
        return


@transcoded.command("shutdown")
@_DATA_DIR_OPTION
def shutdown(data_dir: Path | None) -> None:
    """Ask the daemon to stop."""

    _emit_lines(_guarded(lambda: CONTROLLER.shutdown(data_dir)))


def _list(data_dir: Path | None, section: str) -> None:
    _emit_lines(
        _guarded(lambda: CONTROLLER.list_jobs(ListJobsCommand(data_dir=data_dir, section=section))),
    )


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except (ConfigError, DaemonUnavailableError, DaemonAlreadyRunningError) as error:
        raise click.ClickException(str(error)) from error
    except IpcRequestError as error:
        raise click.ClickException(f"Daemon refused the request ({error.kind}): {error.message}") from error
    except ConnectionError as error:
        raise click.ClickException(f"Lost connection to the daemon: {error}") from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    transcoded()
