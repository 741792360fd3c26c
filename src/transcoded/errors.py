"""Error taxonomy shared by the daemon components."""

from __future__ import annotations


class ConfigError(ValueError):
    """Invalid startup configuration; the daemon must not start."""


class SpawnError(RuntimeError):
    """A stage executable is missing or cannot be started."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"cannot start {stage}: {message}")
        self.stage = stage


class StageFailure(RuntimeError):
    """A stage exited with a code its contract maps to failure."""

    def __init__(self, stage: str, exit_code: int | None, diagnostic: str = "") -> None:
        message = f"{stage} failed with exit code {exit_code}"
        if diagnostic:
            message = f"{message}: {diagnostic}"
        super().__init__(message)
        self.stage = stage
        self.exit_code = exit_code
        self.diagnostic = diagnostic


class PipelineIOError(RuntimeError):
    """Pipe or file failure while a pipeline is running."""


class PersistenceError(RuntimeError):
    """Snapshot could not be written or loaded."""
