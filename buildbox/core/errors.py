"""
Error kinds raised across the engine.

Low-level faults (spawn errors, OSError) never leave the execution
layer raw: executors fold them into CommandResults, and steps raise
one of the kinds below. The workflow runner converts every kind into a
failed StepResult; nothing escapes ``run()``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from buildbox.core.models.result import ErrorKind

if TYPE_CHECKING:
    from buildbox.core.models.command import CommandResult


class BuildboxError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.STEP_EXECUTION_FAILURE


class ConfigurationError(BuildboxError):
    """Missing/invalid setting or unreachable engine. Fatal, never retried."""

    kind = ErrorKind.CONFIGURATION_ERROR


class SandboxError(ConfigurationError):
    """The execution sandbox could not be created, started or reached."""


class StepExecutionFailure(BuildboxError):
    """A step's command exited non-zero, timed out, or could not run."""

    def __init__(self, message: str, result: CommandResult | None = None):
        super().__init__(message)
        self.result = result

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        if self.result is not None and self.result.timed_out:
            return ErrorKind.TIMED_OUT
        return ErrorKind.STEP_EXECUTION_FAILURE

    @classmethod
    def from_result(cls, command: str, result: CommandResult) -> StepExecutionFailure:
        if result.timed_out:
            message = f"{command}: {result.error}"
        elif result.error:
            message = f"{command}: {result.error}"
        else:
            message = f"{command} exited with code {result.exit_code}"
        return cls(message, result=result)


class PathTranslationError(BuildboxError, ValueError):
    """A host path lies outside the project root mounted in the sandbox."""

    kind = ErrorKind.PATH_TRANSLATION_ERROR

    def __init__(self, path: str, host_root: str, reason: str = ""):
        self.path = path
        self.host_root = host_root
        detail = reason or f"path is outside the project root {host_root}"
        super().__init__(f"Cannot translate '{path}' into the sandbox: {detail}")
