"""
Command models — the execution contract between steps and executors.

CommandOptions describe how to run one external command. CommandResult
is what every executor returns. Executors NEVER raise from execute():
spawn errors and timeouts are captured in the result.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# Default deadline for a single command: 5 minutes
DEFAULT_TIMEOUT_SECONDS = 300.0


class CommandOutcome(StrEnum):
    """How a command invocation ended."""

    OK = "ok"
    FAILED = "failed"          # process ran and exited non-zero
    TIMED_OUT = "timed_out"    # deadline elapsed, process killed
    ERROR = "error"            # could not be spawned / I/O failure


class CommandOptions(BaseModel):
    """Options for a single command invocation.

    ``environment`` is added to the inherited process environment,
    it never replaces it. ``timeout`` is in seconds; ``None`` waits
    indefinitely.
    """

    working_directory: str | None = None
    timeout: float | None = DEFAULT_TIMEOUT_SECONDS
    environment: dict[str, str] = Field(default_factory=dict)
    suppress_output: bool = False   # internal queries: no logging


class CommandResult(BaseModel):
    """Result of executing one command."""

    exit_code: int
    outcome: CommandOutcome = CommandOutcome.OK
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    duration_ms: int = 0

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def success(self) -> bool:
        """Whether the command exited cleanly with code 0."""
        return self.outcome == CommandOutcome.OK

    @property
    def timed_out(self) -> bool:
        return self.outcome == CommandOutcome.TIMED_OUT

    def error_excerpt(self, max_lines: int = 10) -> str:
        """Tail of the most useful error text, for summaries."""
        text = self.stderr.strip() or self.error or self.stdout.strip()
        if not text:
            return ""
        lines = text.splitlines()
        return "\n".join(lines[-max_lines:])

    @classmethod
    def ok(cls, stdout: str = "", **kwargs: Any) -> CommandResult:
        """Create a success result."""
        return cls(exit_code=0, outcome=CommandOutcome.OK, stdout=stdout, **kwargs)

    @classmethod
    def failed(
        cls,
        exit_code: int,
        stderr: str = "",
        **kwargs: Any,
    ) -> CommandResult:
        """Create a non-zero exit result."""
        return cls(
            exit_code=exit_code,
            outcome=CommandOutcome.FAILED,
            stderr=stderr,
            **kwargs,
        )

    @classmethod
    def timeout(cls, seconds: float, **kwargs: Any) -> CommandResult:
        """Create a timed-out result. Never confused with a non-zero exit."""
        return cls(
            exit_code=-1,
            outcome=CommandOutcome.TIMED_OUT,
            error=f"Command timed out after {seconds:g}s",
            **kwargs,
        )

    @classmethod
    def spawn_error(cls, error: str, **kwargs: Any) -> CommandResult:
        """Create a result for a command that could not be run at all."""
        return cls(
            exit_code=-1,
            outcome=CommandOutcome.ERROR,
            error=error,
            **kwargs,
        )
