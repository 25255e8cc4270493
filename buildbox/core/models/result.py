"""
Result models — per-step and per-run outcomes.

A StepResult is created exactly once per attempted step, in execution
order. A WorkflowResult is the terminal snapshot of one ``run()``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ErrorKind(StrEnum):
    """Failure categories surfaced to users."""

    CONFIGURATION_ERROR = "configuration_error"
    STEP_EXECUTION_FAILURE = "step_execution_failure"
    TIMED_OUT = "timed_out"
    PATH_TRANSLATION_ERROR = "path_translation_error"


class WorkflowStatus(StrEnum):
    """Runner state machine: idle → running → completed | aborted."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class StepResult(BaseModel):
    """Outcome of one attempted step."""

    step_name: str
    context: str | None = None
    success: bool
    duration: float = 0.0                  # seconds
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    output_excerpt: str = ""               # tail of captured error output
    traceback: str | None = None           # unexpected exceptions only
    tool_hint: str | None = None

    @property
    def display_name(self) -> str:
        if self.context:
            return f"{self.step_name} ({self.context})"
        return self.step_name


class WorkflowResult(BaseModel):
    """Terminal snapshot of one workflow run."""

    workflow_name: str = "build"
    status: WorkflowStatus = WorkflowStatus.COMPLETED
    step_results: list[StepResult] = Field(default_factory=list)
    steps_registered: int = 0
    total_duration: float = 0.0            # seconds
    started_at: str = Field(default_factory=_now_iso)
    dry_run: bool = False

    # Set when the run aborted before any step ran
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @property
    def steps_run(self) -> int:
        """Steps actually attempted (fewer than registered after fail-fast)."""
        return len(self.step_results)

    @property
    def steps_failed(self) -> int:
        return sum(1 for r in self.step_results if not r.success)

    @property
    def success(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED and self.steps_failed == 0

    @property
    def exit_code(self) -> int:
        """Aggregate process exit status: non-zero on any failure or abort."""
        return 0 if self.success else 1

    @property
    def failed_step(self) -> StepResult | None:
        for r in self.step_results:
            if not r.success:
                return r
        return None

    def to_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["steps_run"] = self.steps_run
        data["steps_failed"] = self.steps_failed
        data["success"] = self.success
        return data
