"""
Workflow runner — the interpreter for a registered step plan.

State machine::

    idle ──run()──▶ running ──▶ completed
                          └───▶ aborted

Flow:
    workflow_started → preflight → for each step (in order):
        step_started → execute() → step_completed | step_failed
    → workflow_completed

Fail-fast: the first failed step halts the run. Steps never unwind
past their own StepResult: every exception raised by a step (or by the
preflight) is converted into a result, and nothing escapes ``run()``.
"""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable

from buildbox.adapters.registry import ExecutorFactory
from buildbox.core.engine.registry import StepRegistry
from buildbox.core.engine.tools import DEFAULT_TOOL_CHECKERS, ToolChecker, find_checker
from buildbox.core.errors import BuildboxError, ConfigurationError, StepExecutionFailure
from buildbox.core.models.result import (
    ErrorKind,
    StepResult,
    WorkflowResult,
    WorkflowStatus,
)
from buildbox.core.models.step import Step
from buildbox.core.observability.events import EventBus, EventType

logger = logging.getLogger(__name__)

Preflight = Callable[[], None]


class WorkflowRunner:
    """Execute the steps of one registry, once.

    Args:
        registry: The populated step registry. Frozen when ``run()`` starts.
        executor_factory: Produces the executor for the run. Only used by
            the runner for tool-availability hints; steps capture their
            own handle.
        events: Optional event bus for lifecycle notifications.
        tool_checkers: Checkers consulted when a step fails. ``None``
            uses the defaults; an empty tuple disables hints.
        dry_run: Emit ``step_skipped`` for every step without executing.
        name: Workflow name used in events and the summary.
    """

    def __init__(
        self,
        registry: StepRegistry,
        executor_factory: ExecutorFactory,
        events: EventBus | None = None,
        *,
        tool_checkers: tuple[ToolChecker, ...] | list[ToolChecker] | None = None,
        dry_run: bool = False,
        name: str = "build",
    ):
        self._registry = registry
        self._executor_factory = executor_factory
        self._events = events or EventBus()
        self._tool_checkers = DEFAULT_TOOL_CHECKERS if tool_checkers is None else tuple(tool_checkers)
        self._dry_run = dry_run
        self._name = name
        self._state = WorkflowStatus.IDLE

    @property
    def state(self) -> WorkflowStatus:
        return self._state

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def name(self) -> str:
        return self._name

    # ── Run ─────────────────────────────────────────────────────

    def run(self, preflight: Preflight | None = None) -> WorkflowResult:
        """Execute every step in registration order.

        Args:
            preflight: Called after ``workflow_started`` and before the
                first step. Resolves privileged access and the execution
                sandbox; if it raises, the run aborts with no step results.

        Returns:
            The terminal WorkflowResult. Never raises for step or
            preflight failures.

        Raises:
            RuntimeError: If this runner has already been run.
        """
        if self._state != WorkflowStatus.IDLE:
            raise RuntimeError(f"Workflow '{self._name}' has already been run ({self._state})")

        self._state = WorkflowStatus.RUNNING
        self._registry.freeze()
        steps = self._registry.steps
        total = len(steps)
        start = time.monotonic()

        result = WorkflowResult(
            workflow_name=self._name,
            steps_registered=total,
            dry_run=self._dry_run,
        )

        self._events.publish(
            EventType.WORKFLOW_STARTED,
            key=self._name,
            data={"total_steps": total, "dry_run": self._dry_run},
        )

        if preflight is not None and not self._dry_run:
            try:
                preflight()
            except Exception as e:
                kind = e.kind if isinstance(e, BuildboxError) else ErrorKind.CONFIGURATION_ERROR
                logger.error("Workflow '%s' aborted before any step: %s", self._name, e)
                if not isinstance(e, BuildboxError):
                    logger.debug("Preflight traceback", exc_info=True)
                result.error_kind = kind
                result.error_message = str(e) or type(e).__name__
                return self._finish(result, WorkflowStatus.ABORTED, start)

        status = WorkflowStatus.COMPLETED
        for index, step in enumerate(steps, start=1):
            if self._dry_run:
                self._events.publish(
                    EventType.STEP_SKIPPED,
                    key=step.display_name,
                    data={"index": index, "total": total, "reason": "dry run"},
                )
                continue

            step_result = self._run_step(step, index, total)
            result.step_results.append(step_result)
            if not step_result.success:
                status = WorkflowStatus.ABORTED
                remaining = total - index
                if remaining:
                    logger.info("Fail-fast: %d remaining step(s) not run", remaining)
                break

        return self._finish(result, status, start)

    def _finish(self, result: WorkflowResult, status: WorkflowStatus, start: float) -> WorkflowResult:
        self._state = status
        result.status = status
        result.total_duration = time.monotonic() - start
        self._events.publish(
            EventType.WORKFLOW_COMPLETED,
            key=self._name,
            data={
                "status": str(status),
                "steps_run": result.steps_run,
                "steps_failed": result.steps_failed,
                "steps_registered": result.steps_registered,
                "duration": result.total_duration,
                "error": result.error_message,
                "summary": format_summary(result),
            },
        )
        return result

    # ── Single step ─────────────────────────────────────────────

    def _run_step(self, step: Step, index: int, total: int) -> StepResult:
        self._events.publish(
            EventType.STEP_STARTED,
            key=step.display_name,
            data={"index": index, "total": total, "step": step.name, "context": step.context},
        )
        start = time.monotonic()

        try:
            ok = step.execute()
        except Exception as e:
            step_result = self._failure_from_exception(step, e)
        else:
            if ok:
                step_result = StepResult(step_name=step.name, context=step.context, success=True)
            else:
                step_result = StepResult(
                    step_name=step.name,
                    context=step.context,
                    success=False,
                    error_kind=ErrorKind.STEP_EXECUTION_FAILURE,
                    error_message="Step returned false",
                )

        step_result.duration = time.monotonic() - start

        if step_result.success:
            self._events.publish(
                EventType.STEP_COMPLETED,
                key=step.display_name,
                data={"index": index, "duration": step_result.duration},
            )
            return step_result

        step_result.tool_hint = self._tool_hint(step.name)
        self._events.publish(
            EventType.STEP_FAILED,
            key=step.display_name,
            data={
                "index": index,
                "duration": step_result.duration,
                "error": step_result.error_message,
                "error_kind": str(step_result.error_kind),
            },
        )
        return step_result

    @staticmethod
    def _failure_from_exception(step: Step, exc: Exception) -> StepResult:
        result = StepResult(
            step_name=step.name,
            context=step.context,
            success=False,
            error_message=str(exc) or type(exc).__name__,
        )

        if isinstance(exc, StepExecutionFailure):
            result.error_kind = exc.kind
            if exc.result is not None:
                result.output_excerpt = exc.result.error_excerpt()
        elif isinstance(exc, BuildboxError):
            result.error_kind = exc.kind
        else:
            result.error_kind = ErrorKind.STEP_EXECUTION_FAILURE
            result.error_message = f"{type(exc).__name__}: {exc}"
            result.traceback = "".join(traceback.format_exception(exc))
            logger.debug("Step %s raised:\n%s", step.display_name, result.traceback)

        return result

    def _tool_hint(self, step_name: str) -> str | None:
        """Install hint if the failed step's tool is missing. Never fatal."""
        checker = find_checker(step_name, self._tool_checkers)
        if checker is None:
            return None
        try:
            executor = self._executor_factory()
        except ConfigurationError:
            return None
        if checker.is_available(executor):
            return None
        hint = checker.hint()
        for line in hint.splitlines():
            logger.warning(line)
        return hint


# ── Summary ─────────────────────────────────────────────────────

_MARKS = {True: "✓", False: "✗"}


def format_summary(result: WorkflowResult) -> str:
    """Render every attempted step with status, duration and error excerpt."""
    lines = [f"Workflow '{result.workflow_name}' {result.status}"]

    if result.dry_run:
        lines.append(f"  dry run: {result.steps_registered} step(s) planned, none executed")
        return "\n".join(lines)

    if result.error_message and not result.step_results:
        kind = f"{result.error_kind}: " if result.error_kind else ""
        lines.append(f"  aborted before any step: {kind}{result.error_message}")

    width = max((len(r.display_name) for r in result.step_results), default=0)
    for r in result.step_results:
        lines.append(f"  {_MARKS[r.success]} {r.display_name:<{width}}  {r.duration:6.2f}s")
        if r.success:
            continue
        lines.append(f"      {r.error_kind}: {r.error_message}")
        for excerpt_line in r.output_excerpt.splitlines():
            lines.append(f"      | {excerpt_line}")
        if r.tool_hint:
            for hint_line in r.tool_hint.splitlines():
                lines.append(f"      hint: {hint_line}")

    not_run = result.steps_registered - result.steps_run
    tail = f"  {result.steps_run} run, {result.steps_failed} failed"
    if not_run:
        tail += f", {not_run} not run"
    tail += f" in {result.total_duration:.2f}s"
    lines.append(tail)
    return "\n".join(lines)
