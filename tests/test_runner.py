"""
Tests for the workflow runner — fail-fast, events, error conversion.
"""

from __future__ import annotations

import logging

import pytest

from buildbox.adapters.mock import MockExecutor
from buildbox.adapters.registry import ExecutorHandle
from buildbox.core.engine.registry import StepRegistry
from buildbox.core.engine.runner import WorkflowRunner, format_summary
from buildbox.core.engine.tools import ToolChecker, find_checker
from buildbox.core.errors import (
    ConfigurationError,
    PathTranslationError,
    StepExecutionFailure,
)
from buildbox.core.models.command import CommandResult
from buildbox.core.models.result import ErrorKind, WorkflowStatus
from buildbox.core.observability.events import EventBus, EventType

# ── Helpers ──────────────────────────────────────────────────────────


def _recorder(log: list[str], name: str, ok: bool = True):
    def execute() -> bool:
        log.append(name)
        return ok

    return execute


def _raiser(exc: Exception):
    def execute() -> bool:
        raise exc

    return execute


def _runner(registry: StepRegistry, **kwargs) -> WorkflowRunner:
    kwargs.setdefault("events", EventBus())
    return WorkflowRunner(registry, lambda: MockExecutor(), **kwargs)


# ── Happy path ───────────────────────────────────────────────────────


class TestSuccessfulRun:
    def test_all_steps_run_in_order(self):
        log: list[str] = []
        registry = StepRegistry()
        for name in ("A", "B", "C"):
            registry.register(name, _recorder(log, name))

        result = _runner(registry).run()

        assert log == ["A", "B", "C"]
        assert result.status == WorkflowStatus.COMPLETED
        assert result.success
        assert result.exit_code == 0
        assert [r.step_name for r in result.step_results] == ["A", "B", "C"]
        assert all(r.success for r in result.step_results)

    def test_event_sequence(self):
        registry = StepRegistry()
        registry.register("A", lambda: True)
        registry.register("B", lambda: True)
        bus = EventBus()

        _runner(registry, events=bus).run()

        assert bus.types() == [
            "workflow_started",
            "step_started",
            "step_completed",
            "step_started",
            "step_completed",
            "workflow_completed",
        ]
        started = bus.events()[0]
        assert started.data["total_steps"] == 2

    def test_empty_registry_completes(self):
        result = _runner(StepRegistry()).run()
        assert result.status == WorkflowStatus.COMPLETED
        assert result.steps_run == 0
        assert result.exit_code == 0

    def test_registry_frozen_during_run(self):
        registry = StepRegistry()
        errors: list[Exception] = []

        def register_late() -> bool:
            try:
                registry.register("Late", lambda: True)
            except RuntimeError as e:
                errors.append(e)
            return True

        registry.register("A", register_late)
        _runner(registry).run()
        assert len(errors) == 1
        assert len(registry) == 1

    def test_runner_is_single_use(self):
        runner = _runner(StepRegistry())
        runner.run()
        with pytest.raises(RuntimeError, match="already been run"):
            runner.run()


# ── Fail-fast ────────────────────────────────────────────────────────


class TestFailFast:
    def test_third_of_four_fails(self):
        log: list[str] = []
        registry = StepRegistry()
        registry.register("A", _recorder(log, "A"))
        registry.register("B", _recorder(log, "B"))
        registry.register("C", _raiser(StepExecutionFailure("C exited with code 2")))
        registry.register("D", _recorder(log, "D"))
        bus = EventBus()

        runner = _runner(registry, events=bus)
        result = runner.run()

        assert log == ["A", "B"]
        assert result.status == WorkflowStatus.ABORTED
        assert runner.state == WorkflowStatus.ABORTED
        assert result.steps_registered == 4
        assert result.steps_run == 3
        assert result.steps_failed == 1
        assert result.exit_code == 1
        assert result.failed_step is not None
        assert result.failed_step.step_name == "C"
        assert "D" not in [r.step_name for r in result.step_results]
        assert bus.types().count("step_started") == 3
        assert bus.types().count("step_failed") == 1
        assert bus.types()[-1] == "workflow_completed"

    def test_false_return_is_failure(self):
        registry = StepRegistry()
        registry.register("A", lambda: False)
        result = _runner(registry).run()
        step = result.step_results[0]
        assert not step.success
        assert step.error_kind == ErrorKind.STEP_EXECUTION_FAILURE
        assert step.error_message == "Step returned false"


# ── Error conversion ─────────────────────────────────────────────────


class TestErrorConversion:
    def test_unexpected_exception_keeps_traceback(self):
        registry = StepRegistry()
        registry.register("Boom", _raiser(ValueError("bad value")))
        result = _runner(registry).run()
        step = result.step_results[0]
        assert step.error_kind == ErrorKind.STEP_EXECUTION_FAILURE
        assert step.error_message == "ValueError: bad value"
        assert step.traceback is not None
        assert "ValueError" in step.traceback

    def test_timeout_kind_and_excerpt(self):
        timed_out = CommandResult.timeout(5, stderr="compiling...\nstill compiling...")
        registry = StepRegistry()
        registry.register("Slow", _raiser(StepExecutionFailure.from_result("make", timed_out)))
        result = _runner(registry).run()
        step = result.step_results[0]
        assert step.error_kind == ErrorKind.TIMED_OUT
        assert "timed out after 5s" in step.error_message
        assert "still compiling" in step.output_excerpt

    def test_non_zero_exit_kind(self):
        failed = CommandResult.failed(2, stderr="error: missing file")
        registry = StepRegistry()
        registry.register("Make", _raiser(StepExecutionFailure.from_result("make", failed)))
        step = _runner(registry).run().step_results[0]
        assert step.error_kind == ErrorKind.STEP_EXECUTION_FAILURE
        assert step.error_message == "make exited with code 2"
        assert step.output_excerpt == "error: missing file"

    def test_path_translation_error_kind(self):
        registry = StepRegistry()
        registry.register("Copy", _raiser(PathTranslationError("/etc/passwd", "/home/u/app")))
        step = _runner(registry).run().step_results[0]
        assert step.error_kind == ErrorKind.PATH_TRANSLATION_ERROR
        assert "/etc/passwd" in step.error_message

    def test_configuration_error_kind(self):
        registry = StepRegistry()
        registry.register("Deploy", _raiser(ConfigurationError("AZURE_TENANT not set")))
        step = _runner(registry).run().step_results[0]
        assert step.error_kind == ErrorKind.CONFIGURATION_ERROR


# ── Preflight & dry run ──────────────────────────────────────────────


class TestPreflight:
    def test_preflight_runs_before_first_step(self):
        order: list[str] = []
        registry = StepRegistry()
        registry.register("A", _recorder(order, "A"))
        _runner(registry).run(lambda: order.append("preflight"))
        assert order == ["preflight", "A"]

    def test_preflight_failure_aborts_without_steps(self):
        log: list[str] = []
        registry = StepRegistry()
        registry.register("A", _recorder(log, "A"))
        bus = EventBus()

        def preflight():
            raise ConfigurationError("Docker is not available")

        result = _runner(registry, events=bus).run(preflight)
        assert log == []
        assert result.status == WorkflowStatus.ABORTED
        assert result.step_results == []
        assert result.error_kind == ErrorKind.CONFIGURATION_ERROR
        assert result.error_message == "Docker is not available"
        assert result.exit_code == 1
        assert bus.types() == ["workflow_started", "workflow_completed"]

    def test_unexpected_preflight_error_is_configuration_error(self):
        def preflight():
            raise OSError("socket gone")

        result = _runner(StepRegistry()).run(preflight)
        assert result.error_kind == ErrorKind.CONFIGURATION_ERROR
        assert "socket gone" in result.error_message


class TestDryRun:
    def test_nothing_executes(self):
        log: list[str] = []
        preflight_calls: list[int] = []
        registry = StepRegistry()
        registry.register("A", _recorder(log, "A"))
        registry.register("B", _recorder(log, "B"))
        bus = EventBus()

        result = _runner(registry, events=bus, dry_run=True).run(lambda: preflight_calls.append(1))

        assert log == []
        assert preflight_calls == []
        assert result.dry_run
        assert result.status == WorkflowStatus.COMPLETED
        assert bus.types().count("step_skipped") == 2
        assert "none executed" in format_summary(result)


# ── Tool hints ───────────────────────────────────────────────────────


class TestToolHints:
    def test_hint_when_tool_missing(self, caplog):
        registry = StepRegistry()
        registry.register("Azure.Deploy", lambda: False)
        runner = WorkflowRunner(registry, lambda: MockExecutor(available=False))
        with caplog.at_level(logging.WARNING):
            result = runner.run()
        hint = result.step_results[0].tool_hint
        assert hint is not None
        assert "Azure CLI" in hint
        assert "Azure CLI" in caplog.text

    def test_no_hint_when_tool_present(self):
        registry = StepRegistry()
        registry.register("Azure.Deploy", lambda: False)
        result = WorkflowRunner(registry, lambda: MockExecutor(available=True)).run()
        assert result.step_results[0].tool_hint is None

    def test_hints_disabled(self):
        registry = StepRegistry()
        registry.register("Azure.Deploy", lambda: False)
        runner = WorkflowRunner(registry, lambda: MockExecutor(available=False), tool_checkers=())
        assert runner.run().step_results[0].tool_hint is None

    def test_unbound_executor_gives_no_hint(self):
        registry = StepRegistry()
        registry.register("Npm.Build", lambda: False)
        result = WorkflowRunner(registry, ExecutorHandle()).run()
        assert result.step_results[0].tool_hint is None

    def test_find_checker_prefix_is_case_insensitive(self):
        checker = find_checker("bicep.deploy")
        assert checker is not None
        assert checker.binary == "az"
        assert find_checker("Shell.Run") is None

    def test_custom_checker(self):
        checker = ToolChecker(tool="Helm", binary="helm", prefixes=("Helm.",), install="brew install helm")
        assert checker.can_check("Helm.Upgrade")
        assert "brew install helm" in checker.hint()


# ── Summary & events ─────────────────────────────────────────────────


class TestSummary:
    def test_summary_lists_failure_details(self):
        failed = CommandResult.failed(1, stderr="npm ERR! missing script: build")
        registry = StepRegistry()
        registry.register("Shell.Run", lambda: True, context="lint")
        registry.register("Npm.Build", _raiser(StepExecutionFailure.from_result("npm", failed)))
        registry.register("Shell.Run", lambda: True, context="test")
        runner = WorkflowRunner(registry, lambda: MockExecutor(available=False))
        summary = format_summary(runner.run())

        assert "✓ Shell.Run (lint)" in summary
        assert "✗ Npm.Build" in summary
        assert "| npm ERR! missing script: build" in summary
        assert "hint: npm ('npm') is not installed." in summary
        assert "2 run, 1 failed, 1 not run" in summary

    def test_summary_on_preflight_abort(self):
        def preflight():
            raise ConfigurationError("declined")

        summary = format_summary(_runner(StepRegistry()).run(preflight))
        assert "aborted before any step" in summary
        assert "configuration_error: declined" in summary

    def test_completed_event_carries_summary(self):
        bus = EventBus()
        registry = StepRegistry()
        registry.register("A", lambda: True)
        _runner(registry, events=bus).run()
        completed = bus.events()[-1]
        assert completed.type == EventType.WORKFLOW_COMPLETED
        assert completed.data["status"] == "completed"
        assert "1 run, 0 failed" in completed.data["summary"]

    def test_subscriber_failure_does_not_break_run(self):
        bus = EventBus()

        def broken(_event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(broken)
        registry = StepRegistry()
        registry.register("A", lambda: True)
        assert _runner(registry, events=bus).run().success
