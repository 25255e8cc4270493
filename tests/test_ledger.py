"""
Tests for the run ledger — append-only NDJSON run history.
"""

from __future__ import annotations

import json
from pathlib import Path

from buildbox.core.models.result import ErrorKind, StepResult, WorkflowResult, WorkflowStatus
from buildbox.core.persistence.ledger import LedgerEntry, RunLedger


def _aborted_result() -> WorkflowResult:
    return WorkflowResult(
        workflow_name="app",
        status=WorkflowStatus.ABORTED,
        steps_registered=3,
        total_duration=1.25,
        step_results=[
            StepResult(step_name="Npm.Install", success=True),
            StepResult(
                step_name="Npm.Build",
                context="web",
                success=False,
                error_kind=ErrorKind.STEP_EXECUTION_FAILURE,
                error_message="npm exited with code 1",
            ),
        ],
    )


class TestLedgerEntry:
    def test_from_result(self):
        entry = LedgerEntry.from_result(_aborted_result(), mode="container", image="node:20")
        assert entry.workflow == "app"
        assert entry.status == "aborted"
        assert entry.steps_registered == 3
        assert entry.steps_run == 2
        assert entry.steps_failed == 1
        assert entry.duration_ms == 1250
        assert entry.failed_step == "Npm.Build (web)"
        assert entry.error == "npm exited with code 1"
        assert entry.mode == "container"
        assert len(entry.run_id) == 12

    def test_preflight_error_recorded(self):
        result = WorkflowResult(
            status=WorkflowStatus.ABORTED,
            error_kind=ErrorKind.CONFIGURATION_ERROR,
            error_message="Docker is not available",
        )
        entry = LedgerEntry.from_result(result)
        assert entry.failed_step is None
        assert entry.error == "Docker is not available"


class TestRunLedger:
    def test_default_path_under_project(self, tmp_path: Path):
        ledger = RunLedger(project_root=tmp_path)
        assert ledger.path == tmp_path / ".buildbox" / "runs.ndjson"

    def test_write_and_read(self, tmp_path: Path):
        ledger = RunLedger(project_root=tmp_path)
        ledger.write(LedgerEntry(workflow="a", status="completed"))
        ledger.write(LedgerEntry(workflow="b", status="aborted"))

        entries = ledger.read_all()
        assert [e.workflow for e in entries] == ["a", "b"]
        assert ledger.entry_count() == 2
        lines = ledger.path.read_text().splitlines()
        assert json.loads(lines[1])["status"] == "aborted"

    def test_read_recent(self, tmp_path: Path):
        ledger = RunLedger(project_root=tmp_path)
        for i in range(5):
            ledger.write(LedgerEntry(workflow=f"run-{i}"))
        assert [e.workflow for e in ledger.read_recent(2)] == ["run-3", "run-4"]
        assert ledger.read_recent(0) == []

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        ledger = RunLedger(path=tmp_path / "runs.ndjson")
        ledger.write(LedgerEntry(workflow="good"))
        with ledger.path.open("a") as f:
            f.write("{not json\n")
        ledger.write(LedgerEntry(workflow="also-good"))
        assert [e.workflow for e in ledger.read_all()] == ["good", "also-good"]

    def test_missing_file(self, tmp_path: Path):
        ledger = RunLedger(project_root=tmp_path)
        assert ledger.read_all() == []
        assert ledger.entry_count() == 0

    def test_write_failure_is_logged(self, tmp_path: Path, caplog):
        blocker = tmp_path / "blocker"
        blocker.write_text("a file, not a directory")
        ledger = RunLedger(path=blocker / "runs.ndjson")
        ledger.write(LedgerEntry())
        assert "Failed to write run ledger" in caplog.text
