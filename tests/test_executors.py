"""
Tests for executors — mock, host, container, and executor selection.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time

import pytest

from buildbox.adapters.base import REDACTION_MARKER, format_command_line, quote_arg, redact
from buildbox.adapters.containers.docker import ContainerExecutor
from buildbox.adapters.containers.paths import HostPath, PathTranslator
from buildbox.adapters.mock import MockExecutor
from buildbox.adapters.registry import ExecutionMode, ExecutorHandle, select_executor
from buildbox.adapters.shell import process
from buildbox.adapters.shell.command import HostExecutor
from buildbox.core.errors import ConfigurationError, PathTranslationError
from buildbox.core.models.command import CommandOptions, CommandOutcome, CommandResult

posix_only = pytest.mark.skipif(
    os.name != "posix" or shutil.which("sh") is None,
    reason="requires a POSIX shell",
)

# ── Helpers ──────────────────────────────────────────────────────────


class TestCommandLine:
    def test_quote_arg(self):
        assert quote_arg("plain") == "plain"
        assert quote_arg("two words") == '"two words"'
        assert quote_arg("") == '""'

    def test_format_command_line(self):
        assert format_command_line("git", ["commit", "-m", "fix bug"]) == 'git commit -m "fix bug"'

    def test_redact_longest_first(self):
        text = redact("token=abc123 short=abc", ["abc", "abc123"])
        assert "abc" not in text
        assert text == f"token={REDACTION_MARKER} short={REDACTION_MARKER}"


# ── Mock Executor ────────────────────────────────────────────────────


class TestMockExecutor:
    def test_default_success(self):
        mock = MockExecutor()
        result = mock.execute("make", ["all"])
        assert result.success
        assert mock.call_count == 1
        assert mock.calls[0].argv == ["make", "all"]

    def test_set_failure(self):
        mock = MockExecutor()
        mock.set_failure("npm", exit_code=2, stderr="npm ERR!")
        result = mock.execute("npm", ["ci"])
        assert result.outcome == CommandOutcome.FAILED
        assert result.exit_code == 2

    def test_queued_responses_last_repeats(self):
        mock = MockExecutor()
        mock.set_response("status", CommandResult.failed(1), CommandResult.ok("up"))
        assert not mock.execute("status").success
        assert mock.execute("status").stdout == "up"
        assert mock.execute("status").stdout == "up"

    def test_responder_sees_options(self):
        mock = MockExecutor()
        seen: list[str | None] = []

        def responder(command, args, options):
            seen.append(options.working_directory)
            return CommandResult.ok("from responder") if command == "pwd" else None

        mock.set_responder(responder)
        assert mock.execute("pwd", [], CommandOptions(working_directory="/src")).stdout == "from responder"
        assert mock.execute("ls").stdout == "[mock] executed"
        assert seen == ["/src", None]

    def test_availability_set(self):
        mock = MockExecutor(available={"docker"})
        assert mock.is_available("docker")
        assert not mock.is_available("az")

    def test_commands_and_reset(self):
        mock = MockExecutor()
        mock.execute("echo", ["a"])
        assert mock.commands() == ["echo a"]
        mock.reset()
        assert mock.call_count == 0

    def test_secrets_redacted_in_invocation_log(self, caplog):
        mock = MockExecutor(secrets=["hunter2"])
        with caplog.at_level(logging.DEBUG, logger="buildbox.adapters.base"):
            mock.execute("login", ["--password", "hunter2"])
        assert "hunter2" not in caplog.text
        assert REDACTION_MARKER in caplog.text


# ── Host Executor ────────────────────────────────────────────────────


@posix_only
class TestHostExecutor:
    def test_captures_stdout(self):
        result = HostExecutor().execute("sh", ["-c", "echo hello"])
        assert result.success
        assert result.exit_code == 0
        assert result.stdout == "hello"

    def test_non_zero_exit(self):
        result = HostExecutor().execute("sh", ["-c", "echo oops >&2; exit 3"])
        assert result.outcome == CommandOutcome.FAILED
        assert result.exit_code == 3
        assert result.stderr == "oops"
        assert not result.timed_out

    def test_missing_binary_does_not_raise(self):
        result = HostExecutor().execute("definitely-not-a-real-binary-xyz")
        assert result.outcome == CommandOutcome.ERROR
        assert "definitely-not-a-real-binary-xyz" in (result.error or "")

    def test_timeout_kills_process(self):
        start = time.monotonic()
        result = HostExecutor().execute("sleep", ["5"], CommandOptions(timeout=1))
        elapsed = time.monotonic() - start
        assert result.timed_out
        assert result.outcome == CommandOutcome.TIMED_OUT
        assert not result.success
        assert elapsed < 4

    def test_timeout_kills_child_processes(self):
        start = time.monotonic()
        result = HostExecutor().execute("sh", ["-c", "sleep 5 & sleep 5; wait"], CommandOptions(timeout=1))
        assert result.timed_out
        assert time.monotonic() - start < 4

    def test_background_child_does_not_turn_exit_into_timeout(self):
        start = time.monotonic()
        result = HostExecutor().execute("sh", ["-c", "sleep 3 & echo started"], CommandOptions(timeout=1))
        assert result.outcome == CommandOutcome.OK
        assert result.exit_code == 0
        assert result.stdout == "started"
        assert time.monotonic() - start < 2.5

    def test_background_child_keeps_real_exit_code(self):
        result = HostExecutor().execute("sh", ["-c", "sleep 3 & exit 4"], CommandOptions(timeout=10))
        assert result.outcome == CommandOutcome.FAILED
        assert result.exit_code == 4

    def test_read_failure_kills_and_reaps_process(self, monkeypatch):
        spawned: list[subprocess.Popen] = []
        real_popen = subprocess.Popen

        def recording_popen(*args, **kwargs):
            proc = real_popen(*args, **kwargs)
            spawned.append(proc)
            return proc

        def broken_feed(self, data, final=False):
            raise RuntimeError("decoder exploded")

        monkeypatch.setattr(process.subprocess, "Popen", recording_popen)
        monkeypatch.setattr(process._LineStream, "feed", broken_feed)

        start = time.monotonic()
        result = HostExecutor().execute("sh", ["-c", "echo hi; sleep 30"], CommandOptions(timeout=60))
        assert result.outcome == CommandOutcome.ERROR
        assert "decoder exploded" in (result.error or "")
        assert time.monotonic() - start < 10
        assert spawned[0].returncode == -signal.SIGKILL

    def test_working_directory(self, tmp_path):
        result = HostExecutor().execute("pwd", [], CommandOptions(working_directory=str(tmp_path)))
        assert os.path.realpath(result.stdout) == os.path.realpath(tmp_path)

    def test_default_cwd(self, tmp_path):
        result = HostExecutor(default_cwd=tmp_path).execute("pwd")
        assert os.path.realpath(result.stdout) == os.path.realpath(tmp_path)

    def test_environment_is_added(self):
        result = HostExecutor().execute(
            "sh",
            ["-c", 'echo "$BUILDBOX_TEST_VAR:${PATH:+has-path}"'],
            CommandOptions(environment={"BUILDBOX_TEST_VAR": "set"}),
        )
        assert result.stdout == "set:has-path"

    def test_output_streamed_with_secrets_redacted(self, caplog):
        executor = HostExecutor(secrets=["s3cr3t-value"])
        with caplog.at_level(logging.INFO, logger="buildbox.output"):
            result = executor.execute("sh", ["-c", "echo token=s3cr3t-value"])
        assert result.success
        assert f"token={REDACTION_MARKER}" in caplog.text
        assert "s3cr3t-value" not in caplog.text

    def test_suppress_output(self, caplog):
        with caplog.at_level(logging.INFO, logger="buildbox.output"):
            HostExecutor().execute("sh", ["-c", "echo quiet"], CommandOptions(suppress_output=True))
        assert "quiet" not in caplog.text

    def test_is_available(self):
        assert HostExecutor().is_available("sh")
        assert not HostExecutor().is_available("definitely-not-a-real-binary-xyz")


# ── Container Executor ───────────────────────────────────────────────


class TestContainerExecutor:
    def _executor(self) -> ContainerExecutor:
        return ContainerExecutor("abc123", PathTranslator("/home/dev/app"))

    def test_prepare_translates_cwd_and_args(self):
        prepared = self._executor().prepare(
            "dotnet",
            ["build", "/home/dev/app/src/App.csproj", "--output=/home/dev/app/out", "/dev/null"],
            CommandOptions(working_directory="/home/dev/app/src", environment={"CI": "1"}),
        )
        assert prepared.argv == [
            "docker", "exec", "-w", "/workspace/src",
            "-e", "CI=1",
            "abc123",
            "timeout", "-s", "KILL", "300",
            "dotnet", "build", "/workspace/src/App.csproj", "--output=/workspace/out", "/dev/null",
        ]
        # Environment travels via -e, not the host process env
        assert prepared.env == {}

    def test_deadline_enforced_inside_sandbox(self):
        prepared = self._executor().prepare("make", ["all"], CommandOptions(timeout=2.5))
        assert prepared.argv[4:] == ["abc123", "timeout", "-s", "KILL", "3", "make", "all"]

    def test_no_deadline_runs_command_directly(self):
        prepared = self._executor().prepare("make", ["all"], CommandOptions(timeout=None))
        assert prepared.argv[4:] == ["abc123", "make", "all"]

    def test_default_working_directory(self):
        prepared = self._executor().prepare("ls", [], CommandOptions())
        assert prepared.argv[:4] == ["docker", "exec", "-w", "/workspace"]

    def test_working_directory_outside_root_raises(self):
        with pytest.raises(PathTranslationError):
            self._executor().execute("ls", [], CommandOptions(working_directory="/etc"))

    def test_host_path_outside_root_raises(self):
        with pytest.raises(PathTranslationError):
            self._executor().execute("cat", [HostPath("/home/dev/other/secret.txt")])

    def test_argument_outside_root_raises(self):
        executor = self._executor()
        with pytest.raises(PathTranslationError):
            executor.prepare("cat", ["/home/dev/other/secret.txt"], CommandOptions())
        with pytest.raises(PathTranslationError):
            executor.prepare("tool", ["--config=/home/dev/.cfg"], CommandOptions())

    def test_requires_container_id(self):
        with pytest.raises(ValueError):
            ContainerExecutor("", PathTranslator("/home/dev/app"))


# ── Selection ────────────────────────────────────────────────────────


class TestSelectExecutor:
    def test_host(self):
        assert isinstance(select_executor("host")(), HostExecutor)

    def test_container(self):
        factory = select_executor(ExecutionMode.CONTAINER, "abc123", translator=PathTranslator("/p"))
        executor = factory()
        assert isinstance(executor, ContainerExecutor)
        assert executor.container_id == "abc123"

    def test_container_requires_id_and_translator(self):
        with pytest.raises(ConfigurationError):
            select_executor("container", translator=PathTranslator("/p"))
        with pytest.raises(ConfigurationError):
            select_executor("container", "abc123")

    def test_unknown_mode(self):
        with pytest.raises(ConfigurationError, match="Unknown execution mode"):
            select_executor("kubernetes")

    def test_mock_is_shared(self):
        mock = MockExecutor()
        factory = select_executor("mock", mock=mock)
        assert factory() is mock
        assert factory() is mock


class TestExecutorHandle:
    def test_unbound_raises(self):
        handle = ExecutorHandle()
        assert not handle.bound
        with pytest.raises(ConfigurationError):
            handle()

    def test_late_binding(self):
        handle = ExecutorHandle()
        mock = MockExecutor()
        handle.bind(lambda: mock)
        assert handle.bound
        assert handle() is mock
