"""
Process machinery shared by the host and container executors.

Runs a prepared argv with ``subprocess.Popen``, streams stdout/stderr
line by line to the ``buildbox.output`` logger while capturing both,
and enforces an absolute deadline. On expiry the whole process group
is killed and the result is marked ``timed_out``. A process that exits
before its deadline reports its own exit code, even when a background
child keeps the output pipes open.

Both streams are read concurrently with selectors to avoid deadlocks:
many build tools write progress to stderr.
"""

from __future__ import annotations

import codecs
import logging
import os
import selectors
import signal
import subprocess
import time
from abc import abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from buildbox.adapters.base import CommandExecutor, format_command_line
from buildbox.core.errors import BuildboxError
from buildbox.core.models.command import CommandOptions, CommandResult

logger = logging.getLogger(__name__)
output_logger = logging.getLogger("buildbox.output")

_READ_SIZE = 65536
_POLL_INTERVAL = 0.1
# Output still arriving after the process exits is read for this long
_EXIT_DRAIN_SECONDS = 0.5


@dataclass
class PreparedCommand:
    """A fully composed invocation, ready for Popen."""

    argv: list[str]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class _LineStream:
    """Incremental decoder that captures text and emits complete lines."""

    def __init__(self, echo: bool, redact) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self._pending = ""
        self._echo = echo
        self._redact = redact

    def feed(self, data: bytes, final: bool = False) -> None:
        text = self._decoder.decode(data, final=final)
        if not text and not final:
            return
        self._parts.append(text)
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        if final and self._pending:
            lines.append(self._pending)
            self._pending = ""
        if self._echo:
            for line in lines:
                output_logger.info("%s", self._redact(line.rstrip("\r")))

    @property
    def text(self) -> str:
        return "".join(self._parts)


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Forcibly terminate *proc* and everything it spawned."""
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        # Already gone
        pass


class ProcessExecutor(CommandExecutor):
    """Executor that runs a local process built by ``prepare``."""

    @abstractmethod
    def prepare(
        self,
        command: str,
        args: list[str],
        options: CommandOptions,
    ) -> PreparedCommand:
        """Compose the argv, cwd and env for one invocation."""

    def describe_invocation(
        self,
        command: str,
        args: Sequence[str],
        options: CommandOptions,
    ) -> tuple[str, str | None]:
        try:
            prepared = self.prepare(command, list(args), options)
        except BuildboxError:
            return format_command_line(command, args), options.working_directory
        return format_command_line(prepared.argv[0], prepared.argv[1:]), prepared.cwd

    def _execute(
        self,
        command: str,
        args: list[str],
        options: CommandOptions,
    ) -> CommandResult:
        prepared = self.prepare(command, args, options)
        return self.run_prepared(prepared, options)

    def run_prepared(self, prepared: PreparedCommand, options: CommandOptions) -> CommandResult:
        start = time.monotonic()
        env = {**os.environ, **prepared.env} if prepared.env else None

        try:
            proc = subprocess.Popen(
                prepared.argv,
                cwd=prepared.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=(os.name == "posix"),
            )
        except (OSError, ValueError) as e:
            return CommandResult.spawn_error(
                self.redact(f"Failed to start {prepared.argv[0]}: {e}"),
                metadata={"argv0": prepared.argv[0]},
            )

        echo = not options.suppress_output
        streams = {
            "stdout": _LineStream(echo, self.redact),
            "stderr": _LineStream(echo, self.redact),
        }
        deadline = start + options.timeout if options.timeout is not None else None
        timed_out = False

        sel = selectors.DefaultSelector()
        try:
            assert proc.stdout is not None and proc.stderr is not None
            sel.register(proc.stdout, selectors.EVENT_READ, "stdout")
            sel.register(proc.stderr, selectors.EVENT_READ, "stderr")

            # Set once the process exits; background children may still hold the pipes
            drain_until: float | None = None
            while sel.get_map():
                now = time.monotonic()
                if drain_until is None and proc.poll() is not None:
                    drain_until = now + _EXIT_DRAIN_SECONDS
                if drain_until is not None:
                    if now >= drain_until:
                        logger.debug("%s exited, output pipes still held open", prepared.argv[0])
                        break
                    wait = drain_until - now
                elif deadline is not None:
                    if now >= deadline:
                        timed_out = True
                        break
                    wait = min(deadline - now, _POLL_INTERVAL)
                else:
                    wait = _POLL_INTERVAL
                for key, _ in sel.select(timeout=wait):
                    data = os.read(key.fileobj.fileno(), _READ_SIZE)  # type: ignore[union-attr]
                    if not data:
                        sel.unregister(key.fileobj)
                        continue
                    streams[key.data].feed(data)
        except BaseException:
            _kill_process_tree(proc)
            proc.wait()
            for pipe in (proc.stdout, proc.stderr):
                if pipe is not None:
                    pipe.close()
            raise
        finally:
            sel.close()

        if not timed_out:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
            try:
                proc.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                timed_out = True

        if timed_out:
            _kill_process_tree(proc)
            proc.wait()

        for stream in streams.values():
            stream.feed(b"", final=True)
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                pipe.close()

        elapsed_ms = int((time.monotonic() - start) * 1000)
        stdout = streams["stdout"].text.rstrip()
        stderr = streams["stderr"].text.rstrip()

        if timed_out:
            logger.warning(
                "Command timed out after %gs, process killed: %s",
                options.timeout,
                prepared.argv[0],
            )
            return CommandResult.timeout(
                options.timeout or 0,
                stdout=stdout,
                stderr=stderr,
                duration_ms=elapsed_ms,
            )

        if proc.returncode == 0:
            return CommandResult.ok(stdout=stdout, stderr=stderr, duration_ms=elapsed_ms)

        return CommandResult.failed(
            proc.returncode,
            stderr=stderr,
            stdout=stdout,
            duration_ms=elapsed_ms,
        )
