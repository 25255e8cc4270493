"""
Mock executor — universal test double for command execution.

Performs no I/O. Records every invocation for assertions and returns a
configurable canned result: a default for everything, per-command
overrides, or a responder callable for scripted behavior.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from buildbox.adapters.base import CommandExecutor
from buildbox.core.models.command import CommandOptions, CommandResult

Responder = Callable[[str, list[str], CommandOptions], CommandResult | None]


@dataclass
class Invocation:
    """One recorded call to the mock."""

    command: str
    args: list[str]
    options: CommandOptions = field(default_factory=CommandOptions)

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


class MockExecutor(CommandExecutor):
    """Universal mock executor for testing.

    By default, returns success for everything. Can be configured
    with custom results per command name, or a responder that sees
    the full invocation and returns a result (``None`` falls through
    to the default).
    """

    def __init__(
        self,
        default_result: CommandResult | None = None,
        available: bool | Iterable[str] = True,
        secrets: Iterable[str] = (),
        executor_name: str = "mock",
    ):
        super().__init__(secrets)
        self._name = executor_name
        self._default = default_result or CommandResult.ok(stdout="[mock] executed")
        self._available = available if isinstance(available, bool) else set(available)
        self._responses: dict[str, list[CommandResult]] = {}
        self._responder: Responder | None = None
        self._calls: list[Invocation] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def calls(self) -> list[Invocation]:
        """All invocations this mock has received, in order."""
        return self._calls

    @property
    def call_count(self) -> int:
        return len(self._calls)

    def is_available(self, command: str) -> bool:
        if isinstance(self._available, bool):
            return self._available
        return command in self._available

    def set_default(self, result: CommandResult) -> None:
        self._default = result

    def set_response(self, command: str, *results: CommandResult) -> None:
        """Queue results for *command*. The last one repeats."""
        self._responses[command] = list(results)

    def set_failure(self, command: str, exit_code: int = 1, stderr: str = "Mock failure") -> None:
        """Configure a specific command to fail."""
        self._responses[command] = [CommandResult.failed(exit_code, stderr=stderr)]

    def set_responder(self, responder: Responder | None) -> None:
        self._responder = responder

    def _execute(
        self,
        command: str,
        args: list[str],
        options: CommandOptions,
    ) -> CommandResult:
        self._calls.append(Invocation(command=command, args=list(args), options=options))

        if self._responder is not None:
            result = self._responder(command, list(args), options)
            if result is not None:
                return result

        queued = self._responses.get(command)
        if queued:
            return queued.pop(0) if len(queued) > 1 else queued[0]

        return self._default

    def commands(self) -> list[str]:
        """Flattened command lines of all calls, for compact assertions."""
        return [" ".join(call.argv) for call in self._calls]

    def reset(self) -> None:
        """Clear call log and custom responses."""
        self._calls.clear()
        self._responses.clear()
        self._responder = None
