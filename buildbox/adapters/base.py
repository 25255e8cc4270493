"""
Executor base — the protocol contract between steps and command backends.

This defines the abstract interface that every command executor must
implement. Steps only talk to executors through this protocol, never
directly to processes or the container engine.

To create a new executor:
    1. Subclass CommandExecutor
    2. Implement name, is_available, _execute
    3. Expose it through buildbox.adapters.registry.select_executor
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from buildbox.core.errors import BuildboxError
from buildbox.core.models.command import CommandOptions, CommandResult

logger = logging.getLogger(__name__)

REDACTION_MARKER = "***REDACTED***"


def quote_arg(arg: str) -> str:
    """Quote an argument for display if it contains whitespace."""
    if arg == "":
        return '""'
    if any(c.isspace() for c in arg):
        return f'"{arg}"'
    return arg


def format_command_line(command: str, args: Sequence[str]) -> str:
    """Compose the full command line as shown in logs."""
    return " ".join(quote_arg(part) for part in (command, *args))


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every secret value in *text* with the redaction marker.

    Longer secrets are replaced first so a secret that contains another
    one is never partially revealed.
    """
    for secret in sorted({s for s in secrets if s}, key=len, reverse=True):
        text = text.replace(secret, REDACTION_MARKER)
    return text


class CommandExecutor(ABC):
    """Abstract base class for all command executors.

    Executors run one external command and return a CommandResult.
    Failures, timeouts and spawn errors are captured in the result.
    The only exceptions that leave execute() are engine errors raised
    while composing the invocation (a PathTranslationError when an
    argument cannot be mapped into the sandbox).
    """

    def __init__(self, secrets: Iterable[str] = ()):
        self._secrets: list[str] = [s for s in secrets if s]

    @property
    @abstractmethod
    def name(self) -> str:
        """The executor identifier (e.g., 'host', 'container', 'mock')."""

    @property
    def secrets(self) -> list[str]:
        return list(self._secrets)

    def add_secret(self, value: str) -> None:
        """Register a value that must never appear in logs."""
        if value and value not in self._secrets:
            self._secrets.append(value)

    @abstractmethod
    def is_available(self, command: str) -> bool:
        """Check if *command* can be run in this execution environment.

        Should be fast and never raise.
        """

    def execute(
        self,
        command: str,
        args: Sequence[str] = (),
        options: CommandOptions | None = None,
    ) -> CommandResult:
        """Run one command and return its result.

        Logs the composed command line before execution (secrets
        redacted), then delegates to ``_execute``.
        """
        options = options or CommandOptions()
        args = list(args)
        if not options.suppress_output:
            self.log_invocation(command, args, options)
        try:
            return self._execute(command, args, options)
        except BuildboxError:
            # Domain errors (e.g. PathTranslationError) fail the step
            raise
        except Exception as e:
            # Subclasses should never raise, but a result is the contract
            logger.error("Executor %s raised for %s: %s", self.name, command, e)
            return CommandResult.spawn_error(f"{type(e).__name__}: {self.redact(str(e))}")

    @abstractmethod
    def _execute(
        self,
        command: str,
        args: list[str],
        options: CommandOptions,
    ) -> CommandResult:
        """Backend-specific execution. MUST NOT raise."""

    def redact(self, text: str) -> str:
        return redact(text, self._secrets)

    def describe_invocation(
        self,
        command: str,
        args: Sequence[str],
        options: CommandOptions,
    ) -> tuple[str, str | None]:
        """(command line, working directory) as they will actually run.

        Subclasses that wrap commands (e.g. ``docker exec``) override
        this so the log shows the fully composed form.
        """
        return format_command_line(command, args), options.working_directory

    def log_invocation(
        self,
        command: str,
        args: Sequence[str],
        options: CommandOptions,
    ) -> None:
        line, cwd = self.describe_invocation(command, args, options)
        logger.debug("Executing [%s]: %s", self.name, self.redact(line))
        if cwd:
            logger.debug("  Working directory: %s", cwd)
        if options.environment:
            logger.debug("  Environment: %s", ", ".join(sorted(options.environment)))
        if options.timeout is not None:
            logger.debug("  Timeout: %gs", options.timeout)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
