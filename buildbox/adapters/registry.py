"""
Executor selection — central dispatch from execution mode to executor.

Steps never hold an executor directly. They hold an ExecutorFactory
that is re-invoked for every command, so the execution mode (host vs
container) can be decided after steps are registered, and the
container id can be substituted once the container manager has
produced one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from enum import StrEnum
from pathlib import Path

from buildbox.adapters.base import CommandExecutor
from buildbox.adapters.containers.docker import ContainerExecutor
from buildbox.adapters.containers.paths import PathTranslator
from buildbox.adapters.mock import MockExecutor
from buildbox.adapters.shell.command import HostExecutor
from buildbox.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[], CommandExecutor]


class ExecutionMode(StrEnum):
    HOST = "host"
    CONTAINER = "container"
    MOCK = "mock"


def select_executor(
    mode: ExecutionMode | str,
    sandbox_id: str | None = None,
    *,
    translator: PathTranslator | None = None,
    secrets: Iterable[str] = (),
    host_cwd: str | Path | None = None,
    mock: MockExecutor | None = None,
) -> ExecutorFactory:
    """Build the executor factory for an execution mode.

    Args:
        mode: host, container or mock.
        sandbox_id: Container id; required in container mode.
        translator: Path translator; required in container mode.
        secrets: Values to redact from logged command lines.
        host_cwd: Default working directory for host commands.
        mock: Mock instance to hand out in mock mode (shared so its
            call log can be inspected).

    Raises:
        ConfigurationError: Unknown mode or missing container settings.
    """
    try:
        mode = ExecutionMode(mode)
    except ValueError as e:
        raise ConfigurationError(f"Unknown execution mode: {mode!r}") from e

    secrets = list(secrets)

    if mode == ExecutionMode.HOST:
        def _host() -> CommandExecutor:
            return HostExecutor(secrets=secrets, default_cwd=host_cwd)
        return _host

    if mode == ExecutionMode.CONTAINER:
        if not sandbox_id:
            raise ConfigurationError("Container execution requires a sandbox id")
        if translator is None:
            raise ConfigurationError("Container execution requires a path translator")

        def _container() -> CommandExecutor:
            return ContainerExecutor(sandbox_id, translator, secrets=secrets)
        return _container

    shared = mock or MockExecutor(secrets=secrets)

    def _mock() -> CommandExecutor:
        return shared
    return _mock


class ExecutorHandle:
    """Late-bound executor factory.

    Steps capture the handle at registration time; the run use case
    binds the real factory once the execution backend is known.
    Calling the handle returns an executor from the bound factory.
    """

    def __init__(self, factory: ExecutorFactory | None = None):
        self._factory = factory

    @property
    def bound(self) -> bool:
        return self._factory is not None

    def bind(self, factory: ExecutorFactory) -> None:
        self._factory = factory
        logger.debug("Executor factory bound: %r", factory)

    def __call__(self) -> CommandExecutor:
        if self._factory is None:
            raise ConfigurationError("No execution backend selected yet")
        return self._factory()
