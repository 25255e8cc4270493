"""
Container executor — run commands inside a sandbox via ``docker exec``.

The container must already exist: the container manager creates it,
this executor only execs into it. Host paths in the working directory
and arguments are translated to container paths before the command
crosses the namespace boundary. Uses the docker CLI, never the Docker
API directly.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable

from buildbox.adapters.containers.paths import PathTranslator
from buildbox.adapters.shell.process import PreparedCommand, ProcessExecutor
from buildbox.core.models.command import CommandOptions

logger = logging.getLogger(__name__)

DOCKER_BINARY = "docker"


class ContainerExecutor(ProcessExecutor):
    """Execute commands in an existing container.

    Args:
        container_id: Container id or name (must be running).
        translator: Host-to-container path translator.
        secrets: Values to redact from logged command lines.
    """

    def __init__(
        self,
        container_id: str,
        translator: PathTranslator,
        secrets: Iterable[str] = (),
        docker_binary: str = DOCKER_BINARY,
    ):
        super().__init__(secrets)
        if not container_id:
            raise ValueError("container_id is required")
        self._container_id = container_id
        self._translator = translator
        self._docker = docker_binary

    @property
    def name(self) -> str:
        return "container"

    @property
    def container_id(self) -> str:
        return self._container_id

    @property
    def translator(self) -> PathTranslator:
        return self._translator

    def prepare(
        self,
        command: str,
        args: list[str],
        options: CommandOptions,
    ) -> PreparedCommand:
        workdir = self._translator.translate(
            options.working_directory or self._translator.cwd
        )

        argv = [self._docker, "exec", "-w", workdir]
        for key, value in options.environment.items():
            argv.extend(["-e", f"{key}={value}"])
        argv.append(self._container_id)
        if options.timeout is not None:
            # The host-side kill only reaches the docker exec client
            argv.extend(["timeout", "-s", "KILL", str(math.ceil(options.timeout))])
        argv.append(command)
        argv.extend(self._translator.translate_args(args))

        # docker exec runs on the host; environment goes in via -e flags
        return PreparedCommand(argv=argv)

    def is_available(self, command: str) -> bool:
        result = self.run_prepared(
            PreparedCommand(argv=[self._docker, "exec", self._container_id, "which", command]),
            CommandOptions(timeout=5, suppress_output=True),
        )
        return result.success
