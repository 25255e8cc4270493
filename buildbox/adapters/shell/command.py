"""
Host executor — run commands directly on the host machine.

This is the most fundamental executor: it runs a process and captures
its output. Paths are passed through unmodified since there is no
namespace boundary between the step and the host filesystem.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from pathlib import Path

from buildbox.adapters.shell.process import PreparedCommand, ProcessExecutor
from buildbox.core.models.command import CommandOptions

logger = logging.getLogger(__name__)


class HostExecutor(ProcessExecutor):
    """Execute commands as host child processes.

    Also used by the container manager to drive the ``docker`` CLI,
    which must always run on the host.
    """

    def __init__(self, secrets: Iterable[str] = (), default_cwd: str | Path | None = None):
        super().__init__(secrets)
        self._default_cwd = str(default_cwd) if default_cwd is not None else None

    @property
    def name(self) -> str:
        return "host"

    def is_available(self, command: str) -> bool:
        return shutil.which(command) is not None

    def prepare(
        self,
        command: str,
        args: list[str],
        options: CommandOptions,
    ) -> PreparedCommand:
        return PreparedCommand(
            argv=[command, *args],
            cwd=options.working_directory or self._default_cwd,
            env=dict(options.environment),
        )
