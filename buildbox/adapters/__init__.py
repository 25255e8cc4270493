"""Adapters — command executors for host, container and test backends.

Public re-exports for convenient access.
"""

from buildbox.adapters.base import CommandExecutor
from buildbox.adapters.containers.docker import ContainerExecutor
from buildbox.adapters.containers.paths import HostPath, PathTranslator
from buildbox.adapters.mock import MockExecutor
from buildbox.adapters.registry import (
    ExecutionMode,
    ExecutorFactory,
    ExecutorHandle,
    select_executor,
)
from buildbox.adapters.shell.command import HostExecutor

__all__ = [
    "CommandExecutor",
    "ContainerExecutor",
    "ExecutionMode",
    "ExecutorFactory",
    "ExecutorHandle",
    "HostExecutor",
    "HostPath",
    "MockExecutor",
    "PathTranslator",
    "select_executor",
]
