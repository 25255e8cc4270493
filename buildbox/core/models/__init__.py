"""
Domain models — value types for the build engine.

All models are re-exported here for convenient access:

    from buildbox.core.models import Step, CommandResult, WorkflowResult, WarmKey
"""

from buildbox.core.models.command import (
    DEFAULT_TIMEOUT_SECONDS,
    CommandOptions,
    CommandOutcome,
    CommandResult,
)
from buildbox.core.models.project import DEFAULT_IMAGE, ProjectConfig
from buildbox.core.models.result import (
    ErrorKind,
    StepResult,
    WorkflowResult,
    WorkflowStatus,
)
from buildbox.core.models.sandbox import (
    PRIVILEGED_ENV_VAR,
    ContainerSession,
    SessionState,
    WarmKey,
    project_identity,
)
from buildbox.core.models.step import Step

__all__ = [
    # command.py
    "CommandOptions",
    "CommandOutcome",
    "CommandResult",
    "DEFAULT_TIMEOUT_SECONDS",
    # project.py
    "DEFAULT_IMAGE",
    "ProjectConfig",
    # result.py
    "ErrorKind",
    "StepResult",
    "WorkflowResult",
    "WorkflowStatus",
    # sandbox.py
    "PRIVILEGED_ENV_VAR",
    "ContainerSession",
    "SessionState",
    "WarmKey",
    "project_identity",
    # step.py
    "Step",
]
