"""
Build definition — the YAML front-end that fills a StepRegistry.

``build.yml``::

    image: python:3.12-slim        # optional
    steps:
      - name: Shell.Run
        context: unit tests        # optional label
        run: [pytest, -q]          # argv list, or a string for "sh -c"
        cwd: src                   # optional, relative to the project root
        timeout: 600               # optional seconds; 0 disables the deadline
        env: {CI: "1"}
      - name: Build.Nested
        build: ./services/api      # child build directory or .yml file

The engine never depends on this module: it only sees the populated
registry. Registration is pure; every step's thunk resolves its
executor through the handle when it runs.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from buildbox.adapters.containers.paths import PathTranslator
from buildbox.adapters.registry import ExecutorFactory, ExecutorHandle
from buildbox.adapters.shell.command import HostExecutor
from buildbox.core.config.loader import DEFINITION_FILE
from buildbox.core.engine.registry import StepRegistry
from buildbox.core.errors import ConfigurationError, StepExecutionFailure
from buildbox.core.models.command import DEFAULT_TIMEOUT_SECONDS, CommandOptions
from buildbox.core.models.step import Step

logger = logging.getLogger(__name__)


class StepEntry(BaseModel):
    """One entry under ``steps:``."""

    model_config = ConfigDict(extra="forbid")

    name: str
    context: str | None = None
    run: list[str] | str | None = None
    build: str | None = None
    cwd: str | None = None
    timeout: float | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value):
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("run", mode="before")
    @classmethod
    def _stringify_argv(cls, value):
        if isinstance(value, list):
            return [str(v) for v in value]
        return value

    @model_validator(mode="after")
    def _one_action(self) -> StepEntry:
        if (self.run is None) == (self.build is None):
            raise ValueError(f"step '{self.name}' needs exactly one of 'run' or 'build'")
        if isinstance(self.run, list) and not self.run:
            raise ValueError(f"step '{self.name}' has an empty 'run' list")
        return self

    @property
    def argv(self) -> list[str]:
        if isinstance(self.run, str):
            return ["sh", "-c", self.run]
        return list(self.run or [])

    def options_timeout(self, default: float | None) -> float | None:
        """``None`` → kind default, ``<= 0`` → no deadline."""
        if self.timeout is None:
            return default
        return self.timeout if self.timeout > 0 else None


class BuildDefinition(BaseModel):
    """A parsed ``build.yml``."""

    model_config = ConfigDict(extra="forbid")

    image: str | None = None
    steps: list[StepEntry] = Field(default_factory=list)

    # Set by load_definition, not read from YAML
    path: Path | None = Field(default=None, exclude=True)
    text: str = Field(default="", exclude=True)


def load_definition(path: Path) -> BuildDefinition:
    """Read and validate a build definition.

    Raises:
        ConfigurationError: If the file is missing, not YAML, or invalid.
    """
    if not path.is_file():
        raise ConfigurationError(f"Build definition not found: {path}")

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        definition = BuildDefinition.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid build definition {path}: {e}") from e

    definition.path = path
    definition.text = text
    logger.debug("Loaded %s with %d step(s)", path, len(definition.steps))
    return definition


# ── Registration ────────────────────────────────────────────────


def register_steps(
    definition: BuildDefinition,
    registry: StepRegistry,
    handle: ExecutorHandle,
    *,
    project_root: Path,
    translator: PathTranslator | None = None,
    child_env: dict[str, str] | None = None,
    child_args: Sequence[str] = (),
    host_factory: ExecutorFactory | None = None,
) -> list[Step]:
    """Register one step per definition entry. Performs no I/O.

    Args:
        definition: The parsed definition.
        registry: Registry to fill.
        handle: Late-bound executor for ``run`` steps.
        project_root: Host directory the definition belongs to.
        translator: Used to map container paths in ``build:`` back to
            the host, since nested builds are launched on the host.
        child_env: Environment for nested builds (inherited grant). Read
            when the step runs, so it may be filled in after registration.
        child_args: Extra ``buildbox run`` arguments for nested builds.
        host_factory: Executor for nested builds (default: HostExecutor).
    """
    registered = []
    for entry in definition.steps:
        if entry.build is not None:
            execute = _nested_build_thunk(
                entry,
                project_root,
                translator,
                child_env if child_env is not None else {},
                list(child_args),
                host_factory or HostExecutor,
            )
        else:
            execute = _command_thunk(entry, project_root, handle)
        registered.append(registry.register(entry.name, execute, context=entry.context))
    return registered


def _command_thunk(entry: StepEntry, project_root: Path, handle: ExecutorHandle):
    argv = entry.argv
    cwd = os.path.normpath(os.path.join(project_root, entry.cwd)) if entry.cwd else str(project_root)
    options = CommandOptions(
        working_directory=cwd,
        timeout=entry.options_timeout(DEFAULT_TIMEOUT_SECONDS),
        environment=dict(entry.env),
    )

    def execute() -> bool:
        result = handle().execute(argv[0], argv[1:], options)
        if not result.success:
            raise StepExecutionFailure.from_result(argv[0], result)
        return True

    return execute


def _nested_build_thunk(
    entry: StepEntry,
    project_root: Path,
    translator: PathTranslator | None,
    child_env: dict[str, str],
    child_args: list[str],
    host_factory: ExecutorFactory,
):
    reference = entry.build or "."

    def execute() -> bool:
        target = reference
        if translator is not None and translator.is_container_path(target):
            target = translator.to_host(target)
        target_path = Path(os.path.normpath(os.path.join(project_root, target)))

        if target_path.suffix.lower() in (".yml", ".yaml"):
            child_dir, child_file = target_path.parent, target_path
        else:
            child_dir, child_file = target_path, target_path / DEFINITION_FILE

        argv = [
            sys.executable, "-m", "buildbox.main", "run",
            "--dir", str(child_dir),
            "--file", str(child_file),
            *child_args,
        ]
        options = CommandOptions(
            working_directory=str(child_dir),
            timeout=entry.options_timeout(None),
            environment={**child_env, **entry.env},
        )
        logger.info("Running nested build in %s", child_dir)
        result = host_factory().execute(argv[0], argv[1:], options)
        if not result.success:
            raise StepExecutionFailure.from_result(f"nested build {child_dir}", result)
        return True

    return execute
