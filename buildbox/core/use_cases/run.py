"""
Run use case — execute a build definition end to end.

This is the top-level orchestrator: it loads config and the build
definition, registers the steps, scans for privileged-access needs,
resolves the sandbox, runs the workflow and records the run.

Flow:
    definition → config → register steps → scan → runner.run(preflight)
    preflight: consent → docker check → ensure sandbox → bind executor
    → ledger
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from buildbox.adapters.base import CommandExecutor
from buildbox.adapters.containers.paths import PathTranslator
from buildbox.adapters.mock import MockExecutor
from buildbox.adapters.registry import ExecutionMode, ExecutorFactory, ExecutorHandle, select_executor
from buildbox.adapters.shell.command import HostExecutor
from buildbox.core.config.definition import BuildDefinition, load_definition, register_steps
from buildbox.core.config.loader import (
    RunSettings,
    find_definition,
    load_project_config,
    resolve_secrets,
)
from buildbox.core.engine.registry import StepRegistry
from buildbox.core.engine.runner import WorkflowRunner
from buildbox.core.errors import ConfigurationError, SandboxError
from buildbox.core.models.project import ProjectConfig
from buildbox.core.models.result import WorkflowResult
from buildbox.core.models.sandbox import WarmKey, project_identity
from buildbox.core.observability.events import EventBus
from buildbox.core.persistence.ledger import LedgerEntry, RunLedger
from buildbox.core.services.container_manager import ContainerManager, DockerAvailability
from buildbox.core.services.dind_scanner import (
    DindScanner,
    PrivilegedDecision,
    Prompt,
    ScanReport,
    child_environment,
    resolve_privileged_access,
)

logger = logging.getLogger(__name__)

EXIT_MISSING_DEFINITION = 2
EXIT_DOCKER_UNAVAILABLE = 3


@dataclass
class BuildRequest:
    """What the caller asked for."""

    project_dir: Path | None = None
    definition: Path | None = None
    mode: ExecutionMode = ExecutionMode.CONTAINER
    cold: bool = False
    dind: bool = False
    image: str | None = None
    dry_run: bool = False


@dataclass
class BuildOutcome:
    """Result of running a build."""

    result: WorkflowResult | None = None
    project_root: Path | None = None
    definition_path: Path | None = None
    mode: ExecutionMode = ExecutionMode.CONTAINER
    image: str | None = None
    scan: ScanReport | None = None
    decision: PrivilegedDecision | None = None
    docker: DockerAvailability | None = None
    container_id: str | None = None
    plan: list[str] = field(default_factory=list)
    error: str | None = None
    missing_definition: bool = False

    @property
    def exit_code(self) -> int:
        if self.missing_definition:
            return EXIT_MISSING_DEFINITION
        if self.docker is not None and self.docker != DockerAvailability.AVAILABLE:
            return EXIT_DOCKER_UNAVAILABLE
        if self.result is None:
            return 1
        return self.result.exit_code

    def to_dict(self) -> dict:
        data: dict = {
            "exit_code": self.exit_code,
            "mode": str(self.mode),
            "project_root": str(self.project_root) if self.project_root else None,
            "definition": str(self.definition_path) if self.definition_path else None,
            "image": self.image,
            "container_id": self.container_id,
            "privileged": str(self.decision) if self.decision else None,
        }
        if self.error:
            data["error"] = self.error
        if self.docker is not None:
            data["docker"] = str(self.docker)
        if self.scan is not None:
            data["scan"] = self.scan.to_dict()
        if self.result is not None:
            data["result"] = self.result.to_dict()
        return data


@dataclass
class _Prepared:
    """Everything known before the runner starts."""

    project_root: Path
    definition: BuildDefinition
    config: ProjectConfig
    registry: StepRegistry
    handle: ExecutorHandle
    child_env: dict[str, str]
    scan: ScanReport


def prepare_build(
    request: BuildRequest,
    outcome: BuildOutcome,
    *,
    host_factory: ExecutorFactory | None = None,
) -> _Prepared | None:
    """Locate, load and register. Returns None (with outcome.error) on failure."""
    definition_path = request.definition or find_definition(request.project_dir)
    if definition_path is None or not definition_path.is_file():
        where = request.project_dir or Path.cwd()
        outcome.error = f"No build.yml found in {where} or its parents"
        outcome.missing_definition = True
        return None

    definition_path = definition_path.resolve()
    project_root = definition_path.parent
    outcome.definition_path = definition_path
    outcome.project_root = project_root

    try:
        config = load_project_config(project_root)
        definition = load_definition(definition_path)
    except ConfigurationError as e:
        outcome.error = str(e)
        return None

    registry = StepRegistry()
    handle = ExecutorHandle()
    child_env: dict[str, str] = {}
    child_args = {
        ExecutionMode.HOST: ["--local"],
        ExecutionMode.MOCK: ["--mock"],
    }.get(request.mode, [])

    register_steps(
        definition,
        registry,
        handle,
        project_root=project_root,
        translator=PathTranslator(project_root),
        child_env=child_env,
        child_args=child_args,
        host_factory=host_factory,
    )
    outcome.plan = registry.describe()

    scanner = DindScanner()
    scan = scanner.scan(definition_path)
    found = set(scan.operations)
    from_steps = scanner.scan_steps(registry.steps)
    from_steps.findings = [f for f in from_steps.findings if f.operation not in found]
    scan = scan.merge(from_steps)
    outcome.scan = scan

    return _Prepared(
        project_root=project_root,
        definition=definition,
        config=config,
        registry=registry,
        handle=handle,
        child_env=child_env,
        scan=scan,
    )


def run_build(
    request: BuildRequest,
    *,
    settings: RunSettings | None = None,
    prompt: Prompt | None = None,
    events: EventBus | None = None,
    host_executor: CommandExecutor | None = None,
    mock: MockExecutor | None = None,
    manager: ContainerManager | None = None,
) -> BuildOutcome:
    """Run a build definition.

    Args:
        request: Project location, execution mode and flags.
        settings: Environment-derived settings (default image, inherited grant).
        prompt: Consent prompt; None means non-interactive.
        events: Event bus for lifecycle notifications.
        host_executor: Executor for host-side commands (docker CLI,
            nested builds). Default: a HostExecutor with project secrets.
        mock: Mock executor for ``mock`` mode.
        manager: Container manager override.

    Returns:
        BuildOutcome. Never raises for build failures.
    """
    settings = settings or RunSettings()
    outcome = BuildOutcome(mode=ExecutionMode(request.mode))

    host_handle = ExecutorHandle()
    prepared = prepare_build(request, outcome, host_factory=host_handle)
    if prepared is None:
        logger.error("%s", outcome.error)
        return outcome

    config = prepared.config
    image = config.effective_image(request.image or prepared.definition.image, settings.default_image)
    outcome.image = image
    secrets = resolve_secrets(config)
    host = host_executor or HostExecutor(secrets=secrets)
    if outcome.mode == ExecutionMode.MOCK:
        mock = mock or MockExecutor(secrets=secrets)
        host = mock
    host_handle.bind(lambda: host)

    def preflight() -> None:
        # ── Privileged access ────────────────────────────────────
        if outcome.mode == ExecutionMode.HOST:
            # The host engine is reachable directly, nothing to mount
            decision = PrivilegedDecision.NOT_REQUIRED
        else:
            decision = resolve_privileged_access(
                prepared.scan,
                flag=request.dind,
                inherited=settings.inherited_privileged,
                config=config,
                prompt=prompt,
                project_root=prepared.project_root,
            )
        outcome.decision = decision
        if decision == PrivilegedDecision.DECLINED:
            raise ConfigurationError(
                "Privileged access is required by "
                + ", ".join(prepared.scan.operations)
                + " but was not granted (use --dind or set privileged: true in buildbox.yml)"
            )
        prepared.child_env.update(child_environment(decision.granted))

        # ── Execution backend ────────────────────────────────────
        if outcome.mode == ExecutionMode.HOST:
            prepared.handle.bind(
                select_executor(ExecutionMode.HOST, secrets=secrets, host_cwd=prepared.project_root)
            )
            return
        if outcome.mode == ExecutionMode.MOCK:
            prepared.handle.bind(select_executor(ExecutionMode.MOCK, secrets=secrets, mock=mock))
            return

        containers = manager or ContainerManager(host)
        availability = containers.check_availability()
        outcome.docker = availability
        if availability != DockerAvailability.AVAILABLE:
            raise SandboxError(
                f"Docker is not available ({availability}). "
                f"{containers.install_hint(availability)} "
                "Or run with --local to execute on the host."
            )

        warm_key = WarmKey(
            project=project_identity(prepared.project_root, outcome.definition_path),
            image=image,
            privileged=decision.granted,
        )
        container_id = containers.ensure_sandbox(
            warm_key,
            image,
            cold=request.cold,
            privileged=decision.granted,
            project_root=prepared.project_root,
        )
        outcome.container_id = container_id
        translator = PathTranslator(prepared.project_root, containers.container_root)
        prepared.handle.bind(
            select_executor(
                ExecutionMode.CONTAINER,
                container_id,
                translator=translator,
                secrets=secrets,
            )
        )

    runner = WorkflowRunner(
        prepared.registry,
        prepared.handle,
        events,
        tool_checkers=None if config.tool_hints else (),
        dry_run=request.dry_run,
        name=prepared.project_root.name or "build",
    )
    result = runner.run(preflight)
    outcome.result = result

    RunLedger(project_root=prepared.project_root).write(
        LedgerEntry.from_result(
            result,
            mode=str(outcome.mode),
            image=image,
            container=outcome.container_id,
            privileged=str(outcome.decision) if outcome.decision else "",
        )
    )
    return outcome
