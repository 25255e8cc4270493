"""
Clean use case — remove warm sandboxes and sandbox artifacts.

Warm sandboxes outlive a run; this is the explicit way to
discard them. Project containers are matched by exact name shape, so
sandboxes left behind by older versions of the definition (a
different definition hash) are removed too.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from buildbox.adapters.base import CommandExecutor
from buildbox.adapters.shell.command import HostExecutor
from buildbox.core.models.sandbox import CONTAINER_NAME_PREFIX, slugify
from buildbox.core.services.container_manager import ContainerManager, DockerAvailability

logger = logging.getLogger(__name__)


@dataclass
class CleanResult:
    removed: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        data: dict = {"removed": self.removed, "cleaned": self.cleaned}
        if self.error:
            data["error"] = self.error
        return data


def project_prefix(project_root: Path) -> str:
    """Name prefix shared by every sandbox of one project directory."""
    return f"{CONTAINER_NAME_PREFIX}-{slugify(project_root.resolve().name)}-"


def project_name_pattern(project_root: Path) -> re.Pattern[str]:
    """Exact sandbox names of one project: prefix, optional definition hash, key digest.

    A bare prefix match would also catch projects whose slug extends this
    one (``app`` vs ``app-web``).
    """
    return re.compile(rf"^{re.escape(project_prefix(project_root))}(?:[0-9a-f]{{8}}-)?[0-9a-f]{{8}}$")


def clean_project(
    project_root: Path,
    *,
    containers: bool = True,
    artifacts: bool = False,
    all_projects: bool = False,
    executor: CommandExecutor | None = None,
    manager: ContainerManager | None = None,
) -> CleanResult:
    """Remove sandboxes and/or empty their artifacts directory.

    Args:
        project_root: Project whose sandboxes are targeted.
        containers: Remove the project's sandbox containers.
        artifacts: Empty ``artifacts/`` in running sandboxes instead
            of removing them (ignored when ``containers`` is set).
        all_projects: Target every buildbox sandbox on this engine.
    """
    result = CleanResult()
    manager = manager or ContainerManager(executor or HostExecutor())

    availability = manager.check_availability()
    if availability != DockerAvailability.AVAILABLE:
        result.error = f"Docker is not available ({availability}). {manager.install_hint(availability)}"
        return result

    prefix = f"{CONTAINER_NAME_PREFIX}-" if all_projects else project_prefix(project_root)
    found = manager.list_containers(prefix)
    if not all_projects:
        pattern = project_name_pattern(project_root)
        found = [info for info in found if pattern.match(info.name)]
    if not found:
        logger.info("No sandboxes matching '%s*'", prefix)
        return result

    for info in found:
        if containers:
            if manager.remove(info.name):
                result.removed.append(info.name)
            else:
                logger.warning("Could not remove sandbox '%s'", info.name)
        elif artifacts and info.running:
            manager.clean_artifacts(info.id)
            result.cleaned.append(info.name)

    return result
