"""
Container manager — sandbox lifecycle for containerized builds.

Creates, reuses ("warm") or discards ("cold") sandboxes keyed by a
WarmKey, and mounts the host container-engine socket when the build
needs privileged access. Every engine call goes through the supplied
host CommandExecutor, never through subprocess directly.

Sandbox layout::

    /workspace                    project files (copied in, not mounted)
    /workspace/artifacts          build outputs
    /workspace/.buildbox/cache    package caches, survive warm reuse

Containers are created detached with ``tail -f /dev/null`` as the
entrypoint so they stay alive between runs.
"""

from __future__ import annotations

import logging
import os
import sys
import tempfile
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from buildbox.adapters.base import CommandExecutor
from buildbox.adapters.containers.paths import DEFAULT_CONTAINER_ROOT
from buildbox.core.errors import SandboxError
from buildbox.core.models.command import CommandOptions, CommandOutcome, CommandResult
from buildbox.core.models.sandbox import (
    CONTAINER_NAME_PREFIX,
    PRIVILEGED_ENV_VAR,
    ContainerSession,
    SessionState,
    WarmKey,
)

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
STATE_DIR = ".buildbox"

# Directories left out of the project copy when git metadata is unavailable
EXCLUDED_DIRECTORIES = (
    ".git",
    "node_modules",
    "bin",
    "obj",
    ".vs",
    ".idea",
    ".venv",
    "venv",
    "packages",
    "TestResults",
    "test-results",
    "coverage",
    ".pytest_cache",
    "__pycache__",
    "dist",
    "build",
    "target",
)

_QUERY = CommandOptions(timeout=10, suppress_output=True)
_ENGINE = CommandOptions(timeout=120, suppress_output=True)
_COPY = CommandOptions(timeout=600, suppress_output=True)


class DockerAvailability(StrEnum):
    AVAILABLE = "available"
    CLI_NOT_INSTALLED = "cli_not_installed"
    DAEMON_NOT_RUNNING = "daemon_not_running"


@dataclass(frozen=True)
class ContainerInfo:
    """One row of ``docker ps``."""

    id: str
    name: str
    running: bool


class ContainerManager:
    """Own every sandbox container for this process.

    Args:
        executor: Host executor used to drive the docker CLI.
        container_root: Project location inside the sandbox.
        socket_path: Host container-engine socket, mounted at the same
            path inside privileged sandboxes.
        docker_binary: Name or path of the docker CLI.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        container_root: str = DEFAULT_CONTAINER_ROOT,
        socket_path: str = DEFAULT_SOCKET_PATH,
        docker_binary: str = "docker",
    ):
        self._executor = executor
        self._root = container_root
        self._socket = socket_path
        self._docker = docker_binary
        self._sessions: dict[str, ContainerSession] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def container_root(self) -> str:
        return self._root

    @property
    def cache_root(self) -> str:
        return f"{self._root}/{STATE_DIR}/cache"

    # ── Availability ────────────────────────────────────────────

    def check_availability(self) -> DockerAvailability:
        """Distinguish a missing CLI from a daemon that is not running."""
        if not self._executor.is_available(self._docker):
            return DockerAvailability.CLI_NOT_INSTALLED
        result = self._executor.execute(
            self._docker, ["info"], CommandOptions(timeout=5, suppress_output=True)
        )
        if result.success:
            return DockerAvailability.AVAILABLE
        logger.debug("docker info failed: %s", result.error_excerpt(3))
        return DockerAvailability.DAEMON_NOT_RUNNING

    @staticmethod
    def install_hint(availability: DockerAvailability | None = None) -> str:
        """Platform-specific hint for getting Docker running."""
        if availability == DockerAvailability.DAEMON_NOT_RUNNING:
            if sys.platform == "darwin" or sys.platform == "win32":
                return "Start Docker Desktop and wait until the engine is running."
            return "Start the daemon: sudo systemctl start docker"
        if sys.platform == "darwin":
            return "macOS:   brew install --cask docker"
        if sys.platform.startswith("linux"):
            return "Linux:   curl -fsSL https://get.docker.com | sh"
        if sys.platform == "win32":
            return "Windows: winget install Docker.DockerDesktop"
        return "Visit: https://docs.docker.com/get-docker/"

    # ── Sandbox resolution ──────────────────────────────────────

    def ensure_sandbox(
        self,
        warm_key: WarmKey,
        image: str | None = None,
        cold: bool = False,
        privileged: bool = False,
        project_root: str | Path | None = None,
        environment: dict[str, str] | None = None,
    ) -> str:
        """Return the id of a running sandbox for *warm_key*.

        Args:
            warm_key: Sandbox identity. Equal keys share a container.
            image: Image to create from (default: ``warm_key.image``).
            cold: Remove any existing container for the key first.
            privileged: Mount the engine socket and mark the sandbox.
            project_root: If given, project files are synced into the
                container root on creation and on reuse.
            environment: Extra environment for the sandbox.

        Raises:
            SandboxError: The engine could not create, start or reach
                the container. Fatal for the current run.
        """
        image = image or warm_key.image
        privileged = privileged or warm_key.privileged
        name = warm_key.container_name

        with self._lock_for(name):
            if cold:
                logger.info("Cold start requested, discarding sandbox '%s'", name)
                self._remove_by_name(name)
                container_id = self._create(warm_key, image, privileged, environment)
            else:
                container_id = self._reuse_or_create(warm_key, image, privileged, environment)

            if project_root is not None:
                self.sync_project(container_id, project_root)

            self._sessions[name] = ContainerSession(
                container_id=container_id,
                name=name,
                warm_key=warm_key,
                state=SessionState.WARM,
                privileged=privileged,
            )
            return container_id

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _reuse_or_create(
        self,
        warm_key: WarmKey,
        image: str,
        privileged: bool,
        environment: dict[str, str] | None,
    ) -> str:
        name = warm_key.container_name
        existing = self.find_container(name)
        if existing is None:
            logger.debug("No warm sandbox '%s', creating", name)
            return self._create(warm_key, image, privileged, environment)

        if privileged and not self.has_socket_mount(existing.id):
            logger.info("Recreating sandbox '%s' to mount the engine socket", name)
            self._remove_by_name(name)
            return self._create(warm_key, image, privileged, environment)

        if existing.running:
            logger.info("Reusing warm sandbox '%s' (%s)", name, existing.id[:12])
            return existing.id

        logger.info("Starting stopped sandbox '%s'", name)
        started = self._docker_cmd(["start", existing.id], _ENGINE)
        if started.success:
            return existing.id

        logger.warning(
            "Could not start sandbox '%s' (%s), recreating",
            name,
            started.error_excerpt(3) or f"exit {started.exit_code}",
        )
        self._remove_by_name(name)
        return self._create(warm_key, image, privileged, environment)

    def _create(
        self,
        warm_key: WarmKey,
        image: str,
        privileged: bool,
        environment: dict[str, str] | None,
    ) -> str:
        name = warm_key.container_name
        self._sessions[name] = ContainerSession(
            container_id="",
            name=name,
            warm_key=warm_key,
            state=SessionState.CREATING,
            privileged=privileged,
        )

        args = [
            "run",
            "-d",
            "--name", name,
            "-w", self._root,
            "--entrypoint", "tail",
            "--label", f"buildbox.project={warm_key.project}",
            "--label", f"buildbox.key={warm_key.digest}",
            "--label", f"buildbox.privileged={'true' if privileged else 'false'}",
            "-e", f"PIP_CACHE_DIR={self.cache_root}/pip",
            "-e", f"npm_config_cache={self.cache_root}/npm",
            "-e", f"NUGET_PACKAGES={self.cache_root}/nuget",
        ]
        if privileged:
            args += ["-v", f"{self._socket}:{self._socket}"]
            args += ["--add-host", "host.docker.internal:host-gateway"]
            args += ["-e", f"{PRIVILEGED_ENV_VAR}=1"]
        for key, value in (environment or {}).items():
            args += ["-e", f"{key}={value}"]
        args += [image, "-f", "/dev/null"]

        logger.info("Creating sandbox '%s' from %s%s", name, image, " (privileged)" if privileged else "")
        result = self._docker_cmd(args, _ENGINE)
        if not result.success:
            self._sessions.pop(name, None)
            if _is_name_conflict(result):
                adopted = self._adopt(name)
                if adopted is not None:
                    return adopted
            raise SandboxError(
                f"Failed to create sandbox '{name}': "
                f"{result.error_excerpt(5) or f'exit {result.exit_code}'}"
            )

        container_id = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else name
        logger.debug("Sandbox '%s' created: %s", name, container_id[:12])
        self._exec(container_id, ["mkdir", "-p", self._root])
        return container_id

    def _adopt(self, name: str) -> str | None:
        """Reuse a sandbox another buildbox process created under *name*."""
        existing = self.find_container(name)
        if existing is None:
            return None
        if existing.running:
            logger.info("Sandbox '%s' was created concurrently, reusing it", name)
            return existing.id
        started = self._docker_cmd(["start", existing.id], _ENGINE)
        if not started.success:
            raise SandboxError(
                f"Sandbox '{name}' was created concurrently but could not be started: "
                f"{started.error_excerpt(5) or f'exit {started.exit_code}'}"
            )
        logger.info("Sandbox '%s' was created concurrently, started it", name)
        return existing.id

    # ── Project files ───────────────────────────────────────────

    def sync_project(self, container_id: str, project_root: str | Path) -> None:
        """Copy the project into the container root, keeping caches.

        Uses ``git ls-files`` to honor ignore rules when the project is
        a git work tree, otherwise a fixed exclusion list.
        """
        root = str(project_root)
        if not self._executor.is_available("tar"):
            raise SandboxError("The 'tar' command is required to copy the project into the sandbox")

        self._exec(
            container_id,
            ["sh", "-c", f"find {self._root} -mindepth 1 -maxdepth 1 ! -name '{STATE_DIR}' -exec rm -rf {{}} +"],
        )

        fd, tar_path = tempfile.mkstemp(prefix="buildbox-project-", suffix=".tar")
        os.close(fd)
        list_path: str | None = None
        try:
            files = self._git_files(root)
            if files:
                fd, list_path = tempfile.mkstemp(prefix="buildbox-files-", suffix=".lst")
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write("\0".join(files) + "\0")
                tar_args = ["-cf", tar_path, "-C", root, "--null", "-T", list_path]
                logger.debug("Archiving %d git-tracked file(s)", len(files))
            else:
                tar_args = ["-cf", tar_path]
                for directory in EXCLUDED_DIRECTORIES:
                    tar_args += ["--exclude", directory]
                tar_args += ["--exclude", f"{STATE_DIR}/cache", "-C", root, "."]
                logger.debug("Archiving project without git (excluding %s)", ", ".join(EXCLUDED_DIRECTORIES))

            tarred = self._executor.execute("tar", tar_args, _COPY)
            if tarred.outcome == CommandOutcome.ERROR or tarred.timed_out:
                raise SandboxError(f"Failed to archive project files: {tarred.error}")
            if not tarred.success:
                logger.warning("tar reported problems (may be harmless): %s", tarred.error_excerpt(3))

            copied = self._docker_cmd(["cp", tar_path, f"{container_id}:/tmp/project.tar"], _COPY)
            if not copied.success:
                raise SandboxError(
                    f"Failed to copy project into sandbox: {copied.error_excerpt(5) or copied.exit_code}"
                )
            self._exec(container_id, ["tar", "-xf", "/tmp/project.tar", "-C", self._root])
            self._exec(container_id, ["rm", "-f", "/tmp/project.tar"])
        finally:
            Path(tar_path).unlink(missing_ok=True)
            if list_path:
                Path(list_path).unlink(missing_ok=True)

        logger.info("Project files synced to %s", self._root)

    def _git_files(self, root: str) -> list[str]:
        """Tracked plus untracked-but-not-ignored files, or [] without git."""
        if not self._executor.is_available("git"):
            return []
        inside = self._executor.execute("git", ["-C", root, "rev-parse", "--is-inside-work-tree"], _QUERY)
        if not inside.success or inside.stdout.strip().lower() != "true":
            return []
        listed = self._executor.execute(
            "git",
            ["-C", root, "ls-files", "-z", "--cached", "--others", "--exclude-standard", "--deduplicate"],
            _QUERY,
        )
        if not listed.success:
            return []
        return [p for p in listed.stdout.split("\0") if p.strip()]

    def clean_artifacts(self, container_id: str) -> None:
        """Empty ``artifacts/`` inside the sandbox."""
        artifacts = f"{self._root}/artifacts"
        self._exec(container_id, ["rm", "-rf", artifacts])
        self._exec(container_id, ["mkdir", "-p", artifacts])

    # ── Queries ─────────────────────────────────────────────────

    def find_container(self, name: str) -> ContainerInfo | None:
        """Look up a container by exact name, running or not."""
        result = self._docker_cmd(
            ["ps", "-a", "--filter", f"name=^{name}$", "--format", "{{.ID}},{{.Names}},{{.State}}"],
            _QUERY,
        )
        if not result.success:
            if result.outcome == CommandOutcome.ERROR:
                raise SandboxError(f"Cannot query the container engine: {result.error}")
            logger.debug("docker ps failed: %s", result.error_excerpt(3))
            return None
        for info in _parse_ps(result.stdout):
            if info.name == name:
                return info
        return None

    def list_containers(self, name_prefix: str = CONTAINER_NAME_PREFIX) -> list[ContainerInfo]:
        """All containers whose name starts with *name_prefix*."""
        result = self._docker_cmd(
            ["ps", "-a", "--filter", f"name=^{name_prefix}", "--format", "{{.ID}},{{.Names}},{{.State}}"],
            _QUERY,
        )
        if not result.success:
            return []
        return [c for c in _parse_ps(result.stdout) if c.name.startswith(name_prefix)]

    def has_socket_mount(self, container_id: str) -> bool:
        """Whether the engine socket is among the container's mounts."""
        result = self._docker_cmd(
            ["inspect", container_id, "--format", '{{range .Mounts}}{{.Source}}{{"\\n"}}{{end}}'],
            _QUERY,
        )
        if not result.success:
            return False
        return any(line.strip() == self._socket for line in result.stdout.splitlines())

    def session(self, warm_key: WarmKey) -> ContainerSession | None:
        return self._sessions.get(warm_key.container_name)

    def sessions(self) -> list[ContainerSession]:
        return list(self._sessions.values())

    # ── Teardown ────────────────────────────────────────────────

    def stop(self, container_id: str) -> bool:
        result = self._docker_cmd(["stop", container_id], _ENGINE)
        for session in self._sessions.values():
            if session.container_id == container_id or session.name == container_id:
                session.state = SessionState.STOPPED
        return result.success

    def remove(self, target: WarmKey | str) -> bool:
        """Force-remove the container for a key (or a container name)."""
        name = target.container_name if isinstance(target, WarmKey) else target
        with self._lock_for(name):
            return self._remove_by_name(name)

    def _remove_by_name(self, name: str) -> bool:
        result = self._docker_cmd(["rm", "-f", name], _ENGINE)
        self._sessions.pop(name, None)
        if result.success:
            logger.debug("Removed sandbox '%s'", name)
        return result.success

    # ── Internals ───────────────────────────────────────────────

    def _docker_cmd(self, args: list[str], options: CommandOptions) -> CommandResult:
        return self._executor.execute(self._docker, args, options)

    def _exec(self, container_id: str, argv: list[str]) -> CommandResult:
        """Run a housekeeping command in the sandbox. Non-zero exit is not fatal."""
        result = self._docker_cmd(["exec", container_id, *argv], _ENGINE)
        if not result.success:
            logger.debug("'%s' in sandbox exited %d", " ".join(argv[:2]), result.exit_code)
        return result


def _is_name_conflict(result: CommandResult) -> bool:
    """``docker run --name`` lost a race with another process."""
    text = f"{result.stderr}\n{result.stdout}".lower()
    return "conflict" in text and "already in use" in text


def _parse_ps(output: str) -> list[ContainerInfo]:
    containers = []
    for line in output.strip().splitlines():
        parts = line.strip().split(",")
        if len(parts) < 3:
            continue
        containers.append(ContainerInfo(id=parts[0], name=parts[1], running=parts[2] == "running"))
    return containers
