"""
Shared test fixtures and configuration.
"""

import logging
import textwrap
from pathlib import Path

import pytest

from buildbox.adapters.mock import MockExecutor
from buildbox.core.models.command import CommandResult
from buildbox.core.services.container_manager import DEFAULT_SOCKET_PATH


class FakeDocker:
    """Scripted docker CLI for a MockExecutor.

    Keeps a table of containers so that ``ps``/``run``/``start``/``rm``
    and ``inspect`` behave consistently across calls. Anything else
    (``exec``, ``cp``) succeeds.
    """

    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH):
        self.socket = socket_path
        self.containers: dict[str, dict] = {}
        self.created = 0
        self.daemon_running = True
        self.fail_run = False
        self.fail_start = False
        # Running state of a container another process creates just before our run
        self.race_on_run: bool | None = None
        self.mock = MockExecutor(available={"docker", "tar"})
        self.mock.set_responder(self)

    def __call__(self, command, args, options):
        if command != "docker" or not args:
            return None
        handler = getattr(self, f"_{args[0]}", None)
        if handler is None:
            return CommandResult.ok()
        return handler(args[1:])

    # ── Helpers ──

    def add(self, name: str, running: bool = True, mounts: list[str] | None = None) -> str:
        self.created += 1
        container_id = f"{self.created:04d}feedbeef0000"
        self.containers[name] = {"id": container_id, "running": running, "mounts": mounts or [], "args": []}
        return container_id

    def _lookup(self, ref: str):
        for name, info in self.containers.items():
            if ref in (name, info["id"]):
                return name, info
        return None, None

    def run_args(self, name: str) -> list[str]:
        return self.containers[name]["args"]

    # ── Verbs ──

    def _info(self, rest):
        if self.daemon_running:
            return CommandResult.ok("Server Version: 27.0.1")
        return CommandResult.failed(1, stderr="Cannot connect to the Docker daemon")

    def _ps(self, rest):
        pattern = rest[rest.index("--filter") + 1].removeprefix("name=^")
        exact = pattern.endswith("$")
        pattern = pattern.rstrip("$")
        rows = []
        for name, info in self.containers.items():
            if (name == pattern) if exact else name.startswith(pattern):
                state = "running" if info["running"] else "exited"
                rows.append(f"{info['id']},{name},{state}")
        return CommandResult.ok("\n".join(rows))

    def _run(self, rest):
        if self.fail_run:
            return CommandResult.failed(125, stderr="Unable to find image 'nope:latest' locally")
        name = rest[rest.index("--name") + 1]
        if self.race_on_run is not None and name not in self.containers:
            self.add(name, running=self.race_on_run)
        if name in self.containers:
            return CommandResult.failed(
                125,
                stderr=(
                    "docker: Error response from daemon: Conflict. The container name "
                    f"\"/{name}\" is already in use by container \"{self.containers[name]['id']}\"."
                ),
            )
        mounts = [rest[i + 1].split(":")[0] for i, arg in enumerate(rest) if arg == "-v"]
        container_id = self.add(name, mounts=mounts)
        self.containers[name]["args"] = list(rest)
        return CommandResult.ok(container_id)

    def _start(self, rest):
        if self.fail_start:
            return CommandResult.failed(1, stderr="Error response from daemon: cannot start")
        _, info = self._lookup(rest[0])
        if info is None:
            return CommandResult.failed(1, stderr="No such container")
        info["running"] = True
        return CommandResult.ok(rest[0])

    def _stop(self, rest):
        _, info = self._lookup(rest[0])
        if info is None:
            return CommandResult.failed(1, stderr="No such container")
        info["running"] = False
        return CommandResult.ok(rest[0])

    def _rm(self, rest):
        name, info = self._lookup(rest[-1])
        if info is None:
            return CommandResult.failed(1, stderr=f"Error: No such container: {rest[-1]}")
        del self.containers[name]
        return CommandResult.ok(rest[-1])

    def _inspect(self, rest):
        _, info = self._lookup(rest[0])
        if info is None:
            return CommandResult.failed(1, stderr="No such object")
        return CommandResult.ok("\n".join(info["mounts"]))


@pytest.fixture(autouse=True)
def _restore_logging():
    """setup_logging() replaces root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    # Per-phase capture handlers are re-added by pytest itself
    root.handlers[:] = [h for h in handlers if type(h).__name__ != "LogCaptureHandler"]
    root.setLevel(level)


@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def mock_executor() -> MockExecutor:
    return MockExecutor()


@pytest.fixture
def make_project(tmp_path: Path):
    """Write a build.yml (and optional buildbox.yml) into a project dir."""

    def _make(definition: str, config: str | None = None, name: str = "app") -> Path:
        root = tmp_path / name
        root.mkdir(parents=True, exist_ok=True)
        (root / "build.yml").write_text(textwrap.dedent(definition))
        if config is not None:
            (root / "buildbox.yml").write_text(textwrap.dedent(config))
        return root

    return _make
