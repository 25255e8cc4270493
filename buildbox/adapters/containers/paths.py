"""
Path translation between the host project root and the sandbox.

The project is placed at ``/workspace`` inside the container, so any
host path a step refers to has to be rewritten before it crosses the
namespace boundary. A host-absolute path outside the project root does
not exist in the sandbox: it is rejected with PathTranslationError and
never passed through unchanged.
"""

from __future__ import annotations

import posixpath
import re
from collections.abc import Iterable
from pathlib import Path

from buildbox.core.errors import PathTranslationError

DEFAULT_CONTAINER_ROOT = "/workspace"

# Absolute arguments under these prefixes name the sandbox's own files
# (devices, system tools, scratch space) and pass through untranslated.
CONTAINER_NATIVE_PREFIXES = (
    "/bin",
    "/dev",
    "/etc",
    "/lib",
    "/opt",
    "/proc",
    "/sbin",
    "/sys",
    "/tmp",
    "/usr",
    "/var",
)

_DRIVE_RE = re.compile(r"^([A-Za-z]):[\\/]")


class HostPath(str):
    """An argument that is known to be a host path.

    Plain string arguments may also name container-native files such as
    ``/dev/null``; a HostPath is always translated against the project
    root and fails loudly when it cannot be.
    """

    __slots__ = ()


def is_host_absolute(path: str) -> bool:
    """POSIX absolute, Windows drive-absolute, or UNC."""
    return path.startswith("/") or path.startswith("\\\\") or bool(_DRIVE_RE.match(path))


def _to_posix(path: str) -> str:
    """Normalize a host path to a POSIX-style absolute string for comparison."""
    m = _DRIVE_RE.match(path)
    if m:
        path = f"/{m.group(1).lower()}:/{path[3:]}"
    path = path.replace("\\", "/")
    return posixpath.normpath(path)


def _is_within(path: str, root: str) -> bool:
    if root == "/":
        return path.startswith("/")
    return path == root or path.startswith(root + "/")


class PathTranslator:
    """Map host paths to container-visible paths.

    Args:
        host_root: Project root on the host.
        container_root: Where the project lives inside the container.
        cwd: Container working directory used for relative paths
            (default: ``container_root``).
    """

    def __init__(
        self,
        host_root: str | Path,
        container_root: str = DEFAULT_CONTAINER_ROOT,
        cwd: str | None = None,
    ):
        if not container_root.startswith("/"):
            raise ValueError(f"container_root must be absolute: {container_root!r}")
        self._host_root_raw = str(host_root)
        self.host_root = _to_posix(str(host_root))
        self.container_root = posixpath.normpath(container_root)
        self.cwd = posixpath.normpath(cwd) if cwd else self.container_root

    def is_container_path(self, path: str) -> bool:
        return _is_within(posixpath.normpath(path), self.container_root) and path.startswith("/")

    def is_under_host_root(self, path: str) -> bool:
        if not is_host_absolute(path):
            return False
        return _is_within(_to_posix(path), self.host_root)

    def translate(self, path: str) -> str:
        """Translate *path* into the container namespace.

        1. Already under the container root: returned unchanged.
        2. Relative: resolved against the container working directory.
        3. Host-absolute under the host root: prefix rewritten.
        4. Host-absolute outside the host root: PathTranslationError.
        """
        if not path:
            raise PathTranslationError(path, self._host_root_raw, "empty path")

        if path.startswith("/") and self.is_container_path(path):
            return path

        if not is_host_absolute(path):
            joined = posixpath.normpath(posixpath.join(self.cwd, path.replace("\\", "/")))
            if not _is_within(joined, self.container_root):
                raise PathTranslationError(
                    path,
                    self._host_root_raw,
                    f"relative path escapes {self.container_root}",
                )
            return joined

        normalized = _to_posix(path)
        if not _is_within(normalized, self.host_root):
            raise PathTranslationError(path, self._host_root_raw)

        rel = posixpath.relpath(normalized, self.host_root)
        if rel == ".":
            return self.container_root
        return posixpath.join(self.container_root, rel)

    def to_host(self, path: str) -> str:
        """Reverse mapping: container path back to the host path."""
        normalized = posixpath.normpath(path) if path.startswith("/") else posixpath.normpath(
            posixpath.join(self.cwd, path)
        )
        if not _is_within(normalized, self.container_root):
            raise PathTranslationError(
                path,
                self._host_root_raw,
                f"path is outside the container root {self.container_root}",
            )
        rel = posixpath.relpath(normalized, self.container_root)
        if rel == ".":
            return self._host_root_raw
        return str(Path(self._host_root_raw, *rel.split("/")))

    def is_container_native(self, path: str) -> bool:
        """POSIX path under the container root or a container system prefix."""
        if not path.startswith("/") or path.startswith("//"):
            return False
        normalized = posixpath.normpath(path)
        if _is_within(normalized, self.container_root):
            return True
        return any(_is_within(normalized, prefix) for prefix in CONTAINER_NATIVE_PREFIXES)

    def _translate_absolute(self, arg: str) -> str:
        if self.is_under_host_root(arg):
            return self.translate(arg)
        if self.is_container_native(arg):
            return arg
        raise PathTranslationError(arg, self._host_root_raw)

    def translate_arg(self, arg: str) -> str:
        """Translate one command argument if it references a host path.

        ``--flag=/host/path`` forms are translated after the ``=``.
        Absolute paths outside the project root are rejected unless they
        fall under CONTAINER_NATIVE_PREFIXES.
        """
        if isinstance(arg, HostPath):
            return self.translate(str(arg))
        if is_host_absolute(arg):
            return self._translate_absolute(arg)
        if arg.startswith("-") and "=" in arg:
            flag, _, value = arg.partition("=")
            if value and is_host_absolute(value):
                return f"{flag}={self._translate_absolute(value)}"
        return arg

    def translate_args(self, args: Iterable[str]) -> list[str]:
        return [self.translate_arg(a) for a in args]

    def __repr__(self) -> str:
        return f"<PathTranslator {self.host_root} -> {self.container_root}>"
