"""
Sandbox models — warm-key identity and container session records.

A WarmKey decides whether two requests may share one warm container.
ContainerSession records are owned exclusively by the container
manager; the workflow runner only ever sees an opaque container id.
"""

from __future__ import annotations

import hashlib
import re
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict

CONTAINER_NAME_PREFIX = "buildbox"

# Set in privileged sandboxes and in spawned child builds that inherit the grant
PRIVILEGED_ENV_VAR = "BUILDBOX_PRIVILEGED"

_SLUG_RE = re.compile(r"[^a-z0-9_.-]+")


def slugify(value: str) -> str:
    """Lowercase and replace characters Docker rejects in names."""
    slug = _SLUG_RE.sub("-", value.strip().lower()).strip("-.")
    return slug or "project"


def project_identity(project_root: Path, definition: Path | None = None) -> str:
    """Stable identity for a project: directory name plus definition hash.

    Hashing the build definition means an edited definition gets a new
    warm container instead of reusing a stale environment.
    """
    name = slugify(project_root.resolve().name)
    if definition is None or not definition.is_file():
        return name
    digest = hashlib.md5(definition.read_bytes()).hexdigest()[:8]
    return f"{name}-{digest}"


class WarmKey(BaseModel):
    """Identity tuple ``(project, image, privileged)``.

    Equal keys may share one sandbox; unequal keys never do.
    """

    model_config = ConfigDict(frozen=True)

    project: str
    image: str
    privileged: bool = False

    @property
    def digest(self) -> str:
        raw = f"{self.project}\0{self.image}\0{int(self.privileged)}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:8]

    @property
    def container_name(self) -> str:
        """Deterministic container name for this key."""
        return f"{CONTAINER_NAME_PREFIX}-{slugify(self.project)}-{self.digest}"


class SessionState(StrEnum):
    CREATING = "creating"
    WARM = "warm"
    STOPPED = "stopped"


class ContainerSession(BaseModel):
    """A sandbox tracked by the container manager."""

    container_id: str
    name: str
    warm_key: WarmKey
    state: SessionState = SessionState.CREATING
    privileged: bool = False

    @property
    def short_id(self) -> str:
        return self.container_id[:12]
