"""
Project config model — per-project settings persisted in buildbox.yml.

The ``privileged`` flag is the persisted consent for mounting the host
container-engine socket. Once written, future runs do not re-prompt.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_IMAGE = "python:3.12-slim"


class ProjectConfig(BaseModel):
    """Settings loaded from ``<project>/buildbox.yml``.

    Unknown keys are kept so that saving the config never drops
    settings written by other tools or newer versions.
    """

    model_config = ConfigDict(extra="allow")

    privileged: bool = False
    image: str | None = None
    secrets: list[str] = Field(default_factory=list)   # env var names to redact
    tool_hints: bool = True

    def effective_image(self, override: str | None = None, default: str = DEFAULT_IMAGE) -> str:
        """Image precedence: explicit override > config > default."""
        return override or self.image or default
