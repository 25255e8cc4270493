"""
Step model — one unit of deferred work.

A step is a name, an optional context label and a zero-argument thunk
that captures everything needed to run. Creating a step never performs
I/O; only the workflow runner calls ``execute``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class Step:
    """A registered build step."""

    name: str                          # operation type, e.g. "Docker.Build"
    execute: Callable[[], bool]
    context: str | None = None         # e.g. project or directory name

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Step name must be a non-empty string")
        if not callable(self.execute):
            raise TypeError(f"Step '{self.name}' execute must be callable")

    @property
    def display_name(self) -> str:
        """``Name`` or ``Name (context)`` for logs."""
        if self.context:
            return f"{self.name} ({self.context})"
        return self.name
