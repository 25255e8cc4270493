"""
Step registry — the ordered plan of deferred build steps.

The authoring layer registers steps here; nothing runs at registration
time. The workflow runner freezes the registry when execution begins
and then walks the steps in registration order. One registry lives for
exactly one run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator

from buildbox.core.models.step import Step

logger = logging.getLogger(__name__)


class StepRegistry:
    """Append-only, ordered list of named steps.

    Duplicate names are allowed: two invocations of the same operation
    type are two steps.
    """

    def __init__(self) -> None:
        self._steps: list[Step] = []
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def steps(self) -> tuple[Step, ...]:
        """All registered steps, in registration order."""
        return tuple(self._steps)

    def register(
        self,
        name: str,
        execute: Callable[[], bool],
        context: str | None = None,
    ) -> Step:
        """Create and append a step. Performs no I/O."""
        step = Step(name=name, execute=execute, context=context)
        self.register_step(step)
        return step

    def register_step(self, step: Step) -> None:
        """Append a pre-built step."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register step '{step.display_name}': execution has already begun"
            )
        self._steps.append(step)
        logger.debug("Registered step #%d: %s", len(self._steps), step.display_name)

    def freeze(self) -> None:
        """Reject further registration. Called when execution begins."""
        self._frozen = True

    def clear(self) -> None:
        """Remove all steps from an unfrozen registry."""
        if self._frozen:
            raise RuntimeError("Cannot clear a registry that is executing")
        self._steps.clear()

    def describe(self) -> list[str]:
        """Display names in execution order (the printable plan)."""
        return [step.display_name for step in self._steps]

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(tuple(self._steps))

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"<StepRegistry steps={len(self._steps)} {state}>"
