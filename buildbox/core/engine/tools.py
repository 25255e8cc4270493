"""
Tool availability checkers — install hints for failed steps.

When a step fails, the runner consults the checker whose prefix
matches the step name. If the external tool is missing from the
execution environment a WARNING with install instructions is logged.
This is a diagnostic aid only, never a precondition for running.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from buildbox.adapters.base import CommandExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolChecker:
    """Maps step-name prefixes to one external binary."""

    tool: str                          # human name, e.g. "Azure CLI"
    binary: str                        # checked with is_available()
    prefixes: tuple[str, ...]
    install: str = ""
    docs_url: str = ""

    def can_check(self, step_name: str) -> bool:
        lowered = step_name.lower()
        return any(lowered.startswith(p.lower()) for p in self.prefixes)

    def is_available(self, executor: CommandExecutor) -> bool:
        try:
            return executor.is_available(self.binary)
        except Exception as e:
            logger.debug("Availability check for %s failed: %s", self.binary, e)
            return False

    def hint(self) -> str:
        lines = [f"{self.tool} ('{self.binary}') is not installed."]
        if self.install:
            lines.append(f"To install: {self.install}")
        if self.docs_url:
            lines.append(f"Or visit: {self.docs_url}")
        return "\n".join(lines)


DEFAULT_TOOL_CHECKERS: tuple[ToolChecker, ...] = (
    ToolChecker(
        tool="Azure CLI",
        binary="az",
        prefixes=("Azure.", "Bicep."),
        install="curl -sL https://aka.ms/InstallAzureCLIDeb | bash",
        docs_url="https://docs.microsoft.com/cli/azure/install-azure-cli",
    ),
    ToolChecker(
        tool="Cloudflare wrangler",
        binary="wrangler",
        prefixes=("Cloudflare.",),
        install="npm install -g wrangler",
        docs_url="https://developers.cloudflare.com/workers/wrangler/install-and-update/",
    ),
    ToolChecker(
        tool="Azure Functions Core Tools",
        binary="func",
        prefixes=("Functions.",),
        install="npm install -g azure-functions-core-tools@4",
        docs_url="https://docs.microsoft.com/azure/azure-functions/functions-run-local",
    ),
    ToolChecker(
        tool="Docker CLI",
        binary="docker",
        prefixes=("Docker.",),
        install="apt-get install -y docker.io",
        docs_url="https://docs.docker.com/engine/install/",
    ),
    ToolChecker(
        tool="npm",
        binary="npm",
        prefixes=("Npm.",),
        install="apt-get install -y nodejs npm",
        docs_url="https://nodejs.org/en/download",
    ),
    ToolChecker(
        tool=".NET SDK",
        binary="dotnet",
        prefixes=("Dotnet.",),
        install="see https://dot.net/v1/dotnet-install.sh",
        docs_url="https://learn.microsoft.com/dotnet/core/install/",
    ),
)


def find_checker(
    step_name: str,
    checkers: tuple[ToolChecker, ...] | list[ToolChecker] = DEFAULT_TOOL_CHECKERS,
) -> ToolChecker | None:
    """First checker whose prefix matches *step_name*, or None."""
    for checker in checkers:
        if checker.can_check(step_name):
            return checker
    return None
