"""
Privileged-access (DIND) scanner — decide before the sandbox exists.

A build that builds or publishes images, installs the engine, or runs
a test runner that launches its own containers needs the host
container-engine socket mounted into its sandbox. That changes how the
sandbox is created and crosses a trust boundary, so it is decided up
front, from the build-definition text, and never by executing it.

Nested builds run inside the parent's sandbox, so a child definition's
requirement is also the parent's: the scanner follows child references
recursively, with a visited set so cycles terminate.

Consent flow (``resolve_privileged_access``)::

    not required ─────────────────────────────▶ not_required
    --dind flag ──────────────────────────────▶ enabled_via_flag
    grant inherited from a parent build ──────▶ inherited
    buildbox.yml privileged: true ────────────▶ enabled_via_config
    prompt → once ────────────────────────────▶ enabled_this_run
    prompt → always (saved to buildbox.yml) ──▶ enabled_and_saved
    prompt → decline, or no prompt ───────────▶ declined
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Callable, Iterable, Mapping
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field

from buildbox.core.config.loader import DEFINITION_FILE, env_flag, save_project_config
from buildbox.core.models.project import ProjectConfig
from buildbox.core.models.sandbox import PRIVILEGED_ENV_VAR
from buildbox.core.models.step import Step

logger = logging.getLogger(__name__)

# Operations that need the engine socket inside the sandbox.
# Add new operations here when they start running docker themselves.
DEFAULT_PRIVILEGED_OPERATIONS: tuple[str, ...] = (
    "Docker.Build",
    "Docker.Push",
    "Docker.Install",
    "GitHub.PushImage",
    "Playwright.Test",
)

# `build: ./child` (optionally a list item) and Build.Nested("./child")
_CHILD_PATTERNS = (
    re.compile(r"""^\s*(?:-\s+)?build\s*:\s*["']?([^"'\s#]+)["']?""", re.MULTILINE),
    re.compile(r"""\bBuild\.Nested\s*\(\s*["']([^"']+)["']"""),
)

Prompt = Callable[[list[str]], str]


# ── Report models ───────────────────────────────────────────────


class Finding(BaseModel):
    """One privileged operation found in a definition."""

    operation: str
    source: str                              # definition path, or "<steps>"
    line: int = 0
    via: list[str] = Field(default_factory=list)   # chain of child definitions

    @property
    def direct(self) -> bool:
        return not self.via

    def describe(self) -> str:
        where = f"{self.source}:{self.line}" if self.line else self.source
        if self.via:
            return f"{self.operation} ({where}) via {' -> '.join(self.via)}"
        return f"{self.operation} ({where})"


class ScanReport(BaseModel):
    """Result of scanning a definition tree."""

    findings: list[Finding] = Field(default_factory=list)
    scanned: list[str] = Field(default_factory=list)
    unreadable: list[str] = Field(default_factory=list)

    @property
    def requires_privileged(self) -> bool:
        return bool(self.findings)

    @property
    def operations(self) -> list[str]:
        """Distinct operation names, sorted."""
        return sorted({f.operation for f in self.findings}, key=str.lower)

    @property
    def direct_reasons(self) -> list[str]:
        return [f.describe() for f in self.findings if f.direct]

    @property
    def transitive_reasons(self) -> list[str]:
        return [f.describe() for f in self.findings if not f.direct]

    def merge(self, other: ScanReport) -> ScanReport:
        """Combined report; duplicate findings are kept once."""
        seen = {(f.operation, f.source, f.line) for f in self.findings}
        findings = list(self.findings)
        for f in other.findings:
            if (f.operation, f.source, f.line) not in seen:
                findings.append(f)
                seen.add((f.operation, f.source, f.line))
        return ScanReport(
            findings=findings,
            scanned=self.scanned + [s for s in other.scanned if s not in self.scanned],
            unreadable=self.unreadable + [u for u in other.unreadable if u not in self.unreadable],
        )

    def to_dict(self) -> dict:
        return {
            "requires_privileged": self.requires_privileged,
            "operations": self.operations,
            "direct_reasons": self.direct_reasons,
            "transitive_reasons": self.transitive_reasons,
            "scanned": self.scanned,
            "unreadable": self.unreadable,
        }


# ── Scanner ─────────────────────────────────────────────────────


class DindScanner:
    """Static, text-only scan for operations that need the engine socket.

    Args:
        patterns: Operation names that require privileged access.
            Matched case-insensitively on word boundaries.
        definition_name: File name of a build definition inside a
            child build directory.
    """

    def __init__(
        self,
        patterns: Iterable[str] = DEFAULT_PRIVILEGED_OPERATIONS,
        definition_name: str = DEFINITION_FILE,
    ):
        self._operations = tuple(patterns)
        self._definition_name = definition_name
        if self._operations:
            alternatives = "|".join(re.escape(op) for op in self._operations)
            self._pattern: re.Pattern[str] | None = re.compile(
                rf"(?<![\w.])({alternatives})(?![\w])", re.IGNORECASE
            )
        else:
            self._pattern = None
        self._canonical = {op.lower(): op for op in self._operations}

    @property
    def operations(self) -> tuple[str, ...]:
        return self._operations

    def matches(self, name: str) -> bool:
        """Whether a step name is one of the privileged operations."""
        return name.lower() in self._canonical

    def scan(self, path: str | Path) -> ScanReport:
        """Scan a definition file and every child definition it references."""
        report = ScanReport()
        root = Path(path).resolve()
        self._scan_file(root, root.parent, [], set(), report)
        if report.requires_privileged:
            logger.debug(
                "Privileged access required by: %s",
                ", ".join(f.describe() for f in report.findings),
            )
        return report

    def scan_text(self, text: str, source: str = "<text>") -> ScanReport:
        """Scan definition text without following child references."""
        report = ScanReport(scanned=[source])
        report.findings.extend(self._find_operations(text, source, []))
        return report

    def scan_steps(self, steps: Iterable[Step]) -> ScanReport:
        """Flag registered steps whose name is a privileged operation."""
        report = ScanReport()
        for index, step in enumerate(steps, start=1):
            if self.matches(step.name):
                report.findings.append(
                    Finding(operation=self._canonical[step.name.lower()], source="<steps>", line=index)
                )
        return report

    def _scan_file(
        self,
        path: Path,
        base: Path,
        via: list[str],
        visited: set[Path],
        report: ScanReport,
    ) -> None:
        if path in visited:
            logger.debug("Already scanned %s, skipping", path)
            return
        visited.add(path)

        source = _display(path, base)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Child definition not found: %s", path)
            report.unreadable.append(source)
            return
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Could not read %s: %s", path, e)
            report.unreadable.append(source)
            return

        report.scanned.append(source)
        report.findings.extend(self._find_operations(text, source, via))

        for reference in self.child_references(text):
            child = self._resolve_child(path.parent, reference)
            logger.debug("Scanning child definition: %s", child)
            self._scan_file(child, base, [*via, _display(child, base)], visited, report)

    def _find_operations(self, text: str, source: str, via: list[str]) -> list[Finding]:
        if self._pattern is None:
            return []
        findings = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if line.lstrip().startswith("#"):
                continue
            for match in self._pattern.finditer(line):
                findings.append(
                    Finding(
                        operation=self._canonical[match.group(1).lower()],
                        source=source,
                        line=lineno,
                        via=list(via),
                    )
                )
        return findings

    @staticmethod
    def child_references(text: str) -> list[str]:
        """Child build paths referenced by *text*, in order of appearance."""
        refs: list[tuple[int, str]] = []
        for pattern in _CHILD_PATTERNS:
            refs.extend((m.start(), m.group(1)) for m in pattern.finditer(text))
        return [ref for _, ref in sorted(refs)]

    def _resolve_child(self, parent_dir: Path, reference: str) -> Path:
        target = (parent_dir / reference).resolve()
        if reference.lower().endswith((".yml", ".yaml")):
            return target
        return target / self._definition_name


def _display(path: Path, base: Path) -> str:
    try:
        return path.relative_to(base).as_posix()
    except ValueError:
        return str(path)


# ── Consent ─────────────────────────────────────────────────────


class PrivilegedDecision(StrEnum):
    NOT_REQUIRED = "not_required"
    ENABLED_VIA_FLAG = "enabled_via_flag"
    INHERITED = "inherited"
    ENABLED_VIA_CONFIG = "enabled_via_config"
    ENABLED_THIS_RUN = "enabled_this_run"
    ENABLED_AND_SAVED = "enabled_and_saved"
    DECLINED = "declined"

    @property
    def granted(self) -> bool:
        return self not in (PrivilegedDecision.NOT_REQUIRED, PrivilegedDecision.DECLINED)


def resolve_privileged_access(
    report: ScanReport,
    flag: bool = False,
    inherited: bool = False,
    config: ProjectConfig | None = None,
    prompt: Prompt | None = None,
    *,
    project_root: str | Path | None = None,
) -> PrivilegedDecision:
    """Decide whether this run may mount the engine socket.

    Args:
        report: Scan of the definition tree (and registered steps).
        flag: ``--dind`` was given on the command line.
        inherited: A parent build already obtained the grant.
        config: Project config; ``privileged: true`` is a saved grant.
        prompt: Asked with the sorted operation names; returns
            ``"once"``, ``"always"`` or ``"decline"``. ``None`` means
            non-interactive, which declines.
        project_root: Where ``always`` saves the grant.
    """
    if not report.requires_privileged:
        return PrivilegedDecision.NOT_REQUIRED
    if flag:
        logger.debug("Privileged access enabled via flag")
        return PrivilegedDecision.ENABLED_VIA_FLAG
    if inherited:
        logger.debug("Privileged access inherited from parent build")
        return PrivilegedDecision.INHERITED
    config = config or ProjectConfig()
    if config.privileged:
        logger.debug("Privileged access enabled via buildbox.yml")
        return PrivilegedDecision.ENABLED_VIA_CONFIG

    if prompt is None:
        logger.warning(
            "Privileged access required by %s but not granted (pass --dind or set privileged: true)",
            ", ".join(report.operations),
        )
        return PrivilegedDecision.DECLINED

    answer = (prompt(report.operations) or "").strip().lower()
    if answer == "once":
        return PrivilegedDecision.ENABLED_THIS_RUN
    if answer == "always":
        if project_root is not None:
            save_project_config(Path(project_root), config.model_copy(update={"privileged": True}))
            logger.info("Saved privileged: true to buildbox.yml")
        return PrivilegedDecision.ENABLED_AND_SAVED
    logger.info("Privileged access declined")
    return PrivilegedDecision.DECLINED


# ── Propagation ─────────────────────────────────────────────────


def child_environment(granted: bool) -> dict[str, str]:
    """Environment for a spawned child build. Carries an inherited grant."""
    return {PRIVILEGED_ENV_VAR: "1"} if granted else {}


def inherited_grant_from_env(environ: Mapping[str, str] | None = None) -> bool:
    """Read the inherited grant. Called only at the CLI entry point."""
    env = environ if environ is not None else os.environ
    return env_flag(env.get(PRIVILEGED_ENV_VAR))
