"""
Run ledger — append-only history of workflow runs.

Every ``buildbox run`` appends one entry to an NDJSON (newline-delimited
JSON) file under ``.buildbox/``. Entries are never modified or deleted;
``buildbox history`` reads the tail.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from buildbox.core.models.result import WorkflowResult

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_DIR = ".buildbox"
DEFAULT_LEDGER_FILE = "runs.ndjson"


class LedgerEntry(BaseModel):
    """A single run summary."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    workflow: str = "build"

    # How it ran
    mode: str = ""                 # host, container, mock
    image: str | None = None
    container: str | None = None
    privileged: str = ""           # PrivilegedDecision value
    dry_run: bool = False

    # Results
    status: str = ""               # completed, aborted
    steps_registered: int = 0
    steps_run: int = 0
    steps_failed: int = 0
    duration_ms: int = 0
    failed_step: str | None = None
    error: str | None = None

    context: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: WorkflowResult, **kwargs: Any) -> LedgerEntry:
        failed = result.failed_step
        error = result.error_message or (failed.error_message if failed else None)
        return cls(
            workflow=result.workflow_name,
            dry_run=result.dry_run,
            status=str(result.status),
            steps_registered=result.steps_registered,
            steps_run=result.steps_run,
            steps_failed=result.steps_failed,
            duration_ms=int(result.total_duration * 1000),
            failed_step=failed.display_name if failed else None,
            error=error,
            **kwargs,
        )


class RunLedger:
    """Append-only run ledger.

    Each call to write() appends a single JSON line. The file is
    created if it doesn't exist.
    """

    def __init__(self, path: Path | None = None, project_root: Path | None = None):
        if path is not None:
            self._path = path
        elif project_root is not None:
            self._path = project_root / DEFAULT_LEDGER_DIR / DEFAULT_LEDGER_FILE
        else:
            self._path = Path(DEFAULT_LEDGER_DIR) / DEFAULT_LEDGER_FILE

    @property
    def path(self) -> Path:
        return self._path

    def write(self, entry: LedgerEntry) -> None:
        """Append an entry. A write failure is logged, never raised."""
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
            logger.debug("Ledger entry written: %s/%s", entry.workflow, entry.run_id)
        except OSError as e:
            logger.error("Failed to write run ledger %s: %s", self._path, e)

    def read_all(self) -> list[LedgerEntry]:
        """All entries, oldest first. Corrupt lines are skipped."""
        if not self._path.is_file():
            return []

        entries = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(LedgerEntry.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        except OSError as e:
            logger.error("Failed to read run ledger: %s", e)

        return entries

    def read_recent(self, n: int = 20) -> list[LedgerEntry]:
        """The most recent *n* entries, oldest first."""
        if n <= 0:
            return []
        return self.read_all()[-n:]

    def entry_count(self) -> int:
        if not self._path.is_file():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())
        except OSError:
            return 0
