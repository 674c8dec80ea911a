"""Run provenance for audit.

Every run is stamped with a provenance record answering:
- "What did this run change on the tenant, per resource type?"
- "Which commit of the desired state was applied?"
- "Was it a dry run, and were deletes allowed?"

The record is emitted as one structured log line at the end of the run.
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import Config
    from .reconciler import RunReport

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
TOOL_VERSION = os.environ.get("TENANTSYNC_VERSION", "dev")


@dataclass
class RunProvenance:
    """Complete provenance record for one run."""

    run_id: str = field(default_factory=lambda: secrets.token_hex(8))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    tool_version: str = TOOL_VERSION

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""
    git_repo: str = ""
    desired_state_hash: str = ""  # SHA256 of the desired state file

    # Target and policy
    domain: str = ""
    dry_run: bool = False
    allow_delete: bool = False

    # Outcome
    type_summaries: list[dict[str, Any]] = field(default_factory=list)
    totals: dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None or self.totals.get("failed_types", 0) > 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_file(path: Path) -> str:
    """SHA256 of a file's content, empty when unreadable."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Creates and emits run provenance records."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")
        self._git_repo = os.environ.get("GIT_REPO", "")

    def create_provenance(
        self, config: Config, desired_state_path: Path | None = None
    ) -> RunProvenance:
        """Start a provenance record for a run against config's tenant."""
        return RunProvenance(
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
            git_repo=self._git_repo,
            desired_state_hash=hash_file(desired_state_path) if desired_state_path else "",
            domain=config.domain,
            dry_run=config.dry_run,
            allow_delete=config.allow_delete,
        )

    def record_report(self, provenance: RunProvenance, report: RunReport) -> None:
        """Copy a run report's per-type outcome onto the record."""
        provenance.type_summaries = [result.to_summary() for result in report.results]
        provenance.totals = report.totals()
        provenance.duration_seconds = round(
            (datetime.now(UTC) - provenance.timestamp).total_seconds(), 3
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Emit the record; ERROR level when any resource type failed."""
        log_level = logging.ERROR if provenance.failed else logging.INFO

        logger.log(
            log_level,
            "Run provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "run_id": provenance.run_id,
                "domain": provenance.domain,
                "dry_run": provenance.dry_run,
                "git_commit": provenance.git_commit_sha,
                "tool_version": provenance.tool_version,
                "duration_seconds": provenance.duration_seconds,
                "totals": provenance.totals,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
