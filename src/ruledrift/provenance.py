"""Run provenance for audit.

Every reconciliation run is stamped with one structured log record that
answers:
- Which organization/environment was compared, in which mode?
- Which commit of the rule repository was the desired state taken from?
- What was found, what was written, and what failed?
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from . import __version__

logger = logging.getLogger(__name__)


@dataclass
class RunProvenance:
    """Provenance record for one reconciliation run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    tool_version: str = __version__
    org: str = ""
    env: str = ""
    target_env: str | None = None
    mode: str = ""
    dry_run: bool = False

    # Git source of truth
    git_commit_sha: str = ""
    git_branch: str = ""

    # Outcome
    desired_count: int = 0
    actual_count: int = 0
    missing_count: int = 0
    extra_count: int = 0
    modified_count: int = 0
    promotion_gap_count: int = 0
    rules_written: int = 0
    rule_errors: int = 0

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    @property
    def drift_detected(self) -> bool:
        return bool(
            self.missing_count
            or self.extra_count
            or self.modified_count
            or self.promotion_gap_count
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        result["drift_detected"] = self.drift_detected
        return result


class ProvenanceLogger:
    """Emits provenance records through the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")
        self._git_branch = os.environ.get("GIT_BRANCH", "")

    def create_provenance(
        self,
        org: str,
        env: str,
        mode: str,
        *,
        target_env: str | None = None,
        dry_run: bool = False,
    ) -> RunProvenance:
        return RunProvenance(
            org=org,
            env=env,
            target_env=target_env,
            mode=mode,
            dry_run=dry_run,
            git_commit_sha=self._git_commit_sha,
            git_branch=self._git_branch,
        )

    def log_provenance(self, provenance: RunProvenance) -> None:
        """Log a completed provenance record.

        ERROR when the run failed, WARNING when rules failed or drift was
        found, INFO otherwise.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.rule_errors or provenance.drift_detected:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "org": provenance.org,
                "env": provenance.env,
                "mode": provenance.mode,
                "drift_detected": provenance.drift_detected,
                "rules_written": provenance.rules_written,
                "git_commit": provenance.git_commit_sha,
                "duration_seconds": provenance.duration_seconds,
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
