"""Run provenance tracking for audit.

Every apply run is stamped with one structured record answering:
- "What did this run change?"
- "Which version of the operator and of the declarations was running?"
- "Where did it stop, and why?"
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class ChangeProvenanceSummary:
    """Summary of provider actions taken during a run."""

    create_count: int = 0
    update_count: int = 0
    replace_count: int = 0
    delete_count: int = 0
    no_change_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total significant changes (create + update + replace + delete)."""
        return self.create_count + self.update_count + self.replace_count + self.delete_count


@dataclass
class ApplyProvenance:
    """Provenance record for one apply run."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    operator_version: str = OPERATOR_VERSION
    git_commit_sha: str = ""
    spec_file: str = ""
    spec_file_hash: str = ""  # SHA256 of the declaration file content

    # Target
    region: str = ""
    dry_run: bool = False

    # Outcome
    node_count: int = 0
    applied_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    orphan_count: int = 0
    cancelled: bool = False
    change_summary: ChangeProvenanceSummary = field(default_factory=ChangeProvenanceSummary)

    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


def hash_file(path: Path) -> str:
    """SHA256 of a file, or "" if it cannot be read."""
    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except OSError:
        return ""


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_provenance(
        self,
        region: str,
        dry_run: bool,
        spec_file: Path | None = None,
    ) -> ApplyProvenance:
        """Create a new provenance record for a run.

        Args:
            region: Target region.
            dry_run: Whether the run only plans.
            spec_file: Declaration file the run was built from, if any.

        Returns:
            Initialized provenance record.
        """
        return ApplyProvenance(
            operator_version=OPERATOR_VERSION,
            git_commit_sha=self._git_commit_sha,
            spec_file=str(spec_file) if spec_file else "",
            spec_file_hash=hash_file(spec_file) if spec_file else "",
            region=region,
            dry_run=dry_run,
        )

    def log_provenance(self, provenance: ApplyProvenance) -> None:
        """Log a completed provenance record.

        Level is ERROR when the run failed, WARNING when nodes failed or were
        skipped, INFO otherwise.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.failed_count or provenance.skipped_count or provenance.cancelled:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Apply provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "applied_count": provenance.applied_count,
                "failed_count": provenance.failed_count,
                "skipped_count": provenance.skipped_count,
                "changes": provenance.change_summary.total_significant,
                "git_commit": provenance.git_commit_sha,
                "operator_version": provenance.operator_version,
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
