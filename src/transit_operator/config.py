"""Configuration management with validation.

Limits are enforced at configuration load time so that a bad value fails the
run before any remote call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_REGION = "eu-north-1"

DEFAULT_MAX_WORKERS = 4
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 32

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 600
MIN_PROVIDER_TIMEOUT_SECONDS = 1
MAX_PROVIDER_TIMEOUT_SECONDS = 3600

DEFAULT_MAX_RETRIES = 3
MAX_MAX_RETRIES = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 5.0

# Size limit for declaration files
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"

DEFAULT_SPEC_FILE = Path("topology.yaml")
DEFAULT_STATE_FILE = Path(".transit-operator/state.json")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Paths
    spec_file: Path = field(default_factory=lambda: DEFAULT_SPEC_FILE)
    state_file: Path = field(default_factory=lambda: DEFAULT_STATE_FILE)

    # Target
    region: str = DEFAULT_REGION

    # Execution
    max_workers: int = DEFAULT_MAX_WORKERS
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    # Behavior
    dry_run: bool = False
    confirm_deletions: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"MAX_WORKERS must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if not (
            MIN_PROVIDER_TIMEOUT_SECONDS
            <= self.provider_timeout_seconds
            <= MAX_PROVIDER_TIMEOUT_SECONDS
        ):
            errors.append(
                f"PROVIDER_TIMEOUT must be between {MIN_PROVIDER_TIMEOUT_SECONDS} "
                f"and {MAX_PROVIDER_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.max_retries <= MAX_MAX_RETRIES):
            errors.append(f"MAX_RETRIES must be between 1 and {MAX_MAX_RETRIES}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if self.state_file.exists() and self.state_file.is_dir():
            errors.append(f"STATE_FILE points at a directory: {self.state_file}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TOPOLOGY_SPEC: Declaration file (default: ./topology.yaml)
            STATE_FILE: State document (default: ./.transit-operator/state.json)
            AWS_REGION: Target region (default: eu-north-1)
            MAX_WORKERS: Concurrent provider calls per batch (default: 4)
            PROVIDER_TIMEOUT: Per-call timeout in seconds (default: 600)
            MAX_RETRIES: Attempts for retryable provider errors (default: 3)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 5)
            DRY_RUN: If "true", only plan without applying (default: false)
            CONFIRM_DELETIONS: If "true", delete orphaned resources (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            spec_file=Path(os.environ.get("TOPOLOGY_SPEC", str(DEFAULT_SPEC_FILE))),
            state_file=Path(os.environ.get("STATE_FILE", str(DEFAULT_STATE_FILE))),
            region=os.environ.get("AWS_REGION", DEFAULT_REGION),
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            provider_timeout_seconds=get_float(
                "PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ),
            max_retries=get_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            dry_run=get_bool("DRY_RUN", False),
            confirm_deletions=get_bool("CONFIRM_DELETIONS", False),
        )
