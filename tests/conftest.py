"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from transit_operator.config import Config  # noqa: E402


@pytest.fixture
def fast_config(tmp_path: Path) -> Config:
    """Config with no retry backoff and a state file under tmp_path."""
    return Config(
        spec_file=tmp_path / "topology.yaml",
        state_file=tmp_path / "state.json",
        max_workers=4,
        provider_timeout_seconds=30,
        max_retries=3,
        retry_backoff_base_seconds=0,
    )


@pytest.fixture(autouse=True)
def clean_operator_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep operator environment variables of the host out of tests."""
    for key in (
        "TOPOLOGY_SPEC",
        "STATE_FILE",
        "AWS_REGION",
        "MAX_WORKERS",
        "PROVIDER_TIMEOUT",
        "MAX_RETRIES",
        "RETRY_BACKOFF_BASE",
        "DRY_RUN",
        "CONFIRM_DELETIONS",
    ):
        monkeypatch.delenv(key, raising=False)
