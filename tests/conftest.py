"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for sentinel_mock and rule_fixtures imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from ruledrift.config import Config  # noqa: E402


@pytest.fixture
def rules_root(tmp_path: Path) -> Path:
    root = tmp_path / "rules"
    root.mkdir()
    return root


@pytest.fixture
def config(rules_root: Path) -> Config:
    """Config with fast retries and no deadline."""
    return Config(
        rules_root=rules_root,
        request_timeout_seconds=5,
        max_retries=3,
        retry_backoff_base_seconds=0,
        detail_workers=2,
    )
