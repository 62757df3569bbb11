"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for jenkins_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from jenkins_mock import MockJenkins  # noqa: E402
from jobsync.config import Config  # noqa: E402
from jobsync.events import EventRecorder  # noqa: E402
from jobsync.store import InMemoryObjectStore  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Configuration that does not touch the filesystem."""
    return Config(
        jenkins_url="http://jenkins.test",
        external_timeout_seconds=5,
        shutdown_timeout_seconds=5,
        require_manifests_dir=False,
    )


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def jenkins() -> MockJenkins:
    return MockJenkins()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
