"""Shared pytest fixtures and configuration for agent supervisor tests."""

import os
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from agent_supervisor.config import SupervisorSettings

FAKE_AGENT = Path(__file__).parent / "fake_agent.py"
LOCK_CONTENDER = Path(__file__).parent / "lock_contender.py"


# Test environment setup
@pytest.fixture(autouse=True)
def test_environment():
    """Isolate tests from supervisor settings in the caller's environment."""
    original_env = os.environ.copy()

    for key in list(os.environ):
        if key.startswith("AGENT_SUPERVISOR_"):
            del os.environ[key]

    yield

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def project_dir(temp_dir: Path) -> Path:
    """Create an empty agent project directory."""
    project = temp_dir / "project"
    project.mkdir()
    return project


@pytest.fixture
def settings(project_dir: Path) -> SupervisorSettings:
    """Create settings pointing at the test project with a fast shutdown."""
    return SupervisorSettings(
        project_path=project_dir,
        terminate_grace_seconds=2.0,
        health_request_timeout_seconds=1.0,
    )


@pytest.fixture
def fake_agent() -> list[str]:
    """Command line (executable and script) of the fake agent server."""
    return [sys.executable, str(FAKE_AGENT)]


@pytest.fixture
def lock_contender() -> list[str]:
    """Command line of a process that competes for a lock."""
    return [sys.executable, str(LOCK_CONTENDER)]


@pytest.fixture
def always_alive():
    """Liveness probe that reports every pid as alive."""
    return lambda pid: True


@pytest.fixture
def never_alive():
    """Liveness probe that reports every pid as dead."""
    return lambda pid: False


# Markers for different test types
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (spawn real processes)")
    config.addinivalue_line("markers", "slow: Slow running tests (>5s)")
    config.addinivalue_line("markers", "posix: Tests relying on POSIX signals")
