"""Unit tests for supervisor settings."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from agent_supervisor.config import SupervisorSettings, load_settings
from agent_supervisor.models import BackoffPolicy


@pytest.mark.unit
class TestSupervisorSettings:
    """Test settings defaults, validation and environment overrides."""

    def test_defaults(self, project_dir: Path):
        """Test the documented defaults."""
        settings = SupervisorSettings(project_path=project_dir)

        assert settings.host == "127.0.0.1"
        assert settings.health_path == "/_agent/health"
        assert settings.health_base_delay_ms == 5
        assert settings.health_max_attempts == 100
        assert settings.health_backoff == BackoffPolicy.LINEAR
        assert settings.lock_stale_check
        assert settings.lock_retries == 0
        assert settings.lock_retry_interval_ms == 100
        assert settings.api_server_url is None
        assert settings.api_server_url_env == "AGENT_API_URL"
        assert settings.terminate_grace_seconds == 2.0
        assert settings.log_level == "INFO"

    def test_environment_override(self, project_dir: Path):
        """Test AGENT_SUPERVISOR_ variables override defaults."""
        os.environ["AGENT_SUPERVISOR_PROJECT_PATH"] = str(project_dir)
        os.environ["AGENT_SUPERVISOR_HEALTH_MAX_ATTEMPTS"] = "12"
        os.environ["AGENT_SUPERVISOR_HEALTH_BACKOFF"] = "fixed"
        os.environ["AGENT_SUPERVISOR_API_SERVER_URL"] = "http://localhost:4000"

        settings = SupervisorSettings()

        assert settings.project_path == project_dir
        assert settings.health_max_attempts == 12
        assert settings.health_backoff == BackoffPolicy.FIXED
        assert settings.api_server_url == "http://localhost:4000"

    def test_project_path_must_exist(self, temp_dir: Path):
        """Test a missing project directory is rejected."""
        with pytest.raises(ValidationError, match="does not exist"):
            SupervisorSettings(project_path=temp_dir / "missing")

    def test_project_path_must_be_directory(self, temp_dir: Path):
        """Test a file is not accepted as project directory."""
        file_path = temp_dir / "file.txt"
        file_path.write_text("")

        with pytest.raises(ValidationError, match="not a directory"):
            SupervisorSettings(project_path=file_path)

    def test_invalid_values_rejected(self, project_dir: Path):
        """Test range and pattern validation."""
        with pytest.raises(ValidationError):
            SupervisorSettings(project_path=project_dir, health_max_attempts=0)
        with pytest.raises(ValidationError):
            SupervisorSettings(project_path=project_dir, health_backoff="exponential")
        with pytest.raises(ValidationError):
            SupervisorSettings(project_path=project_dir, api_server_url_env="NOT-AN-ENV")
        with pytest.raises(ValidationError):
            SupervisorSettings(project_path=project_dir, health_path="no-slash")

    def test_log_level_case_insensitive(self, project_dir: Path):
        """Test lowercase log levels are normalized."""
        settings = SupervisorSettings(project_path=project_dir, log_level="debug")

        assert settings.log_level == "DEBUG"

    def test_lock_options(self, project_dir: Path):
        """Test lock settings are bundled as LockOptions."""
        settings = SupervisorSettings(
            project_path=project_dir, lock_stale_check=False, lock_retries=3, lock_retry_interval_ms=50,
        )

        options = settings.lock_options

        assert not options.stale_check
        assert options.retries == 3
        assert options.retry_interval_ms == 50

    def test_data_dir(self, project_dir: Path):
        """Test local state lives under the project data directory."""
        assert SupervisorSettings(project_path=project_dir).data_dir == project_dir / "data"


@pytest.mark.unit
class TestLoadSettings:
    """Test settings loading with error reporting."""

    def test_load_with_overrides(self, project_dir: Path):
        """Test overrides are applied."""
        settings = load_settings(project_path=project_dir, lock_retries=2)

        assert settings.lock_retries == 2

    def test_load_invalid_exits(self, temp_dir: Path):
        """Test configuration errors exit with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            load_settings(project_path=temp_dir / "missing")

        assert exc_info.value.code == 1

    def test_load_invalid_project_hint(self, temp_dir: Path, capsys):
        """Test the hint names the command-line flag that sets the project."""
        with pytest.raises(SystemExit):
            load_settings(project_path=temp_dir / "missing")

        err = capsys.readouterr().err
        assert "AGENT_SUPERVISOR_PROJECT_PATH" in err
        assert "--project-path" in err
