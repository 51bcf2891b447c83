"""Tests for thread dispatch configuration."""

from pathlib import Path

import pytest

from thread_dispatch.config import (
    BudgetLimits,
    DispatchConfig,
    ProjectConfig,
    RateLimitPolicy,
    is_allowed_cwd,
    is_user_authorized,
    load_config,
    validate_config,
)

CONFIG_TOML = """
[dispatch]
allowed_user_ids = ["user-a", "user-b"]
default_model = "claude-sonnet-4-5"
approval_timeout_ms = 60000
data_dir = "/var/lib/dispatch"

[rate_limit]
window_ms = 30000
max_requests = 2

[budget]
daily_usd = 10.0
monthly_usd = 150.0

[[projects]]
name = "api"
path = "/srv/api"

[[projects]]
name = "web"
path = "/srv/web"
"""


class TestDispatchConfig:
    """Tests for DispatchConfig settings."""

    def test_defaults(self) -> None:
        """Test default configuration values."""
        config = DispatchConfig()
        assert config.allowed_user_ids == []
        assert config.projects == []
        assert config.default_model == "claude-opus-4-6"
        assert config.default_permission_mode == "default"
        assert config.rate_limit.window_ms == 60_000
        assert config.rate_limit.max_requests == 5
        assert config.budget.daily_usd == 0.0
        assert config.approval_timeout_ms == 300_000
        assert config.session_idle_timeout_ms == 1_800_000
        assert config.log_level == "INFO"

    def test_default_cwd_falls_back_to_first_project(self) -> None:
        """Test the first project is the default working directory."""
        config = DispatchConfig(
            projects=[ProjectConfig(name="a", path="/a"), ProjectConfig(name="b", path="/b")]
        )
        assert config.get_default_cwd() == "/a"

        config.default_cwd = "/b"
        assert config.get_default_cwd() == "/b"

    def test_no_projects_no_default(self) -> None:
        """Test no projects means no default directory."""
        assert DispatchConfig().get_default_cwd() is None

    def test_find_project(self) -> None:
        """Test projects are looked up by path."""
        config = DispatchConfig(projects=[ProjectConfig(name="api", path="/srv/api")])
        assert config.find_project("/srv/api").name == "api"
        assert config.find_project("/srv") is None

    def test_data_dir_expanded(self) -> None:
        """Test the data directory expands the home directory."""
        config = DispatchConfig(data_dir="~/dispatch")
        assert config.get_data_dir() == Path.home() / "dispatch"

    def test_data_dir_defaults_to_current_directory(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test the default data directory is the working directory at creation."""
        monkeypatch.chdir(tmp_path)
        assert DispatchConfig().get_data_dir() == tmp_path.resolve()

    def test_invalid_values_rejected(self) -> None:
        """Test out of range values fail validation."""
        with pytest.raises(ValueError):
            DispatchConfig(approval_timeout_ms=-1)
        with pytest.raises(ValueError):
            RateLimitPolicy(window_ms=0)
        with pytest.raises(ValueError):
            DispatchConfig(default_permission_mode="yolo")


class TestAccessChecks:
    """Tests for authorization and project checks."""

    def test_is_user_authorized(self) -> None:
        """Test users must be listed exactly."""
        assert is_user_authorized("user-a", ["user-a"]) is True
        assert is_user_authorized("USER-A", ["user-a"]) is False
        assert is_user_authorized("user-a", []) is False

    def test_is_allowed_cwd(self) -> None:
        """Test paths must match a project exactly."""
        projects = [ProjectConfig(name="api", path="/srv/api")]
        assert is_allowed_cwd("/srv/api", projects) is True
        assert is_allowed_cwd("/srv/api/sub", projects) is False


class TestValidateConfig:
    """Tests for validate_config."""

    def test_valid(self) -> None:
        """Test a complete configuration has no errors."""
        config = DispatchConfig(
            allowed_user_ids=["user-a"],
            projects=[ProjectConfig(name="api", path="/srv/api")],
        )
        assert validate_config(config) == []

    def test_empty(self) -> None:
        """Test missing users and projects are reported."""
        errors = validate_config(DispatchConfig())
        assert len(errors) == 2
        assert any("allowed_user_ids" in e for e in errors)
        assert any("projects" in e for e in errors)

    def test_default_cwd_outside_projects(self) -> None:
        """Test the default directory must be a configured project."""
        config = DispatchConfig(
            allowed_user_ids=["user-a"],
            projects=[ProjectConfig(name="api", path="/srv/api")],
            default_cwd="/tmp",
        )
        assert validate_config(config) == ['default_cwd "/tmp" is not one of the configured projects']


class TestLoadConfig:
    """Tests for load_config."""

    def test_from_file(self, tmp_path: Path) -> None:
        """Test values and sections are read from TOML."""
        config_file = tmp_path / "config.toml"
        config_file.write_text(CONFIG_TOML)

        config = load_config(config_file)

        assert config.allowed_user_ids == ["user-a", "user-b"]
        assert config.default_model == "claude-sonnet-4-5"
        assert config.approval_timeout_ms == 60_000
        assert config.rate_limit == RateLimitPolicy(window_ms=30_000, max_requests=2)
        assert config.budget == BudgetLimits(daily_usd=10.0, monthly_usd=150.0)
        assert [p.path for p in config.projects] == ["/srv/api", "/srv/web"]

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        """Test a missing file falls back to defaults."""
        config = load_config(tmp_path / "missing.toml")
        assert config.default_model == "claude-opus-4-6"

    def test_env_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment variables take precedence over the file."""
        config_file = tmp_path / "config.toml"
        config_file.write_text(CONFIG_TOML)
        monkeypatch.setenv("DISPATCH_DEFAULT_MODEL", "claude-haiku-4-5")
        monkeypatch.setenv("DISPATCH_BUDGET__DAILY_USD", "3.5")

        config = load_config(config_file)

        assert config.default_model == "claude-haiku-4-5"
        assert config.budget.daily_usd == 3.5
        assert config.approval_timeout_ms == 60_000

    def test_lowercase_env_overrides_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test environment names are matched regardless of case."""
        config_file = tmp_path / "config.toml"
        config_file.write_text(CONFIG_TOML)
        monkeypatch.setenv("dispatch_approval_timeout_ms", "1000")

        config = load_config(config_file)

        assert config.approval_timeout_ms == 1000
