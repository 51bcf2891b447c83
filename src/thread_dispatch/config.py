"""Configuration for Thread Dispatch."""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]


class ProjectConfig(BaseModel):
    """A project directory sessions are allowed to run in."""

    name: str = Field(description="Display name of the project")
    path: str = Field(description="Absolute path of the project working directory")


class RateLimitPolicy(BaseModel):
    """Sliding-window command rate per user."""

    window_ms: int = Field(default=60_000, gt=0, description="Window length in milliseconds")
    max_requests: int = Field(default=5, ge=0, description="Requests allowed per window")


class BudgetLimits(BaseModel):
    """Spend limits in USD. Zero or less means unlimited."""

    daily_usd: float = Field(default=0.0, description="Limit for the trailing day")
    weekly_usd: float = Field(default=0.0, description="Limit for the trailing 7 days")
    monthly_usd: float = Field(default=0.0, description="Limit for the trailing 30 days")


class DispatchConfig(BaseSettings):
    """Configuration for the session dispatcher."""

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Access control
    allowed_user_ids: list[str] = Field(
        default_factory=list,
        description="User identifiers allowed to start sessions",
    )
    projects: list[ProjectConfig] = Field(
        default_factory=list,
        description="Project directories sessions may run in",
    )
    default_cwd: str | None = Field(
        default=None,
        description="Default project path (first project if unset)",
    )

    # Agent defaults
    default_model: str = Field(default="claude-opus-4-6", description="Model for new sessions")
    default_permission_mode: PermissionMode = Field(
        default="default",
        description="Permission mode passed to the execution bridge",
    )

    # Admission gates
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    budget: BudgetLimits = Field(default_factory=BudgetLimits)

    # Timeouts (milliseconds)
    approval_timeout_ms: int = Field(
        default=5 * 60 * 1000,
        ge=0,
        description="Auto-deny outstanding approvals after this long (0 disables)",
    )
    session_idle_timeout_ms: int = Field(
        default=30 * 60 * 1000,
        gt=0,
        description="Clear sessions waiting for input after this long",
    )

    # Polling intervals (seconds)
    schedule_poll_interval: float = Field(
        default=60.0,
        gt=0,
        description="How often due schedules are checked",
    )
    idle_sweep_interval: float = Field(
        default=60.0,
        gt=0,
        description="How often idle sessions are swept",
    )

    # Durable stores
    data_dir: str = Field(
        default_factory=lambda: str(Path.cwd()),
        description="Directory holding the JSON state files",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    def get_data_dir(self) -> Path:
        """Get the data directory as a Path."""
        return Path(self.data_dir).expanduser()

    def get_default_cwd(self) -> str | None:
        """Get the default project path, falling back to the first project."""
        if self.default_cwd:
            return self.default_cwd
        return self.projects[0].path if self.projects else None

    def find_project(self, cwd: str) -> ProjectConfig | None:
        """Get the project configured for a path."""
        for project in self.projects:
            if project.path == cwd:
                return project
        return None


def is_user_authorized(user_id: str, allowed_user_ids: list[str]) -> bool:
    """Check if a user is in the allowed list."""
    return user_id in allowed_user_ids


def is_allowed_cwd(cwd: str, projects: list[ProjectConfig]) -> bool:
    """Check if a working directory is one of the configured project paths."""
    return any(p.path == cwd for p in projects)


def validate_config(config: DispatchConfig) -> list[str]:
    """Validate configuration.

    Returns:
        List of problems; empty when the configuration is usable.
    """
    errors: list[str] = []

    if not config.allowed_user_ids:
        errors.append("allowed_user_ids is empty (at least one allowed user is required)")
    if not config.projects:
        errors.append("projects is empty (at least one project is required)")

    default_cwd = config.get_default_cwd()
    if config.projects and default_cwd and not is_allowed_cwd(default_cwd, config.projects):
        errors.append(f'default_cwd "{default_cwd}" is not one of the configured projects')

    return errors


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "thread-dispatch" / "config.toml"


def load_config(config_file: str | Path | None = None) -> DispatchConfig:
    """Load configuration from config file, with environment variable overrides.

    Priority (highest to lowest):
    1. Environment variables (DISPATCH_*)
    2. Provided config file
    3. Default config file (~/.config/thread-dispatch/config.toml)
    4. Default values

    Args:
        config_file: Optional path to a config file

    Returns:
        Loaded configuration
    """
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH

    file_config: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
            file_config = data.get("dispatch", {})

            if "rate_limit" in data:
                file_config["rate_limit"] = RateLimitPolicy(**data["rate_limit"])

            if "budget" in data:
                file_config["budget"] = BudgetLimits(**data["budget"])

            if "projects" in data:
                file_config["projects"] = [ProjectConfig(**p) for p in data["projects"]]

    # Init kwargs take priority over the environment in pydantic-settings, so
    # drop file values that the environment already provides.
    env_keys = {
        name
        for name in DispatchConfig.model_fields
        if _env_provides(f"DISPATCH_{name.upper()}")
    }
    file_config = {k: v for k, v in file_config.items() if k not in env_keys}

    return DispatchConfig(**file_config)


def _env_provides(prefix: str) -> bool:
    import os

    return any(
        key.upper() == prefix or key.upper().startswith(prefix + "__") for key in os.environ
    )
