# src/flowline/core/config.py
"""
Configuration schema and loading for the flow engine.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from flowline.contracts.enums import BackoffStrategy


class DatabaseSettings(BaseModel):
    """Database connection configuration."""

    model_config = {"frozen": True}

    url: str = Field(
        default="sqlite:///./flowline.db", description="SQLAlchemy database URL"
    )
    echo: bool = Field(default=False, description="Echo SQL statements")
    busy_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="SQLite lock wait before a write fails (ignored elsewhere)",
    )


class SchedulerSettings(BaseModel):
    """Step scheduler configuration.

    Example YAML:
        scheduler:
          batch_size: 200
          workers: 4
          max_steps_per_tick: 25
    """

    model_config = {"frozen": True}

    batch_size: int = Field(
        default=100, gt=0, description="Maximum due entries fetched per tick"
    )
    max_steps_per_tick: int = Field(
        default=50,
        gt=0,
        description="Immediate re-evaluations allowed per entry before parking it",
    )
    workers: int = Field(default=1, gt=0, description="Worker threads in the pool")
    poll_interval_seconds: float = Field(
        default=1.0, gt=0, description="Sleep between ticks when idle"
    )
    running_lease_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Age after which a Running entry is considered abandoned",
    )
    recovery_interval_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Recovery sweep period inside the worker pool (default: half the lease)",
    )
    max_recoveries: int = Field(
        default=3,
        gt=0,
        description="Consecutive recoveries after which an abandoned entry is failed",
    )


class RetrySettings(BaseModel):
    """Retry behavior for failed node evaluations.

    max_attempts is the total number of attempts, not the number of retries.
    """

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum attempts")
    strategy: BackoffStrategy = Field(
        default=BackoffStrategy.EXPONENTIAL, description="Backoff growth"
    )
    initial_delay_seconds: float = Field(
        default=60.0, gt=0, description="Initial backoff delay"
    )
    max_delay_seconds: float = Field(
        default=3600.0, gt=0, description="Maximum backoff delay"
    )
    exponential_base: float = Field(
        default=2.0, gt=1.0, description="Exponential backoff base"
    )

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "RetrySettings":
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError(
                "max_delay_seconds must be >= initial_delay_seconds"
            )
        return self


class EngagementSettings(BaseModel):
    """Engagement clock configuration."""

    model_config = {"frozen": True}

    horizon_days: int = Field(
        default=7, gt=0, le=31, description="Days scanned for an optimal hour"
    )
    default_timezone: str = Field(
        default="UTC", description="Timezone for stores without a profile"
    )
    send_window: tuple[int, int] | None = Field(
        default=None,
        description="Allowed local send hours as [start, end) e.g. [9, 21]",
    )

    @field_validator("send_window")
    @classmethod
    def validate_send_window(
        cls, v: tuple[int, int] | None
    ) -> tuple[int, int] | None:
        if v is None:
            return v
        start, end = v
        if not (0 <= start < end <= 24):
            raise ValueError(
                f"send_window must satisfy 0 <= start < end <= 24, got {list(v)}"
            )
        return v


class ActionSettings(BaseModel):
    """Action executor configuration."""

    model_config = {"frozen": True}

    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Caller-enforced timeout per action"
    )
    executors: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Options per action executor name, e.g. {\"webhook\": {\"url\": ...}}",
    )

    def options_for(self, name: str) -> dict[str, Any]:
        return dict(self.executors.get(name, {}))


class LoggingSettings(BaseModel):
    """Structured logging configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Minimum log level"
    )
    json_output: bool = Field(
        default=False, description="Render JSON lines instead of console output"
    )

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v


class FlowlineSettings(BaseModel):
    """Top-level configuration.

    Every section has defaults, so an empty YAML file is a valid config.
    """

    model_config = {"frozen": True}

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    engagement: EngagementSettings = Field(default_factory=EngagementSettings)
    actions: ActionSettings = Field(default_factory=ActionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def validate_lease_covers_actions(self) -> "FlowlineSettings":
        # A live worker blocked on an action must not look abandoned
        if self.scheduler.running_lease_seconds <= self.actions.timeout_seconds:
            raise ValueError(
                "scheduler.running_lease_seconds must be greater than "
                "actions.timeout_seconds"
            )
        return self


def _lowercase_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lowercase_keys(v) for k, v in value.items()}
    return value


def load_settings(config_path: Path) -> FlowlineSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (FLOWLINE_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: FLOWLINE_DATABASE__URL for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated FlowlineSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Explicit check for file existence (Dynaconf silently accepts missing files)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="FLOWLINE",
        settings_files=[str(config_path)],
        environments=False,  # No [default]/[production] sections
        load_dotenv=False,  # Don't auto-load .env
        merge_enabled=True,  # Deep merge nested dicts
    )

    # Dynaconf returns uppercase keys (nested env keys too); Pydantic wants lowercase.
    # Also filter out internal Dynaconf settings
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES", "MERGE_ENABLED"}
    raw_config = {
        k.lower(): _lowercase_keys(v)
        for k, v in dynaconf_settings.as_dict().items()
        if k not in internal_keys
    }
    return FlowlineSettings(**raw_config)


def resolve_config(settings: FlowlineSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-safe dict (printed by `flowline config`)."""
    return settings.model_dump(mode="json")
