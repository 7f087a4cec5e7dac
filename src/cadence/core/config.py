# src/cadence/core/config.py
"""
Configuration schema and loading for the cadence engine.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class DatabaseSettings(BaseModel):
    """Database-of-record connection configuration.

    The same database holds executions, send records, the durable task
    queue and the channel gate counters.
    """

    model_config = {"frozen": True}

    url: str = Field(
        default="sqlite:///./cadence.db",
        description="SQLAlchemy database URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")


class ChannelLimit(BaseModel):
    """Send rate cap for a single channel."""

    model_config = {"frozen": True}

    per_window: int = Field(gt=0, description="Maximum sends per window")
    window_seconds: int = Field(
        default=60, gt=0, description="Sliding window length in seconds"
    )


class GateSettings(BaseModel):
    """Rate limiter and circuit breaker configuration (the channel gate).

    Example YAML:
        gate:
          channels:
            email:
              per_window: 150
              window_seconds: 60
            sms:
              per_window: 200
          failure_threshold: 10
          cooldown_seconds: 60
    """

    model_config = {"frozen": True}

    channels: dict[str, ChannelLimit] = Field(
        default_factory=lambda: {
            "email": ChannelLimit(per_window=150),
            "sms": ChannelLimit(per_window=200),
        },
        description="Per-channel send rate caps",
    )
    failure_threshold: int = Field(
        default=10, gt=0, description="Failures within the window that open the circuit"
    )
    failure_window_seconds: int = Field(
        default=60, gt=0, description="Rolling window for the failure counter"
    )
    cooldown_seconds: int = Field(
        default=60, gt=0, description="How long an opened circuit rejects sends"
    )
    max_jitter_seconds: float = Field(
        default=2.0, ge=0, description="Upper bound of random delay added to requeues"
    )

    def limit_for(self, channel: str) -> ChannelLimit:
        """Get the rate cap for a channel.

        Raises:
            KeyError: If the channel has no configured limit
        """
        if channel not in self.channels:
            raise KeyError(f"No rate limit configured for channel '{channel}'")
        return self.channels[channel]


class BatchingSettings(BaseModel):
    """Batch dispatch configuration.

    At or below ``large_volume_threshold`` recipients a stage is sent as one
    direct batch; above it the recipient set is walked in ``chunk_size``
    slices and never held in memory at once.
    """

    model_config = {"frozen": True}

    large_volume_threshold: int = Field(default=5000, gt=0)
    chunk_size: int = Field(default=1000, gt=0)
    completion_ratio: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Share of expected recipients that must reach a terminal send state",
    )
    negligible_queued_tasks: int = Field(
        default=100,
        ge=0,
        description="Queued send tasks below which a stale stage counts as drained",
    )
    completion_poll_seconds: int = Field(
        default=30, gt=0, description="Delay between stage completion checks"
    )

    @model_validator(mode="after")
    def validate_chunk_size(self) -> "BatchingSettings":
        if self.chunk_size > self.large_volume_threshold:
            raise ValueError(
                "chunk_size must not exceed large_volume_threshold "
                f"({self.chunk_size} > {self.large_volume_threshold})"
            )
        return self


class SchedulerSettings(BaseModel):
    """Execution scheduler tick and staleness configuration."""

    model_config = {"frozen": True}

    tick_interval_seconds: int = Field(default=60, gt=0)
    stale_after_minutes: int = Field(
        default=30, gt=0, description="Staleness threshold for direct stages"
    )
    stale_chunked_after_minutes: int = Field(
        default=10, gt=0, description="Staleness threshold for chunked large-volume stages"
    )
    default_observation_window_hours: float = Field(
        default=24.0,
        ge=0,
        description="Wait before evaluating a condition node that sets no window",
    )
    wait_time_unit: Literal["days", "hours", "minutes"] = Field(
        default="days",
        description="Unit of a send node's wait_time when the node does not set one",
    )


class RetrySettings(BaseModel):
    """Send retry behavior configuration."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Maximum send attempts")
    initial_delay_seconds: float = Field(
        default=30.0, gt=0, description="Initial backoff delay"
    )
    max_delay_seconds: float = Field(
        default=120.0, gt=0, description="Maximum backoff delay"
    )
    exponential_base: float = Field(
        default=2.0, gt=1.0, description="Exponential backoff base"
    )
    send_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Bounded execution time of one send"
    )

    @model_validator(mode="after")
    def validate_delays(self) -> "RetrySettings":
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must not exceed max_delay_seconds")
        return self

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = self.initial_delay_seconds * self.exponential_base ** (attempt - 1)
        return min(delay, self.max_delay_seconds)


class WorkerSettings(BaseModel):
    """Worker process configuration."""

    model_config = {"frozen": True}

    poll_interval_seconds: float = Field(
        default=1.0, gt=0, description="Sleep between empty queue polls"
    )
    batch_size: int = Field(default=50, gt=0, description="Tasks claimed per poll")
    lease_seconds: int = Field(
        default=300,
        gt=0,
        description="How long a claimed task stays invisible before redelivery",
    )
    task_retention_hours: float = Field(
        default=24.0,
        gt=0,
        description="How long done tasks are kept before the tick purges them",
    )


class SmtpSettings(BaseModel):
    """SMTP transport for the email channel."""

    model_config = {"frozen": True}

    host: str
    port: int = Field(default=587, gt=0)
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    from_address: str
    from_name: str | None = None


class SmsHttpSettings(BaseModel):
    """HTTP provider transport for the SMS channel."""

    model_config = {"frozen": True}

    endpoint: str
    api_key: str
    sender_id: str | None = None


class CadenceSettings(BaseModel):
    """Top-level cadence configuration.

    All settings are validated and frozen after construction. Every section
    has defaults, so an empty settings file yields a working development
    configuration (SQLite database, fake transports).
    """

    model_config = {"frozen": True}

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    batching: BatchingSettings = Field(default_factory=BatchingSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    smtp: SmtpSettings | None = Field(
        default=None, description="Email transport (fake sender when unset)"
    )
    sms_http: SmsHttpSettings | None = Field(
        default=None, description="SMS transport (fake sender when unset)"
    )
    log_format: Literal["console", "json"] = Field(default="console")
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


def load_settings(config_path: Path) -> CadenceSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (CADENCE_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: CADENCE_DATABASE__URL for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated CadenceSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="CADENCE",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; Pydantic fields are lowercase
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {
        k.lower(): _lower_keys(v)
        for k, v in dynaconf_settings.as_dict().items()
        if k not in internal_keys
    }
    return CadenceSettings(**raw_config)


def _lower_keys(value: Any) -> Any:
    """Lowercase nested mapping keys produced by environment overrides."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def resolve_config(settings: CadenceSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-safe dict (secrets included).

    Args:
        settings: Validated CadenceSettings instance

    Returns:
        Dict representation suitable for JSON serialization
    """
    return settings.model_dump(mode="json")
