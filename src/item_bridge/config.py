"""Configuration management for Item Bridge using Pydantic.

This module provides type-safe configuration models for the two platform
instances, batching and concurrency tuning, duplicate-detection cache,
match normalization, job state storage, and logging.
"""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformInstanceConfig(BaseModel):
    """Configuration for a platform instance (source or target)."""

    url: str = Field(..., description="Platform API base URL")
    token: str = Field(..., description="API authentication token")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=60, ge=1, le=1200, description="API request timeout in seconds")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        if not v.startswith("https://"):
            raise ValueError("URL should use HTTPS for security")
        return v.rstrip("/")

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        """Validate token is not empty."""
        if not v or v.strip() == "":
            raise ValueError("Token cannot be empty")
        return v


class PerformanceConfig(BaseModel):
    """Batching, concurrency, and rate-limit tuning."""

    batch_size: int = Field(default=500, ge=1, le=500, description="Items per write batch")
    concurrency: int = Field(
        default=5, ge=1, le=25, description="Maximum concurrent write requests within a batch"
    )
    max_retries: int = Field(
        default=3, ge=0, le=10, description="Maximum attempts per item for transient failures"
    )
    stop_on_error: bool = Field(
        default=False, description="Abort the whole operation on the first batch-level exception"
    )
    silent: bool = Field(
        default=True, description="Suppress platform notifications for created/updated items"
    )
    rate_limit: int = Field(default=10, ge=1, le=50, description="Requests per second limit")
    pause_threshold: int = Field(
        default=10,
        ge=0,
        le=1000,
        description="Pause before a batch when remaining quota drops below this value",
    )
    max_rate_limit_wait: int = Field(
        default=3600,
        ge=1,
        le=7200,
        description="Upper bound (seconds) for a single wait on the rate-limit reset",
    )
    http_max_connections: int = Field(
        default=50, ge=1, le=200, description="Maximum number of connections in the pool"
    )
    http_max_keepalive_connections: int = Field(
        default=20, ge=1, le=100, description="Maximum number of keepalive connections"
    )

    @model_validator(mode="after")
    def validate_pool_size(self) -> "PerformanceConfig":
        """Ensure the connection pool can serve every concurrent request."""
        if self.concurrency > self.http_max_connections:
            raise ValueError("concurrency cannot exceed http_max_connections")
        return self


class CacheConfig(BaseModel):
    """Duplicate-detection (prefetch) cache configuration."""

    ttl_seconds: int = Field(
        default=43200, ge=60, le=604800, description="Entry lifetime in seconds (default 12h)"
    )
    stream_batch_size: int = Field(
        default=500, ge=1, le=500, description="Page size used to scan the target app"
    )
    build_timeout_seconds: int = Field(
        default=1800, ge=10, le=86400, description="Overall time budget for a cache build"
    )
    stall_timeout_seconds: int = Field(
        default=120,
        ge=5,
        le=3600,
        description="Maximum wait for the next target page before the build counts as stalled",
    )


class MatchingConfig(BaseModel):
    """Match-value normalization options."""

    number_rounding: Literal["half_up", "none"] = Field(
        default="half_up",
        description=(
            "How numeric match values are canonicalized: 'half_up' rounds to a whole "
            "number (15.2 and 15 match), 'none' keeps fractional digits"
        ),
    )


class StateConfig(BaseModel):
    """Job state storage configuration."""

    data_dir: str = Field(default="data/migrations", description="Directory for job state files")
    failure_log_dir: str = Field(
        default="logs/migrations", description="Directory for per-job failure logs"
    )
    write_retry_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts for each atomic state write"
    )
    heartbeat_stale_seconds: int = Field(
        default=300,
        ge=30,
        le=86400,
        description="Heartbeat age after which an in-progress job is treated as not running",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING", description="Console log level")
    file_level: str = Field(default="DEBUG", description="File log level")
    format: str = Field(default="json", description="Log file format (json or console)")
    file: str | None = Field(default="logs/item-bridge.log", description="Log file path")
    log_payloads: bool = Field(
        default=False,
        description="Enable request/response payload logging at DEBUG level (tokens redacted)",
    )
    max_payload_size: int = Field(
        default=10000, ge=100, le=1000000, description="Maximum payload characters to log"
    )

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class BridgeConfig(BaseSettings):
    """Main Item Bridge configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ITEM_BRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    source: PlatformInstanceConfig = Field(..., description="Source platform configuration")
    target: PlatformInstanceConfig = Field(..., description="Target platform configuration")

    performance: PerformanceConfig = Field(
        default_factory=PerformanceConfig, description="Performance configuration"
    )
    cache: CacheConfig = Field(default_factory=CacheConfig, description="Cache configuration")
    matching: MatchingConfig = Field(
        default_factory=MatchingConfig, description="Match normalization configuration"
    )
    state: StateConfig = Field(default_factory=StateConfig, description="State configuration")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )


def load_config_from_yaml(config_path: str | Path) -> BridgeConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        BridgeConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is empty or references unset variables
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return BridgeConfig(**config_data)


def _expand_env_vars(data):
    """Recursively expand ``${VAR_NAME}`` placeholders from the environment.

    Args:
        data: Parsed configuration value

    Returns:
        The value with placeholders substituted
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value
        return data
    else:
        return data
