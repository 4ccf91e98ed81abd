"""
Configuration models for the AlphaForge broker gateway.

Uses Pydantic for validation and type safety.
"""
from typing import Literal, Optional
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

from alphaforge import constants

CONFIG_SCHEMA_VERSION = "2026-10-01"

_ENV_REF = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')


def _expand_env(node):
    """Substitute ${VAR} / $VAR in parsed string values; unset references are left as-is."""
    if isinstance(node, dict):
        return {key: _expand_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [_expand_env(value) for value in node]
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1) or m.group(2), m.group(0)), node)
    return node


class BrokerConfig(BaseSettings):
    """External broker endpoints and HTTP transport tuning."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = constants.BREEZE_BASE_URL
    login_url: str = constants.BREEZE_LOGIN_URL
    stream_url: str = constants.BREEZE_STREAM_URL

    request_timeout_seconds: float = Field(default=constants.DEFAULT_API_TIMEOUT, ge=1.0, le=120.0)
    pool_size: int = Field(default=constants.HTTP_POOL_SIZE, ge=1, le=500)
    pool_size_per_host: int = Field(default=constants.HTTP_POOL_SIZE_PER_HOST, ge=1, le=500)
    keepalive_seconds: float = Field(default=constants.HTTP_KEEPALIVE_SECONDS, ge=1.0, le=300.0)


class GatewayConfig(BaseSettings):
    """Rate limiting, retry and circuit breaker thresholds."""
    model_config = SettingsConfigDict(extra="ignore")

    rate_limit_calls: int = Field(default=constants.RATE_LIMIT_CALLS, ge=1, le=10000)
    rate_limit_window_seconds: float = Field(default=constants.RATE_LIMIT_WINDOW_SECONDS, ge=1.0, le=3600.0)

    retry_max_attempts: int = Field(default=constants.MAX_RETRY_ATTEMPTS, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=constants.RETRY_BASE_DELAY_SECONDS, ge=0.0, le=30.0)

    circuit_failure_threshold: int = Field(default=constants.CIRCUIT_FAILURE_THRESHOLD, ge=1, le=50, description="Consecutive failures before opening breaker")
    circuit_cooldown_seconds: float = Field(default=constants.CIRCUIT_COOLDOWN_SECONDS, ge=0.0, le=600.0, description="Seconds before the half-open trial call")


class SessionConfig(BaseSettings):
    """Broker session lifecycle settings."""
    model_config = SettingsConfigDict(extra="ignore")

    cache_ttl_seconds: float = Field(default=constants.SESSION_CACHE_TTL_SECONDS, ge=1.0, le=86400.0)
    # None = tokens never expire unless the broker says so (401)
    session_ttl_hours: Optional[float] = Field(default=constants.SESSION_TTL_HOURS, ge=0.1, le=720.0)
    lock_minutes: int = Field(default=constants.LOCK_MINUTES, ge=1, le=1440)
    max_auth_failures: int = Field(default=constants.MAX_AUTH_FAILURES, ge=1, le=50)


class StreamConfig(BaseSettings):
    """Realtime tick stream settings."""
    model_config = SettingsConfigDict(extra="ignore")

    heartbeat_seconds: float = Field(default=constants.HEARTBEAT_SECONDS, ge=1.0, le=300.0)
    pong_timeout_seconds: float = Field(default=constants.PONG_TIMEOUT_SECONDS, ge=0.5, le=120.0)
    reconnect_base_delay_seconds: float = Field(default=constants.RECONNECT_BASE_DELAY_SECONDS, ge=0.0, le=60.0)
    max_reconnect_attempts: int = Field(default=constants.MAX_RECONNECT_ATTEMPTS, ge=0, le=50)
    replay_subscriptions_on_reconnect: bool = True
    default_exchange: str = constants.DEFAULT_EXCHANGE


class DataConfig(BaseSettings):
    """Persistence settings."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None
    credential_key: Optional[str] = Field(default=None, description="Fernet key for credentials at rest")


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class ApiConfig(BaseSettings):
    """HTTP API server settings."""
    model_config = SettingsConfigDict(extra="ignore")

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    environment: Literal["dev", "paper", "prod"] = "prod"

    @model_validator(mode="after")
    def validate_heartbeat(self):
        if self.stream.pong_timeout_seconds >= self.stream.heartbeat_seconds:
            raise ValueError("stream.pong_timeout_seconds must be below stream.heartbeat_seconds")
        return self

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} / $VAR references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            # Expanded after parsing so env values never go through the YAML scanner
            config_dict = _expand_env(yaml.safe_load(f) or {})

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        # Unresolved ${VAR} placeholders mean "not configured"
        data = config_dict.setdefault("data", {}) or {}
        for key in ("database_url", "credential_key"):
            value = data.get(key)
            if isinstance(value, str) and value.startswith("$"):
                data[key] = None
        if not data.get("database_url") and os.getenv("DATABASE_URL"):
            data["database_url"] = os.getenv("DATABASE_URL")
        config_dict["data"] = data

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.environment == "prod":
            if not self.data.database_url:
                raise ValueError("DATABASE_URL must be set in production")
            if not self.data.credential_key:
                raise ValueError("CREDENTIAL_ENCRYPTION_KEY must be set in production")
        if not self.broker.stream_url.startswith(("ws://", "wss://")):
            raise ValueError(f"broker.stream_url must be a websocket URL: {self.broker.stream_url}")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses alphaforge/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    from alphaforge.config.dotenv_loader import load_dotenv_files

    load_dotenv_files()

    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
