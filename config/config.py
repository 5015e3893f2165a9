"""Configuration management for the reminder engine."""

import os
import yaml
from pathlib import Path
from typing import Optional, Any, List
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv


# Load environment variables from .env file
load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class RemindersConfig(BaseModel):
    """Reminder monitor and delivery configuration."""
    enabled: bool = Field(default=True, description="Whether the monitor runs")
    check_interval_seconds: float = Field(default=5.0, gt=0, description="Seconds between due scans")
    grace_period_seconds: float = Field(default=300.0, ge=0,
                                        description="Seconds a notified reminder waits before auto-completion")
    delivery_timeout_seconds: float = Field(default=5.0, gt=0, description="Upper bound for a single send")
    default_snooze_minutes: int = Field(default=10, gt=0, description="Snooze length when none is given")
    retention_days: float = Field(default=7.0, gt=0, description="Completed reminders older than this are deleted")
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0, description="Seconds between retention sweeps")


class StorageConfig(BaseModel):
    """Durable store configuration."""
    backend: str = Field(default="sqlite", description="'sqlite' or 'memory'")
    sqlite_path: str = Field(default="data/reminders.db", description="SQLite database file")
    operation_timeout_seconds: float = Field(default=3.0, gt=0, description="Timeout for durable calls")
    probe_interval_seconds: float = Field(default=10.0, gt=0, description="Gap between recovery probes")

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("sqlite", "memory"):
            raise ValueError(f"unknown storage backend '{value}'")
        return value


class PushConfig(BaseModel):
    """Web Push (VAPID) configuration."""
    enabled: bool = Field(default=True, description="Whether push delivery is attempted")
    vapid_public_key: str = Field(default="", description="VAPID public key handed to browsers")
    vapid_private_key: str = Field(default="", description="VAPID private key")
    vapid_subject: str = Field(default="mailto:admin@example.com", description="VAPID contact claim")
    ttl_seconds: int = Field(default=3600, gt=0, description="How long the push service keeps a message")


class ServerConfig(BaseModel):
    """HTTP / WebSocket server configuration."""
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=8000, description="Bind port")
    heartbeat_timeout_seconds: float = Field(default=60.0, gt=0,
                                             description="Live client considered dead after this silence")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Logging level")
    show_timestamps: bool = Field(default=True, description="Whether to show timestamps")

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"unknown log level '{value}'")
        return value


class AppConfig(BaseModel):
    """Application configuration."""
    reminders: RemindersConfig = Field(default_factory=RemindersConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    push: PushConfig = Field(default_factory=PushConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class RuntimeSettings(BaseSettings):
    """Process-level overrides read from NUDGE_* environment variables."""
    model_config = SettingsConfigDict(env_prefix="NUDGE_", env_file=".env", extra="ignore")

    config_path: Optional[Path] = None
    log_level: Optional[str] = None


def expand_env_vars(data: Any) -> Any:
    """Recursively expand environment variables in configuration data.

    Supports ${VAR} and ${VAR:default} syntax.
    """
    if isinstance(data, dict):
        return {key: expand_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_part = data[2:-1]
            if ":" in var_part:
                var_name, default_value = var_part.split(":", 1)
                return os.getenv(var_name, default_value)
            return os.getenv(var_part, data)
        return data
    else:
        return data


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load configuration from YAML file and environment variables.

    Args:
        config_path: Path to config YAML file. Defaults to NUDGE_CONFIG_PATH,
            then config/config.yaml

    Returns:
        AppConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If configuration is invalid
    """
    settings = RuntimeSettings()
    if config_path is None:
        config_path = settings.config_path or DEFAULT_CONFIG_PATH
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config_data = yaml.safe_load(f) or {}

    config_data = expand_env_vars(config_data)

    if settings.log_level:
        config_data.setdefault("logging", {})["level"] = settings.log_level

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def validate_config(config: AppConfig) -> List[str]:
    """Check for settings that load fine but will not work.

    Args:
        config: Application configuration

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if config.push.enabled and not config.push.vapid_private_key:
        errors.append("Push is enabled but VAPID_PRIVATE_KEY is not set")
    if config.push.enabled and not config.push.vapid_subject.startswith(("mailto:", "https://")):
        errors.append("VAPID subject must be a mailto: or https:// URL")

    if config.storage.backend == "sqlite" and config.storage.sqlite_path != ":memory:":
        parent = Path(config.storage.sqlite_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            errors.append(f"SQLite directory is not writable: {parent}")

    if config.reminders.delivery_timeout_seconds >= config.reminders.check_interval_seconds * 10:
        errors.append("Delivery timeout is much longer than the check interval")

    return errors


# Global config instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance.

    Raises:
        RuntimeError: If configuration hasn't been loaded
    """
    global _config
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call init_config() first.")
    return _config


def init_config(config_path: Optional[Path] = None) -> AppConfig:
    """Initialize the global configuration."""
    global _config
    _config = load_config(config_path)
    return _config
