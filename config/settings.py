"""
Configuration management for the session repository.

This module provides centralized configuration loading and validation using Pydantic settings.
Values are loaded from environment variables or .env files.

The expiration knobs (default interval, safety margin, bucket granularity,
sweep period) are read once at startup and handed to the repository and
sweeper as constructor arguments; nothing reads them as process globals.
"""

import os
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        # If invalid value, default to development
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the list of .env files to load for the given environment.

    Files are loaded in order, with later files overriding earlier ones.
    The base .env file is loaded first, then the environment-specific file.

    Args:
        environment: The target environment.

    Returns:
        Tuple of .env file paths to load.
    """
    env_file_map = {
        Environment.DEVELOPMENT: ".env.development",
        Environment.STAGING: ".env.staging",
        Environment.PRODUCTION: ".env.production",
    }

    env_specific_file = env_file_map.get(environment, ".env.development")

    return (".env", env_specific_file)


class Settings(BaseSettings):
    """
    Session layer settings loaded from environment variables.

    Every field has a usable default for local development. Outside
    development a Redis URL is mandatory when the redis store is selected.

    Environment-specific configuration is supported through:
    - .env.development - Development environment settings
    - .env.staging - Staging environment settings
    - .env.production - Production environment settings

    The ENVIRONMENT variable determines which file to load.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Session Store Configuration
    session_store_type: str = Field(
        default="redis",
        description="Session store type: 'redis' or 'memory'"
    )
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for session storage"
    )
    redis_socket_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Socket timeout for every Redis command"
    )
    session_namespace: str = Field(
        default="",
        description="Prefix applied to every key the repository writes"
    )

    # Expiration Configuration
    default_max_inactive_interval_seconds: int = Field(
        default=1800,
        description="Inactivity interval for new sessions; zero or negative never expires"
    )
    expiration_safety_margin_seconds: int = Field(
        default=300,
        ge=0,
        le=86400,
        description="Extra native TTL beyond logical expiration"
    )
    expiration_bucket_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Granularity of the expiration index buckets"
    )
    sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        le=3600,
        description="Period between expiration sweep cycles"
    )
    save_mode: str = Field(
        default="on_set_attribute",
        description="Which attributes are written on save: on_set_attribute, on_get_attribute, always"
    )
    listen_for_expired_markers: bool = Field(
        default=False,
        description="Subscribe to Redis keyspace notifications for lapsed expiration markers"
    )

    # Observability Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    otel_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry collector endpoint URL"
    )
    otel_service_name: str = Field(
        default="session-repository",
        description="Service name for OpenTelemetry traces"
    )

    # Note: model_config is set dynamically via create_settings_for_environment()
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that redis_url, when given, uses a Redis scheme."""
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return v

    @field_validator("session_namespace")
    @classmethod
    def validate_session_namespace(cls, v: str) -> str:
        """Strip surrounding whitespace and trailing separators from the namespace."""
        v = v.strip().rstrip(":")
        if " " in v:
            raise ValueError("session_namespace cannot contain spaces")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(valid_levels)}")
        return v

    @field_validator("session_store_type")
    @classmethod
    def validate_session_store_type(cls, v: str) -> str:
        """Validate that session_store_type is either 'redis' or 'memory'."""
        v = v.strip().lower()
        if v not in {"redis", "memory"}:
            raise ValueError("session_store_type must be 'redis' or 'memory'")
        return v

    @field_validator("save_mode")
    @classmethod
    def validate_save_mode(cls, v: str) -> str:
        """Validate that save_mode names a known save mode."""
        v = v.strip().lower()
        if v not in {"on_set_attribute", "on_get_attribute", "always"}:
            raise ValueError(
                "save_mode must be 'on_set_attribute', 'on_get_attribute' or 'always'"
            )
        return v

    @model_validator(mode="after")
    def validate_session_store_config(self) -> "Settings":
        """Validate that a Redis URL is provided where one is required."""
        if self.session_store_type == "redis" and not self.redis_url:
            # In development, redis_url is optional (falls back to the local default)
            if self.environment != Environment.DEVELOPMENT:
                raise ValueError(
                    "redis_url is required when session_store_type is 'redis' "
                    "in non-development environments"
                )
        if self.session_store_type == "memory" and self.environment == Environment.PRODUCTION:
            raise ValueError("the memory session store cannot be used in production")
        if self.listen_for_expired_markers and self.session_store_type != "redis":
            raise ValueError("listen_for_expired_markers requires the redis session store")
        return self

    @property
    def default_max_inactive_interval(self) -> timedelta:
        return timedelta(seconds=self.default_max_inactive_interval_seconds)

    @property
    def expiration_safety_margin(self) -> timedelta:
        return timedelta(seconds=self.expiration_safety_margin_seconds)

    @property
    def expiration_bucket(self) -> timedelta:
        return timedelta(seconds=self.expiration_bucket_seconds)


class ConfigurationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append(f"\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Factory function to create Settings for a specific environment.

    This function detects the environment from the ENVIRONMENT variable (if not provided)
    and loads the appropriate environment-specific .env file.

    Args:
        environment: Optional environment override. If not provided, detected from
                    ENVIRONMENT variable.

    Returns:
        Settings: Validated settings for the specified environment.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    env_files = _get_env_files(environment)

    existing_env_files = [env_file for env_file in env_files if Path(env_file).exists()]

    # If no env files exist, use the default tuple (pydantic will handle missing files)
    if not existing_env_files:
        existing_env_files = list(env_files)

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=tuple(existing_env_files),
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore"
            )

        return EnvironmentSettings()
    except Exception as e:
        # Parse Pydantic validation errors to provide better error messages
        missing_fields = []
        invalid_fields = {}

        if hasattr(e, 'errors'):
            for error in e.errors():
                field_name = '.'.join(str(loc) for loc in error.get('loc', []))
                error_type = error.get('type', '')
                error_msg = error.get('msg', str(error))

                if error_type == 'missing':
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name or "settings"] = error_msg

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields
        ) from e


# Global settings cache
_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the settings singleton.

    Settings are loaded once and cached for subsequent calls.
    The environment is detected from the ENVIRONMENT variable.

    Returns:
        Settings: The validated settings.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """
    Clear the settings cache.

    This is primarily useful for testing to allow reloading settings
    with different environment variables.
    """
    global _settings_cache
    _settings_cache = None


def validate_startup() -> None:
    """
    Validate cross-field settings before the repository starts serving.

    Raises:
        ConfigurationError: If any settings combination is unusable.
    """
    settings = get_settings()

    validation_errors = {}

    bucket = settings.expiration_bucket_seconds
    margin = settings.expiration_safety_margin_seconds
    if margin < bucket:
        # Native TTL would fire before the bucket holding the session is swept
        validation_errors["expiration_safety_margin_seconds"] = (
            f"Safety margin ({margin}s) must be at least the bucket granularity ({bucket}s)"
        )

    if settings.sweep_interval_seconds > margin and margin > 0:
        validation_errors["sweep_interval_seconds"] = (
            f"Sweep interval ({settings.sweep_interval_seconds}s) exceeds the safety "
            f"margin ({margin}s); sessions may lapse natively without an expiration event"
        )

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )


def get_environment_info() -> dict:
    """
    Get information about the current environment configuration.

    Returns:
        dict: Information about the detected environment and loaded config files.
    """
    environment = _detect_environment()
    env_files = _get_env_files(environment)

    existing_files = [f for f in env_files if Path(f).exists()]

    return {
        "environment": environment.value,
        "env_files_checked": list(env_files),
        "env_files_loaded": existing_files,
    }
