"""
Configuration module for the Clinic Cascade Toolkit.

Provides centralized configuration for the soft delete engine, the audit
recorder, and the statistics aggregator.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Union, get_args, get_origin

import pytz
from pydantic import BaseModel, Field, field_validator

# Upper bound on how stale dashboard statistics may be
MAX_STATS_STALENESS_SECONDS = 60


class AuditStorageBackend(str, Enum):
    """Supported storage backends for audit events."""

    SQL = "sql"
    FILE = "file"


class CascadeConfig(BaseModel):
    """Central configuration for the cascade engine.

    Configuration Sources (in order of precedence):
        1. Programmatic settings (highest priority)
        2. Environment variables (CASCADE_ prefix)
        3. Default values (lowest priority)

    Example:
        >>> config = CascadeConfig(
        ...     application_name="ClinicAdmin",
        ...     timezone="Asia/Kolkata",
        ...     stats_cache_ttl_seconds=30,
        ... )

        Loading from environment:

        >>> import os
        >>> os.environ['CASCADE_DATABASE_URL'] = 'postgresql://...'
        >>> config = CascadeConfig.from_env()

    Note:
        ``stats_cache_ttl_seconds`` is the staleness bound reported to
        dashboard callers and may not exceed 60 seconds.
    """

    # General settings
    application_name: str = Field(
        "Clinic Admin Console", description="Name of the calling application"
    )
    environment: str = Field(
        "production", description="Environment (development, staging, production)"
    )
    timezone: str = Field(
        "UTC", description="Timezone used for daily/weekly/monthly statistics"
    )
    log_level: str = Field("INFO", description="Log level for the package logger")

    # Entity store settings
    database_url: str = Field(
        "sqlite:///./clinic_cascade.db", description="Entity store connection string"
    )

    # Audit settings
    audit_enabled: bool = Field(True, description="Record cascade audit events")
    audit_storage_backend: AuditStorageBackend = Field(
        AuditStorageBackend.SQL, description="Storage backend for audit events"
    )
    audit_database_url: Optional[str] = Field(
        None, description="Audit connection string (defaults to database_url)"
    )
    audit_file_path: str = Field(
        "./audit_logs", description="Directory for file-based audit storage"
    )

    # Request settings
    reason_max_length: int = Field(
        500, description="Maximum length for delete/restore reasons", gt=0
    )

    # Statistics settings
    stats_cache_enabled: bool = Field(
        True, description="Serve dashboard statistics from a short-lived cache"
    )
    stats_cache_ttl_seconds: int = Field(
        MAX_STATS_STALENESS_SECONDS,
        description="Statistics cache time-to-live in seconds",
        gt=0,
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is valid."""
        valid_environments = {"development", "staging", "production", "test"}
        if v.lower() not in valid_environments:
            raise ValueError(
                f"Environment must be one of: {', '.join(sorted(valid_environments))}"
            )
        return v.lower()

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure the timezone is known to pytz."""
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is a standard logging level name."""
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("stats_cache_ttl_seconds")
    @classmethod
    def validate_stats_staleness(cls, v: int) -> int:
        """Keep dashboard statistics within the advertised staleness bound."""
        if v > MAX_STATS_STALENESS_SECONDS:
            raise ValueError(
                "Statistics cache TTL may not exceed "
                f"{MAX_STATS_STALENESS_SECONDS} seconds"
            )
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump()

    @property
    def effective_audit_database_url(self) -> str:
        """Connection string used by the SQL audit backend."""
        return self.audit_database_url or self.database_url

    @classmethod
    def from_env(cls, prefix: str = "CASCADE_") -> "CascadeConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]

                field_type = field_info.annotation

                # Handle Optional types
                if get_origin(field_type) is Union:
                    args = get_args(field_type)
                    field_type = next(
                        (arg for arg in args if arg is not type(None)), str
                    )

                try:
                    if field_type == bool:
                        config_dict[field_name] = value.lower() in (
                            "true",
                            "1",
                            "yes",
                            "on",
                        )
                    elif field_type == int:
                        config_dict[field_name] = int(value)
                    elif isinstance(field_type, type) and issubclass(field_type, Enum):
                        config_dict[field_name] = field_type(value)
                    else:
                        config_dict[field_name] = value
                except (ValueError, TypeError):
                    # Leave the raw value for pydantic to report
                    config_dict[field_name] = value

        return cls.model_validate(config_dict)

    def get_audit_config(self) -> Dict[str, Any]:
        """Get audit storage configuration."""
        return {
            "enabled": self.audit_enabled,
            "backend": self.audit_storage_backend,
            "connection_string": self.effective_audit_database_url,
            "storage_path": self.audit_file_path,
        }

    def get_stats_config(self) -> Dict[str, Any]:
        """Get statistics aggregator configuration."""
        return {
            "cache_enabled": self.stats_cache_enabled,
            "cache_ttl_seconds": self.stats_cache_ttl_seconds,
            "timezone": self.timezone,
        }


# Global configuration instance
_config: Optional[CascadeConfig] = None


def get_config() -> CascadeConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = CascadeConfig.from_env()

    return _config


def set_config(config: CascadeConfig) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> CascadeConfig:
    """
    Configure the toolkit with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = CascadeConfig(**kwargs)
    else:
        config_dict = _config.to_dict()
        config_dict.update(kwargs)
        _config = CascadeConfig(**config_dict)

    return _config
