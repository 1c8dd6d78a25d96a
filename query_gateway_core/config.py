"""
Centralized configuration management for the Query Gateway framework.

This module provides a unified configuration system with support for:
- Environment variables
- Tenant secret encryption settings
- Token and gateway tuning
- Validation using Pydantic
"""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .constants import EnvironmentVariable, Limits, LogLevel, QueueName, Timeouts


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.DATABASE_URL.value, "sqlite:///./query_gateway.db"
        ),
        description="Database connection string",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")


class QueueConfig(BaseModel):
    """Queue configuration for Azure Storage Queues."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.AZURE_STORAGE_CONNECTION.value, ""),
        description="Azure Storage connection string",
    )
    logs_queue_name: str = Field(default=QueueName.LOGS.value, description="Logs queue name")
    audit_queue_name: str = Field(default=QueueName.AUDIT.value, description="Audit queue name")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.LOG_LEVEL.value, LogLevel.INFO.value),
        description="Logging level",
    )
    enable_queue_logging: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.ENABLE_QUEUE_LOGGING.value),
        description="Ship log entries to the logs queue",
    )

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {level.value for level in LogLevel}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class SecurityConfig(BaseModel):
    """Security-related configuration."""

    encryption_key: Optional[str] = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.TENANT_ENCRYPTION_KEY.value) or None,
        description="Master key for tenant secrets (64 hex chars or base64 of 32 bytes)",
    )
    allow_insecure_dev_key: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.ALLOW_INSECURE_DEV_KEY.value),
        description="Permit a fixed development key when no master key is configured",
    )
    enable_audit_logging: bool = Field(default=True, description="Enable audit logging")


class TokenConfig(BaseModel):
    """OAuth2 token acquisition settings."""

    safety_margin_seconds: int = Field(
        default=Limits.TOKEN_SAFETY_MARGIN_SECONDS,
        ge=0,
        description="Treat tokens as expired this many seconds before their literal expiry",
    )
    request_timeout_seconds: float = Field(
        default=Timeouts.TOKEN_REQUEST, gt=0, description="Token endpoint timeout"
    )
    token_endpoint: str = Field(default="token.oauth2", description="Default token endpoint")
    authorization_endpoint: str = Field(
        default="authorization.oauth2", description="Default authorization endpoint"
    )
    revoke_endpoint: str = Field(default="revoke_token.oauth2", description="Default revoke endpoint")
    default_scope: str = Field(default="read write", description="Default OAuth2 scope")


class GatewayConfig(BaseModel):
    """Outbound ION API settings."""

    base_url: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.ION_API_BASE_URL.value,
            "https://mingle-ionapi.eu1.inforcloudsuite.com",
        ),
        description="ION API gateway base URL",
    )
    soap_services_path: str = Field(default="LN/c4ws/services", description="SOAP services path")
    odata_services_path: str = Field(default="LN/lnapi", description="OData services path")
    soap_namespace: str = Field(
        default="http://www.infor.com/ln/c4ws", description="Namespace of the SOAP action element"
    )
    default_soap_action: str = Field(default="List", description="SOAP action when none is given")
    request_timeout_seconds: float = Field(
        default=Timeouts.EXTERNAL_API_CALL, gt=0, description="Protocol call timeout"
    )
    default_limit: int = Field(
        default=Limits.DEFAULT_RECORD_LIMIT, gt=0, description="Client-side record limit"
    )

    @field_validator("base_url")
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class AppConfig(BaseModel):
    """Main application configuration."""

    environment: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.APP_ENV.value, "development"),
        description="Application environment",
    )
    debug: bool = Field(
        default_factory=lambda: _env_flag(EnvironmentVariable.DEBUG.value),
        description="Debug mode",
    )

    # Sub-configurations
    database: DatabaseConfig = Field(
        default_factory=DatabaseConfig, description="Database configuration"
    )
    queue: QueueConfig = Field(default_factory=QueueConfig, description="Queue configuration")
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )
    security: SecurityConfig = Field(
        default_factory=SecurityConfig, description="Security configuration"
    )
    token: TokenConfig = Field(default_factory=TokenConfig, description="Token configuration")
    gateway: GatewayConfig = Field(
        default_factory=GatewayConfig, description="Gateway configuration"
    )

    # Custom configuration
    custom: Dict[str, Any] = Field(default_factory=dict, description="Custom configuration values")

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"production", "prod"}

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create configuration from environment variables."""
        return cls()

    def get_custom(self, key: str, default: Any = None) -> Any:
        """Get a custom configuration value."""
        return self.custom.get(key, default)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
