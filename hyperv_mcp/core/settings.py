"""Timeout settings configuration for Hyper-V MCP operations.

Provides centralized timeout configuration using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TimeoutSettings(BaseSettings):
    """Remote operation timeout configuration."""

    remote_connect_timeout: int = Field(
        30, alias="REMOTE_CONNECT_TIMEOUT", description="SSH session setup timeout in seconds"
    )

    remote_command_timeout: int = Field(
        300, alias="REMOTE_COMMAND_TIMEOUT", description="Default remote command timeout in seconds"
    )

    export_timeout: int = Field(
        3600, alias="EXPORT_TIMEOUT", description="Export-VM timeout in seconds"
    )

    import_timeout: int = Field(
        3600, alias="IMPORT_TIMEOUT", description="Import-VM timeout in seconds"
    )

    move_timeout: int = Field(7200, alias="MOVE_TIMEOUT", description="Move-VM timeout in seconds")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


# Global settings instance
timeout_settings = TimeoutSettings()

# Timeout constants for easy import
REMOTE_CONNECT_TIMEOUT: int = timeout_settings.remote_connect_timeout
REMOTE_COMMAND_TIMEOUT: int = timeout_settings.remote_command_timeout
EXPORT_TIMEOUT: int = timeout_settings.export_timeout
IMPORT_TIMEOUT: int = timeout_settings.import_timeout
MOVE_TIMEOUT: int = timeout_settings.move_timeout
