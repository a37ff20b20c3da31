"""Configuration management for Hyper-V MCP server."""

import asyncio
import os
import re
import socket
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from ..constants import (
    DEFAULT_ASSERT_INTERVAL,
    DEFAULT_ASSERT_MAX_ATTEMPTS,
    DEFAULT_SWITCH_HINT,
)
from ..utils import same_host

logger = structlog.get_logger()


class HyperVHost(BaseModel):
    """Configuration for a Hyper-V host reachable over OpenSSH."""

    hostname: str
    user: str
    port: int = 22
    identity_file: str | None = None
    password: str | None = None
    description: str = ""
    tags: list[str] = Field(default_factory=list)
    vm_storage_path: str | None = None  # Default destination root for VM files on this host
    switch_name: str | None = None  # Preferred switch when this host is a destination
    enabled: bool = True


class MigrationSettings(BaseModel):
    """Migration behaviour settings."""

    switch_hint: str = DEFAULT_SWITCH_HINT
    assert_max_attempts: int = Field(default=DEFAULT_ASSERT_MAX_ATTEMPTS, ge=1)
    assert_interval: float = Field(default=DEFAULT_ASSERT_INTERVAL, ge=0)
    auto_approve: bool = False
    migration_timeout: int = Field(default=14400, ge=1)  # Overall wall-clock budget in seconds
    local_hostname: str = Field(default_factory=socket.gethostname)
    max_parallel_migrations: int = Field(default=1, ge=1)
    grant_source_trust: bool = True


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="127.0.0.1", alias="FASTMCP_HOST")
    port: int = Field(default=8000, alias="FASTMCP_PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = {"populate_by_name": True}


class HyperVMCPConfig(BaseSettings):
    """Main configuration for Hyper-V MCP server."""

    hosts: dict[str, HyperVHost] = Field(default_factory=dict)
    migration: MigrationSettings = Field(default_factory=MigrationSettings)
    server: ServerConfig = Field(default_factory=ServerConfig)
    config_file: str = Field(default="config/hosts.yml", alias="HYPERV_HOSTS_CONFIG")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    def find_host(self, host: str) -> HyperVHost | None:
        """Find host settings by host id or by hostname."""
        if host in self.hosts:
            return self.hosts[host]
        for host_config in self.hosts.values():
            if same_host(host_config.hostname, host):
                return host_config
        return None

    def hostname_for(self, host: str) -> str:
        """Network name of ``host``; unknown names are returned unchanged."""
        host_config = self.find_host(host)
        return host_config.hostname if host_config else host


def load_config(config_path: str | None = None) -> HyperVMCPConfig:
    """Load configuration from multiple sources (synchronous interface).

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded configuration

    Note:
        For async code, use load_config_async() instead.
    """
    try:
        asyncio.get_running_loop()
        raise RuntimeError(
            "load_config() cannot be called from within an async context. "
            "Use 'await load_config_async()' instead."
        )
    except RuntimeError as e:
        if "no running event loop" in str(e).lower():
            return asyncio.run(load_config_async(config_path))
        raise


async def load_config_async(config_path: str | None = None) -> HyperVMCPConfig:
    """Load configuration from multiple sources (async interface).

    Order: .env, user config (~/.config/hyperv-mcp/hosts.yml), project
    config, then environment overrides.
    """
    load_dotenv()

    config = HyperVMCPConfig()

    user_config_path = Path.home() / ".config" / "hyperv-mcp" / "hosts.yml"
    await _load_config_file(config, user_config_path)

    from ..server import get_config_dir  # Import at use to avoid circular imports

    default_config_file = os.getenv("HYPERV_HOSTS_CONFIG", str(get_config_dir() / "hosts.yml"))
    project_config_path = Path(config_path or default_config_file)
    await _load_config_file(config, project_config_path)

    config.config_file = str(project_config_path)

    _apply_env_overrides(config)

    return config


async def _load_config_file(config: HyperVMCPConfig, config_path: Path) -> None:
    """Load and apply configuration from a YAML file."""
    if not config_path.exists():
        return

    yaml_config = await _load_yaml_config(config_path)
    _apply_host_config(config, yaml_config)
    _apply_migration_config(config, yaml_config)
    _apply_server_config(config, yaml_config)


def _apply_host_config(config: HyperVMCPConfig, yaml_config: dict[str, Any]) -> None:
    """Apply host configuration from YAML data."""
    if "hosts" in yaml_config and yaml_config["hosts"]:
        for host_id, host_data in yaml_config["hosts"].items():
            config.hosts[host_id] = HyperVHost(**host_data)


def _apply_migration_config(config: HyperVMCPConfig, yaml_config: dict[str, Any]) -> None:
    """Apply migration settings from YAML data."""
    migration = yaml_config.get("migration")
    if not migration:
        return
    merged = config.migration.model_dump()
    merged.update(migration)
    config.migration = MigrationSettings(**merged)


def _apply_server_config(config: HyperVMCPConfig, yaml_config: dict[str, Any]) -> None:
    """Apply server configuration from YAML data."""
    if "server" in yaml_config:
        for key, value in yaml_config["server"].items():
            if hasattr(config.server, key):
                setattr(config.server, key, value)


def _apply_env_overrides(config: HyperVMCPConfig) -> None:
    """Apply environment variable overrides."""
    if os.getenv("FASTMCP_HOST"):
        config.server.host = os.getenv("FASTMCP_HOST", config.server.host)
    if port_env := os.getenv("FASTMCP_PORT"):
        config.server.port = int(port_env)
    if os.getenv("LOG_LEVEL"):
        config.server.log_level = os.getenv("LOG_LEVEL", config.server.log_level)
    if hint := os.getenv("HYPERV_SWITCH_HINT"):
        config.migration.switch_hint = hint


async def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = await asyncio.to_thread(config_path.read_text)
        content = _expand_yaml_config(content)

        loaded = yaml.safe_load(content)
        if not isinstance(loaded, dict):
            return {}
        return loaded
    except Exception as e:
        raise ValueError(f"Failed to load config from {config_path}: {e}") from e


def _expand_yaml_config(content: str) -> str:
    """Securely expand environment variables with allowlist."""

    allowed_env_vars = {
        "HOME",
        "USER",
        "USERPROFILE",
        "XDG_CONFIG_HOME",
        "HYPERV_HOSTS_CONFIG",
        "HYPERV_MCP_CONFIG_DIR",
        "HYPERV_SSH_USER",
        "HYPERV_SSH_KEY",
        "HYPERV_VM_STORAGE_PATH",
        "FASTMCP_HOST",
        "FASTMCP_PORT",
        "LOG_LEVEL",
    }

    def replace_if_allowed(match):
        var_name = match.group(1) or match.group(2)
        original_pattern = match.group(0)

        if var_name in allowed_env_vars:
            return os.getenv(var_name, original_pattern)  # Keep original if not found
        logger.warning(
            "Environment variable not in allowlist, skipping expansion",
            variable=var_name,
            pattern=original_pattern,
        )
        return original_pattern

    # Replace ${VAR} and $VAR patterns with allowlist check
    return re.sub(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)", replace_if_allowed, content)
