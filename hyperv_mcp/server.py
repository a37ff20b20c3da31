"""
FastMCP Hyper-V Migration Server

A FastMCP server that relocates Hyper-V virtual machines between hosts,
offline (export/import) or online (live move), with cluster awareness and
rollback. Hosts are driven with PowerShell over OpenSSH.
"""

import argparse
import os
import sys
import tempfile
from pathlib import Path
from typing import Annotated, Any

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.tools.tool import ToolResult
from pydantic import Field

from .core.config_loader import HyperVMCPConfig, load_config
from .core.exceptions import ConfigurationError
from .core.logging_config import get_server_logger, setup_logging
from .middleware import ErrorHandlingMiddleware, LoggingMiddleware
from .models.enums import MigrateAction, MigrationMode
from .services import VmMigrationService


def _container_detected() -> bool:
    return any(
        [
            os.getenv("HYPERV_MCP_CONTAINER", "").lower() in ("1", "true", "yes", "on"),
            os.path.exists("/.dockerenv"),
            os.getenv("container") is not None,
        ]
    )


def _first_usable_dir(candidates: list[Path], writable: bool = True) -> Path | None:
    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
        except OSError:
            continue
        if candidate.is_dir() and (not writable or os.access(candidate, os.W_OK)):
            return candidate
    return None


def get_data_dir() -> Path:
    """Get data directory based on environment.

    Priority order:
    1. FASTMCP_DATA_DIR (explicit override)
    2. HYPERV_MCP_DATA_DIR (application-specific)
    3. XDG_DATA_HOME (Linux/Unix standard)
    4. Container detection (/app/data)
    5. User home fallback (~/.hyperv-mcp/data)
    6. System temp fallback
    """
    candidates = [
        Path(path)
        for path in (os.getenv("FASTMCP_DATA_DIR"), os.getenv("HYPERV_MCP_DATA_DIR"))
        if path
    ]
    if xdg_data := os.getenv("XDG_DATA_HOME"):
        candidates.append(Path(xdg_data) / "hyperv-mcp")
    if _container_detected():
        candidates.append(Path("/app/data"))
    candidates.extend(
        [
            Path.home() / ".hyperv-mcp" / "data",
            Path(tempfile.gettempdir()) / "hyperv-mcp",
        ]
    )
    return _first_usable_dir(candidates) or Path.home() / ".hyperv-mcp" / "data"


def get_config_dir() -> Path:
    """Get config directory based on environment.

    Priority order:
    1. FASTMCP_CONFIG_DIR (explicit override)
    2. HYPERV_MCP_CONFIG_DIR (application-specific)
    3. XDG_CONFIG_HOME (Linux/Unix standard)
    4. Container detection (/app/config)
    5. Local project config (./config) when it exists
    6. User config fallback (~/.config/hyperv-mcp)
    """
    env_candidates = [
        Path(path)
        for path in (os.getenv("FASTMCP_CONFIG_DIR"), os.getenv("HYPERV_MCP_CONFIG_DIR"))
        if path
    ]
    if xdg_config := os.getenv("XDG_CONFIG_HOME"):
        env_candidates.append(Path(xdg_config) / "hyperv-mcp")
    if _container_detected():
        env_candidates.append(Path("/app/config"))

    if path := _first_usable_dir(env_candidates, writable=False):
        return path if path.is_absolute() else Path.cwd() / path

    local_config = Path.cwd() / "config"
    if local_config.is_dir():
        return local_config

    return _first_usable_dir([Path.home() / ".config" / "hyperv-mcp"], writable=False) or local_config


class HyperVMCPServer:
    """FastMCP server for cluster-aware Hyper-V VM migration."""

    def __init__(self, config: HyperVMCPConfig, config_path: str | None = None):
        self.config = config
        self._config_path: str = (
            config_path or os.getenv("HYPERV_HOSTS_CONFIG") or str(get_config_dir() / "hosts.yml")
        )
        self.logger = get_server_logger()

        self.migration_service = VmMigrationService(config)

        # Created in run()
        self.app: FastMCP | None = None

        self.logger.info(
            "Hyper-V MCP Server initialized",
            hosts=list(config.hosts.keys()),
            server_config=config.server.model_dump(),
            config_path=self._config_path,
        )

    def _initialize_app(self) -> None:
        """Initialize FastMCP app, middleware, and register tools."""
        self.app = FastMCP("Hyper-V Migration Manager")
        self._configure_middleware()

        self.app.tool(
            self.migrate_vm,
            annotations={
                "title": "Hyper-V VM Migration",
                "readOnlyHint": False,
                "destructiveHint": True,  # Removes the VM from the source after a move
                "idempotentHint": False,
                "openWorldHint": True,
            },
        )
        self.app.tool(
            self.inspect_host,
            annotations={
                "title": "Hyper-V Host Inspection",
                "readOnlyHint": True,
                "destructiveHint": False,
                "idempotentHint": True,
                "openWorldHint": True,
            },
        )

    def _configure_middleware(self) -> None:
        """Configure FastMCP middleware stack (first added = first executed)."""
        if self.app is None:
            return
        self.app.add_middleware(
            ErrorHandlingMiddleware(
                include_traceback=self.config.server.log_level.upper() == "DEBUG",
                track_error_stats=True,
            )
        )
        self.app.add_middleware(
            LoggingMiddleware(
                include_payloads=os.getenv("LOG_INCLUDE_PAYLOADS", "true").lower()
                in ("1", "true", "yes", "on"),
                max_payload_length=int(os.getenv("LOG_MAX_PAYLOAD_LENGTH", "1000")),
            )
        )

    async def migrate_vm(
        self,
        action: Annotated[
            str | MigrateAction, Field(description="migrate, or check to run preconditions only")
        ],
        source_host: Annotated[str, Field(description="Host id or name holding the VM")],
        vm: Annotated[str, Field(description="VM name or id on the source host")],
        destination_host: Annotated[str, Field(description="Host id or name to move the VM to")],
        mode: Annotated[
            str, Field(default="offline", description="offline (export/import) or online (live move)")
        ] = "offline",
        destination_storage_path: Annotated[
            str | None, Field(default=None, description="Destination root for VM files")
        ] = None,
        switch_name: Annotated[
            str | None,
            Field(default=None, description="Switch for adapters whose switch is missing on the destination"),
        ] = None,
        vhd_mappings: Annotated[
            list[dict[str, str]] | None,
            Field(
                default=None,
                description="Online moves only: [{source_path, destination_path}] per virtual disk",
            ),
        ] = None,
        force: Annotated[
            bool, Field(default=False, description="Stop a running VM without asking")
        ] = False,
        restart: Annotated[
            bool, Field(default=True, description="Start the VM on the destination if it was running")
        ] = True,
    ) -> ToolResult:
        """Relocate a Hyper-V VM between hosts.

        Actions:
        • migrate: Check preconditions, move the VM, restore its cluster role,
          start action and running state on the new host, then clean the old one
        • check: Run the precondition checks only
        """
        params: dict[str, Any] = {
            "source_host": source_host,
            "vm": vm,
            "destination_host": destination_host,
            "mode": MigrationMode(mode.lower()),
            "destination_storage_path": destination_storage_path,
            "switch_name": switch_name,
            "vhd_mappings": vhd_mappings,
        }
        if str(action.value if isinstance(action, MigrateAction) else action).lower() == "migrate":
            params.update({"force": force, "restart": restart})
        return await self.migration_service.handle_action(action, **params)

    async def inspect_host(
        self,
        host: Annotated[str, Field(description="Host id or name")],
        vm: Annotated[
            str | None, Field(default=None, description="Optional VM name or id to report paths for")
        ] = None,
    ) -> ToolResult:
        """Report a host's cluster membership, virtual switches and optionally a VM's paths."""
        return await self.migration_service.inspect_host(host, vm)

    def run(self) -> None:
        """Run the FastMCP server."""
        try:
            self._initialize_app()
            self.logger.info(
                "Starting Hyper-V MCP Server",
                host=self.config.server.host,
                port=self.config.server.port,
            )
            if self.app is None:
                raise RuntimeError("FastMCP app not initialized")
            self.app.run(
                transport="http",
                host=self.config.server.host,
                port=self.config.server.port,
            )
        except Exception as e:
            self.logger.error("Server startup failed", error=str(e))
            raise


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    load_dotenv()

    default_host = os.getenv("FASTMCP_HOST", "127.0.0.1")
    default_port = int(os.getenv("FASTMCP_PORT", "8000"))
    default_log_level = os.getenv("LOG_LEVEL", "INFO")
    default_config = os.getenv("HYPERV_HOSTS_CONFIG", str(get_config_dir() / "hosts.yml"))

    parser = argparse.ArgumentParser(description="FastMCP Hyper-V Migration Manager")
    parser.add_argument("--host", default=default_host, help="Server host")
    parser.add_argument("--port", type=int, default=default_port, help="Server port")
    parser.add_argument("--config", default=default_config, help="Configuration file path")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration and exit"
    )
    return parser.parse_args(argv)


def _setup_log_directory() -> Path:
    """Pick the first writable log directory."""
    candidates = [Path(path) for path in [os.getenv("LOG_DIR")] if path]
    candidates.extend(
        [
            get_data_dir() / "logs",
            Path(tempfile.gettempdir()) / "hyperv-mcp-logs",
        ]
    )
    return _first_usable_dir(candidates) or Path(tempfile.gettempdir())


def _load_and_configure(args: argparse.Namespace, logger) -> HyperVMCPConfig | None:
    """Load configuration; returns None in validation-only mode."""
    try:
        config = load_config(args.config)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    config.server.host = args.host
    config.server.port = args.port
    config.server.log_level = args.log_level

    if args.validate_config:
        logger.info(
            "Configuration is valid",
            config_file=config.config_file,
            hosts=sorted(config.hosts),
            migration=config.migration.model_dump(),
        )
        return None
    return config


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    try:
        max_file_size_mb = int(os.getenv("LOG_FILE_SIZE_MB", "10"))
    except ValueError:
        max_file_size_mb = 10
    setup_logging(
        log_dir=_setup_log_directory(),
        log_level=args.log_level,
        max_file_size_mb=min(max(max_file_size_mb, 1), 100),
    )
    logger = get_server_logger()

    try:
        config = _load_and_configure(args, logger)
    except ConfigurationError as e:
        logger.error("Configuration invalid", error=str(e))
        sys.exit(2)
    if config is None:
        return

    server = HyperVMCPServer(config, config_path=args.config)
    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
