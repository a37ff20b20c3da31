"""Logging configuration for Hyper-V MCP: console plus one log file per component.

Migration runs are long and interleave with other requests, so every line
written while a migration is in flight carries that migration's ``vm_id``,
hosts and current ``phase`` through structlog context variables.
"""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.contextvars import bind_contextvars, bound_contextvars
from structlog.stdlib import BoundLogger, LoggerFactory, ProcessorFormatter

# stdlib logger name -> file it writes to
LOG_FILES = {
    "server": "hyperv_mcp.log",
    "migration": "migration.log",
    "middleware": "middleware.log",
}


def _file_handler(path: Path, level: int, max_bytes: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=max_bytes, backupCount=0, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(ProcessorFormatter(processor=structlog.processors.JSONRenderer()))
    return handler


def setup_logging(
    log_dir: Path | str = Path("logs"),
    log_level: str | None = None,
    max_file_size_mb: int = 10,
) -> None:
    """Setup console logging plus a JSON log file per component.

    Creates three log files:
    - hyperv_mcp.log: Server lifecycle and configuration
    - migration.log: Migration progress, one JSON line per event with the VM context
    - middleware.log: Middleware request/response tracking

    Args:
        log_dir: Directory for log files
        log_level: Log level (defaults to LOG_LEVEL env var or INFO)
        max_file_size_mb: Max file size before truncation (no backup files kept)
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    log_level_num = getattr(logging, log_level.upper(), logging.INFO)
    max_bytes = max_file_size_mb * 1024 * 1024

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(log_level_num)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level_num)
    console_handler.setFormatter(
        ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer()
            if sys.stdout.isatty()
            else structlog.processors.JSONRenderer()
        )
    )
    root_logger.addHandler(console_handler)

    # Each component logger writes its own file and propagates to the console
    for name, filename in LOG_FILES.items():
        component_logger = logging.getLogger(name)
        component_logger.handlers.clear()
        component_logger.addHandler(_file_handler(log_dir / filename, log_level_num, max_bytes))
        component_logger.propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.TimeStamper(fmt="iso"),
            ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=LoggerFactory(),
        wrapper_class=BoundLogger,
        cache_logger_on_first_use=True,
    )

    get_server_logger().info(
        "Logging system initialized",
        log_dir=str(log_dir.absolute()),
        log_level=log_level,
        max_file_size_mb=max_file_size_mb,
        log_files={name: str(log_dir / filename) for name, filename in LOG_FILES.items()},
    )


@contextmanager
def migration_context(vm_id: str, vm_name: str, source: str, destination: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with the migration it belongs to.

    Context variables follow asyncio tasks, so concurrent migrations in a
    batch keep their own tags.
    """
    with bound_contextvars(
        vm_id=vm_id, vm_name=vm_name, source=source, destination=destination, phase=None
    ):
        yield


def bind_phase(phase: Any) -> None:
    """Record the phase the current migration has entered."""
    bind_contextvars(phase=getattr(phase, "value", phase))


def get_server_logger() -> Any:
    """Get logger for general server operations (writes to hyperv_mcp.log)."""
    return structlog.get_logger("server")


def get_migration_logger() -> Any:
    """Get logger for migration progress (writes to migration.log)."""
    return structlog.get_logger("migration")


def get_middleware_logger() -> Any:
    """Get logger for middleware operations (writes to middleware.log)."""
    return structlog.get_logger("middleware")
