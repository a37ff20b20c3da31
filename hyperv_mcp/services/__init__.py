"""
Hyper-V MCP Services

Service layer for business logic organization and separation of concerns.
"""

from .migration_service import VmMigrationService  # noqa: F401

__all__ = [
    "VmMigrationService",
]
