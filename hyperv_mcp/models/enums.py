"""Enum definitions for Hyper-V MCP."""

from enum import Enum
from typing import Literal

# Type aliases
OutcomeKind = Literal["moved", "failed"]


class MigrationMode(Enum):
    """How VM state travels to the destination."""

    OFFLINE = "offline"  # Export at source, import at destination
    ONLINE = "online"  # Live move


class MigrationPhase(Enum):
    """Phases reported while a migration runs."""

    PRECHECK = "precheck"
    CLUSTER_PREP = "cluster_prep"
    SHUTDOWN = "shutdown"
    DISARM_AUTOSTART = "disarm_autostart"
    EXPORT = "export"
    COMPARE = "compare"
    RESOLVE = "resolve"
    IMPORT = "import"
    MOVE = "move"
    RESTORE = "restore"
    CLEANUP = "cleanup"
    COMPLETE = "complete"


class LookupStatus(Enum):
    """Tri-state result of asking a host whether something exists."""

    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class IncompatibilityCode(Enum):
    """Machine-checkable incompatibility classes."""

    SWITCH_NOT_FOUND = "switch_not_found"
    UNKNOWN = "unknown"


class ResolutionAction(Enum):
    """Fix applied to a network adapter before import or move."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"


class EventLevel(Enum):
    """Severity of a progress event."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class MigrateAction(Enum):
    """Actions for the migrate_vm tool."""

    MIGRATE = "migrate"
    CHECK = "check"
