"""Data models for Hyper-V MCP."""

from .enums import (  # noqa: F401
    EventLevel,
    IncompatibilityCode,
    LookupStatus,
    MigrateAction,
    MigrationMode,
    MigrationPhase,
    ResolutionAction,
)
from .migration import (  # noqa: F401
    ClusterGroupInfo,
    ClusterPresence,
    CompatibilityReport,
    HostClusterInfo,
    ImportOptions,
    Incompatibility,
    MigrationOutcome,
    MigrationPlan,
    MigrationReport,
    MoveOptions,
    PreflightResult,
    PreservedVmState,
    ProgressEvent,
    Resolution,
    RestoreReport,
    SharedVolume,
    VhdMapping,
)
from .vm import (  # noqa: F401
    MCPModel,
    SmbShare,
    VmIdentity,
    VmLookup,
    VmPathSet,
    VmRecord,
    VmSwitch,
)

__all__ = [
    # Enums
    "EventLevel",
    "IncompatibilityCode",
    "LookupStatus",
    "MigrateAction",
    "MigrationMode",
    "MigrationPhase",
    "ResolutionAction",
    # VM models
    "MCPModel",
    "SmbShare",
    "VmIdentity",
    "VmLookup",
    "VmPathSet",
    "VmRecord",
    "VmSwitch",
    # Migration models
    "ClusterGroupInfo",
    "ClusterPresence",
    "CompatibilityReport",
    "HostClusterInfo",
    "ImportOptions",
    "Incompatibility",
    "MigrationOutcome",
    "MigrationPlan",
    "MigrationReport",
    "MoveOptions",
    "PreflightResult",
    "PreservedVmState",
    "ProgressEvent",
    "Resolution",
    "RestoreReport",
    "SharedVolume",
    "VhdMapping",
]
