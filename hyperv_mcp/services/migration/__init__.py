"""
VM Migration Modules

Cluster-aware relocation of Hyper-V VMs, split into phase modules:
- validation: Precondition checks run before anything is mutated
- compatibility: Incompatibility resolution (virtual switch rebinding)
- transfer: Offline export/import and online live-move state machines
- restore: Rollback/restore of the authoritative VM and remnant removal
- progress: Phase-by-phase event stream and approval policy
- orchestrator: Single and batch migration driver

VmMigrationService (in services.migration_service) is the facade the MCP
server talks to.
"""

from .compatibility import CompatibilityResolver, choose_switch
from .orchestrator import HostLockRegistry, VmMigrationOrchestrator
from .progress import ApprovalPolicy, MigrationProgress
from .restore import RollbackRestoreManager
from .transfer import TransferContext, TransferEngine
from .validation import PreconditionValidator

__all__ = [
    "ApprovalPolicy",
    "CompatibilityResolver",
    "HostLockRegistry",
    "MigrationProgress",
    "PreconditionValidator",
    "RollbackRestoreManager",
    "TransferContext",
    "TransferEngine",
    "VmMigrationOrchestrator",
    "choose_switch",
]
