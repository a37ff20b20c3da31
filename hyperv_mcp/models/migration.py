"""Migration-related data models."""

from datetime import UTC, datetime

from pydantic import ConfigDict, Field

from ..utils import is_under, normalize_path, same_host
from .enums import (
    EventLevel,
    IncompatibilityCode,
    MigrationMode,
    MigrationPhase,
    OutcomeKind,
    ResolutionAction,
)
from .vm import MCPModel, VmIdentity, VmPathSet, VmRecord


class SharedVolume(MCPModel):
    """A cluster shared volume and the node currently owning it."""

    name: str
    path: str
    owner_node: str | None = None


class HostClusterInfo(MCPModel):
    """Cluster membership of one host, read fresh for every attempt."""

    host: str
    is_clustered: bool = False
    cluster_name: str | None = None
    nodes: list[str] = Field(default_factory=list)
    shared_volumes: list[SharedVolume] = Field(default_factory=list)

    @property
    def shared_volume_paths(self) -> set[str]:
        return {volume.path for volume in self.shared_volumes}

    def volume_for(self, path: str) -> SharedVolume | None:
        """Return the shared volume backing ``path`` (longest match)."""
        matches = [volume for volume in self.shared_volumes if is_under(path, volume.path)]
        if not matches:
            return None
        return max(matches, key=lambda volume: len(normalize_path(volume.path)))

    def has_node(self, host: str) -> bool:
        return any(same_host(node, host) for node in self.nodes)


class ClusterGroupInfo(MCPModel):
    """The cluster resource group owning a clustered VM."""

    cluster_name: str
    group_name: str
    vm_id: str
    owner_node: str | None = None
    priority: int | None = None


class ClusterPresence(MCPModel):
    """Whether a cluster node reports a VM as realized and/or planned."""

    node: str
    realized: bool = False
    planned: bool = False


class VhdMapping(MCPModel):
    """Per-disk destination for online moves."""

    model_config = ConfigDict(frozen=True)

    source_path: str
    destination_path: str


class MigrationPlan(MCPModel):
    """What to move and where; built once, read-only afterwards."""

    model_config = ConfigDict(frozen=True)

    vm: VmIdentity
    destination_host: str
    mode: MigrationMode = MigrationMode.OFFLINE
    destination_storage_path: str | None = None
    switch_name: str | None = None
    vhd_mappings: tuple[VhdMapping, ...] = ()
    force: bool = False  # Stop a running VM without asking
    restart: bool = True  # Start the VM on the authoritative host if it was running

    @property
    def source_host(self) -> str:
        return self.vm.source_host


class ImportOptions(MCPModel):
    """Arguments for Compare-VM / Import-VM on the destination."""

    config_path: str
    copy_files: bool = False
    virtual_machine_path: str | None = None
    vhd_destination_path: str | None = None


class MoveOptions(MCPModel):
    """Arguments for Compare-VM / Move-VM on the source."""

    destination_host: str
    destination_storage_path: str | None = None
    vhd_mappings: list[VhdMapping] = Field(default_factory=list)


class Incompatibility(MCPModel):
    """One entry of a compatibility comparison."""

    code: IncompatibilityCode
    message_id: int
    message: str
    element_type: str | None = None
    element_name: str | None = None
    switch_name: str | None = None
    index: int | None = None


class Resolution(MCPModel):
    """Fix for a single incompatibility, replayed inside the import/move script."""

    message_id: int
    incompatibility_index: int | None = None
    adapter_name: str | None = None
    action: ResolutionAction
    switch_name: str | None = None


class CompatibilityReport(MCPModel):
    """Incompatibilities plus the resolver's verdict; never persisted."""

    incompatibilities: list[Incompatibility] = Field(default_factory=list)
    resolutions: list[Resolution] = Field(default_factory=list)
    resolved: bool = False
    unresolved_reasons: list[str] = Field(default_factory=list)


class MigrationOutcome(MCPModel):
    """Moved(new_vm) or Failed(phase, reason)."""

    kind: OutcomeKind
    new_vm: VmIdentity | None = None
    phase: MigrationPhase | None = None
    reason: str | None = None

    @classmethod
    def moved(cls, new_vm: VmIdentity) -> "MigrationOutcome":
        return cls(kind="moved", new_vm=new_vm)

    @classmethod
    def failed(cls, phase: MigrationPhase, reason: str) -> "MigrationOutcome":
        return cls(kind="failed", phase=phase, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.kind == "moved"


class PreservedVmState(MCPModel):
    """Source-side settings captured before any mutation, for restoration."""

    was_running: bool
    automatic_start_action: str | None = None
    cluster_group: ClusterGroupInfo | None = None
    paths: VmPathSet = Field(default_factory=VmPathSet)


class PreflightResult(MCPModel):
    """Outcome of the precondition checks."""

    success: bool
    condition: str | None = None
    violation: str | None = None
    vm: VmRecord | None = None
    source_cluster: HostClusterInfo | None = None
    destination_cluster: HostClusterInfo | None = None
    preserved: PreservedVmState | None = None
    destination_storage_path: str | None = None
    export_directory: str | None = None

    @classmethod
    def rejected(cls, condition: str, violation: str, **kwargs) -> "PreflightResult":
        return cls(success=False, condition=condition, violation=violation, **kwargs)


class ProgressEvent(MCPModel):
    """A phase-level progress, warning or error notification."""

    phase: MigrationPhase
    level: EventLevel = EventLevel.INFO
    message: str
    host: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RestoreReport(MCPModel):
    """What the rollback/restore manager did."""

    authoritative_host: str | None = None
    restored: bool = True
    cleanup_converged: bool = True
    warnings: list[str] = Field(default_factory=list)


class MigrationReport(MCPModel):
    """Full result of one migration attempt."""

    plan: MigrationPlan
    outcome: MigrationOutcome
    preflight: PreflightResult | None = None
    restore: RestoreReport | None = None
    events: list[ProgressEvent] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.outcome.succeeded

    @property
    def authoritative_host(self) -> str | None:
        if self.restore is not None:
            return self.restore.authoritative_host
        return self.plan.source_host

    @property
    def warnings(self) -> list[str]:
        return [event.message for event in self.events if event.level is EventLevel.WARNING]
