"""
Migration Precondition Module

Every check here is a hard stop: a failing condition rejects the plan before
any host is mutated. Collaborator failures are translated into rejected
results rather than propagated.
"""

import structlog

from ...constants import AUTOSTART_NOTHING
from ...core.cluster import ClusterStateInspector
from ...core.config_loader import HyperVMCPConfig
from ...core.exceptions import ConnectivityError, PreconditionError, RemoteCommandError
from ...core.hyperv import HyperVClient
from ...core.retry import RetryBudget, assert_until
from ...models.enums import LookupStatus, MigrationMode
from ...models.migration import (
    HostClusterInfo,
    MigrationPlan,
    PreflightResult,
    PreservedVmState,
)
from ...models.vm import VmPathSet, VmRecord
from ...utils import same_host, unique_paths, windows_join, windows_parent

# Precondition condition codes
VM_NOT_FOUND = "vm_not_found"
VM_AMBIGUOUS = "vm_ambiguous"
SNAPSHOT_PRESENT = "snapshot_present"
ALREADY_ON_DESTINATION = "already_on_destination"
DESTINATION_PATH_UNAVAILABLE = "destination_path_unavailable"
EXPORT_FOLDER_EXISTS = "export_folder_exists"
NOT_ON_SHARED_VOLUME = "not_on_shared_volume"
SHARED_VOLUME_OWNER_MISMATCH = "shared_volume_owner_mismatch"
CONNECTIVITY = "connectivity"
REMOTE_ERROR = "remote_error"


class PreconditionValidator:
    """Asserts a migration plan is safe to start."""

    def __init__(
        self,
        config: HyperVMCPConfig,
        hyperv: HyperVClient,
        inspector: ClusterStateInspector,
        budget: RetryBudget | None = None,
    ):
        self.config = config
        self.hyperv = hyperv
        self.inspector = inspector
        self.budget = budget or RetryBudget()
        self.logger = structlog.get_logger().bind(component="precondition_validator")

    async def validate(self, plan: MigrationPlan) -> PreflightResult:
        """Run every precondition for ``plan`` in order.

        Returns:
            PreflightResult carrying the captured source state on success, or
            the violated condition code and message on rejection
        """
        source_cluster: HostClusterInfo | None = None
        destination_cluster: HostClusterInfo | None = None
        try:
            if same_host(
                self.config.hostname_for(plan.source_host),
                self.config.hostname_for(plan.destination_host),
            ):
                raise PreconditionError(
                    ALREADY_ON_DESTINATION, "Source and destination are the same host"
                )

            source_cluster = await self.inspector.get_cluster_info(plan.source_host)
            destination_cluster = await self.inspector.get_cluster_info(plan.destination_host)

            vm = await self._check_source_vm(plan, source_cluster)
            await self._check_snapshots(plan)
            await self._check_destination_presence(plan, destination_cluster)
            preserved = await self._capture_source_state(plan, vm, source_cluster)

            storage_path = await self._resolve_storage_path(plan)
            self._check_shared_volume(plan, storage_path, destination_cluster)
            await self._ensure_destination_paths(plan, storage_path)

            export_directory = None
            if plan.mode is MigrationMode.OFFLINE:
                export_directory = await self._check_export_folder(plan, storage_path, vm)

        except PreconditionError as e:
            return self._reject(plan, e.condition, str(e), source_cluster, destination_cluster)
        except ConnectivityError as e:
            return self._reject(plan, CONNECTIVITY, str(e), source_cluster, destination_cluster)
        except RemoteCommandError as e:
            return self._reject(plan, REMOTE_ERROR, str(e), source_cluster, destination_cluster)

        self.logger.info(
            "Preconditions satisfied",
            vm_id=plan.vm.id,
            source=plan.source_host,
            destination=plan.destination_host,
            storage_path=storage_path,
            was_running=preserved.was_running,
            clustered=preserved.cluster_group is not None,
        )
        return PreflightResult(
            success=True,
            vm=vm,
            source_cluster=source_cluster,
            destination_cluster=destination_cluster,
            preserved=preserved,
            destination_storage_path=storage_path,
            export_directory=export_directory,
        )

    def _reject(
        self,
        plan: MigrationPlan,
        condition: str,
        violation: str,
        source_cluster: HostClusterInfo | None,
        destination_cluster: HostClusterInfo | None,
    ) -> PreflightResult:
        self.logger.warning(
            "Precondition violated",
            vm_id=plan.vm.id,
            source=plan.source_host,
            destination=plan.destination_host,
            condition=condition,
            violation=violation,
        )
        return PreflightResult.rejected(
            condition,
            violation,
            source_cluster=source_cluster,
            destination_cluster=destination_cluster,
        )

    async def _check_source_vm(self, plan: MigrationPlan, source_cluster: HostClusterInfo) -> VmRecord:
        """The VM must be realized on the source, and only there within its cluster."""
        lookup = await self.hyperv.get_vm(plan.source_host, plan.vm.id)
        if lookup.status is LookupStatus.ERROR:
            raise RemoteCommandError(plan.source_host, "Get-VM", lookup.error or "")
        if not lookup.is_found or lookup.vm is None:
            raise PreconditionError(
                VM_NOT_FOUND, f"VM {plan.vm.name} ({plan.vm.id}) not found on {plan.source_host}"
            )

        if source_cluster.is_clustered and source_cluster.cluster_name:
            presence = await self.inspector.manager.find_vm_nodes(
                plan.source_host, source_cluster.cluster_name, plan.vm.id
            )
            realized = sorted({entry.node for entry in presence if entry.realized})
            if len(realized) > 1:
                raise PreconditionError(
                    VM_AMBIGUOUS,
                    f"VM {plan.vm.id} is realized on several nodes: {', '.join(realized)}",
                )
        return lookup.vm

    async def _check_snapshots(self, plan: MigrationPlan) -> None:
        snapshots = await self.hyperv.get_snapshots(plan.source_host, plan.vm.id)
        if snapshots:
            raise PreconditionError(
                SNAPSHOT_PRESENT,
                f"VM {plan.vm.name} has {len(snapshots)} checkpoint(s): {', '.join(snapshots)}",
            )

    async def _check_destination_presence(
        self, plan: MigrationPlan, destination_cluster: HostClusterInfo
    ) -> None:
        """Neither a realized nor a planned copy may exist on the destination side."""
        for label, lookup in (
            ("realized", await self.hyperv.get_vm(plan.destination_host, plan.vm.id)),
            ("planned", await self.hyperv.get_planned_vm(plan.destination_host, plan.vm.id)),
        ):
            if lookup.status is LookupStatus.ERROR:
                raise RemoteCommandError(plan.destination_host, f"lookup {label} VM", lookup.error or "")
            if lookup.is_found:
                raise PreconditionError(
                    ALREADY_ON_DESTINATION,
                    f"VM {plan.vm.id} already exists ({label}) on {plan.destination_host}",
                )

        if not destination_cluster.is_clustered or not destination_cluster.cluster_name:
            return

        presence = await self.inspector.manager.find_vm_nodes(
            plan.destination_host, destination_cluster.cluster_name, plan.vm.id
        )
        source_name = self.config.hostname_for(plan.source_host)
        elsewhere = [entry for entry in presence if not same_host(entry.node, source_name)]
        if elsewhere:
            nodes = ", ".join(
                f"{entry.node} ({'realized' if entry.realized else 'planned'})" for entry in elsewhere
            )
            raise PreconditionError(
                ALREADY_ON_DESTINATION,
                f"VM {plan.vm.id} already exists in cluster {destination_cluster.cluster_name}: {nodes}",
            )

    async def _capture_source_state(
        self, plan: MigrationPlan, vm: VmRecord, source_cluster: HostClusterInfo
    ) -> PreservedVmState:
        cluster_group = None
        if source_cluster.is_clustered and source_cluster.cluster_name:
            cluster_group = await self.inspector.manager.get_cluster_group(
                plan.source_host, source_cluster.cluster_name, plan.vm.id
            )

        paths = await self.hyperv.get_vm_paths(plan.source_host, plan.vm.id)
        return PreservedVmState(
            was_running=vm.is_running,
            automatic_start_action=vm.automatic_start_action or AUTOSTART_NOTHING,
            cluster_group=cluster_group,
            paths=paths or VmPathSet(),
        )

    async def _resolve_storage_path(self, plan: MigrationPlan) -> str:
        """Plan value, then the host's configured root, then the hypervisor default."""
        if plan.destination_storage_path:
            return plan.destination_storage_path
        host_config = self.config.find_host(plan.destination_host)
        if host_config and host_config.vm_storage_path:
            return host_config.vm_storage_path
        return await self.hyperv.get_default_storage_path(plan.destination_host)

    def _destination_paths(self, plan: MigrationPlan, storage_path: str) -> list[str]:
        paths = [storage_path]
        if plan.mode is MigrationMode.ONLINE:
            paths.extend(windows_parent(mapping.destination_path) for mapping in plan.vhd_mappings)
        return unique_paths(paths)

    def _check_shared_volume(
        self, plan: MigrationPlan, storage_path: str, destination_cluster: HostClusterInfo
    ) -> None:
        """Clustered destinations must keep VM storage on a volume the destination node owns."""
        if not destination_cluster.is_clustered:
            return

        destination_name = self.config.hostname_for(plan.destination_host)
        for path in self._destination_paths(plan, storage_path):
            volume = destination_cluster.volume_for(path)
            if volume is None:
                raise PreconditionError(
                    NOT_ON_SHARED_VOLUME,
                    f"{path} is not on a cluster shared volume of {destination_cluster.cluster_name}",
                )
            if volume.owner_node and not same_host(volume.owner_node, destination_name):
                raise PreconditionError(
                    SHARED_VOLUME_OWNER_MISMATCH,
                    f"Shared volume {volume.name} ({volume.path}) is owned by {volume.owner_node}; "
                    f"move it to {destination_name} before migrating",
                )

    async def _ensure_destination_paths(self, plan: MigrationPlan, storage_path: str) -> None:
        host = plan.destination_host
        for path in self._destination_paths(plan, storage_path):
            created = await assert_until(
                lambda path=path: self.hyperv.test_path(host, path),
                lambda path=path: self.hyperv.new_directory(host, path),
                self.budget,
                description=f"path exists {host}:{path}",
            )
            if not created:
                raise PreconditionError(
                    DESTINATION_PATH_UNAVAILABLE, f"Could not create {path} on {host}"
                )

    async def _check_export_folder(self, plan: MigrationPlan, storage_path: str, vm: VmRecord) -> str:
        export_directory = windows_join(storage_path, vm.name)
        if await self.hyperv.test_path(plan.destination_host, export_directory):
            raise PreconditionError(
                EXPORT_FOLDER_EXISTS,
                f"Export folder {export_directory} already exists on {plan.destination_host}",
            )
        return export_directory
