"""
Rollback and Restore Module

After a transfer finishes, either way, exactly one host must end up holding
the realized VM with its cluster membership, automatic start action and
running state restored; the other host is cleaned of remnants.
"""

from collections.abc import Iterable

import structlog

from ...core.cluster import ClusterResourceManager
from ...core.exceptions import HyperVMCPError
from ...core.hyperv import HyperVClient
from ...core.retry import RetryBudget, assert_until
from ...models.enums import LookupStatus, MigrationPhase
from ...models.migration import (
    HostClusterInfo,
    MigrationOutcome,
    MigrationPlan,
    PreflightResult,
    PreservedVmState,
    RestoreReport,
)
from ...models.vm import VmPathSet
from ...utils import is_under, normalize_path, windows_basename
from .progress import MigrationProgress
from .transfer import TransferContext


def _depth(path: str) -> int:
    return normalize_path(path).count("\\")


def _shares_storage(preflight: PreflightResult) -> bool:
    """Source and destination see the same paths only inside one cluster."""
    source, destination = preflight.source_cluster, preflight.destination_cluster
    if source is None or destination is None:
        return False
    if not (source.is_clustered and destination.is_clustered):
        return False
    return (source.cluster_name or "").lower() == (destination.cluster_name or "").lower()


class RollbackRestoreManager:
    """Restores the authoritative VM and removes what is left on the other host."""

    def __init__(
        self,
        hyperv: HyperVClient,
        cluster_manager: ClusterResourceManager,
        budget: RetryBudget | None = None,
    ):
        self.hyperv = hyperv
        self.cluster_manager = cluster_manager
        self.budget = budget or RetryBudget()
        self.logger = structlog.get_logger().bind(component="restore_manager")

    async def restore(
        self,
        context: TransferContext,
        outcome: MigrationOutcome,
        progress: MigrationProgress,
    ) -> RestoreReport:
        """Finish a migration according to its outcome.

        Returns:
            RestoreReport naming the authoritative host. Convergence failures
            are reported as warnings and never turn a ``Moved`` outcome into a
            failure.
        """
        preflight = context.preflight
        if preflight is None or preflight.preserved is None:
            return RestoreReport(authoritative_host=context.plan.source_host)

        if outcome.succeeded:
            return await self._finish_moved(context, preflight, progress)
        return await self._roll_back(context, preflight, progress)

    # Moved: destination is authoritative

    async def _finish_moved(
        self, context: TransferContext, preflight: PreflightResult, progress: MigrationProgress
    ) -> RestoreReport:
        plan = context.plan
        report = RestoreReport(authoritative_host=plan.destination_host)

        try:
            await self._restore_on(
                plan.destination_host,
                plan,
                preflight.preserved,
                preflight.destination_cluster,
                context,
                progress,
                start=plan.restart,
            )
        except HyperVMCPError as e:
            report.restored = False
            await self._warn(report, progress, MigrationPhase.RESTORE, f"Restore on destination failed: {e}")

        protected: list[str] = []
        ceilings: list[str] = []
        if _shares_storage(preflight):
            protected = await self._paths_of(plan.destination_host, plan.vm.id)
            if preflight.destination_storage_path:
                ceilings.append(preflight.destination_storage_path)

        converged = await self.remove_vm(
            plan.source_host,
            plan.vm.id,
            preflight.preserved.paths,
            progress,
            report,
            protected=protected,
            ceilings=ceilings,
        )
        report.cleanup_converged = converged
        return report

    # Failed: locate the realized copy, restore it, clean the other side

    async def _roll_back(
        self, context: TransferContext, preflight: PreflightResult, progress: MigrationProgress
    ) -> RestoreReport:
        plan = context.plan
        source_lookup = await self.hyperv.get_vm(plan.source_host, plan.vm.id)
        destination_lookup = await self.hyperv.get_vm(plan.destination_host, plan.vm.id)

        if source_lookup.is_found:
            report = RestoreReport(authoritative_host=plan.source_host)
            await progress.set_authoritative(MigrationPhase.RESTORE, plan.source_host)
            try:
                await self._restore_on(
                    plan.source_host,
                    plan,
                    preflight.preserved,
                    preflight.source_cluster,
                    context,
                    progress,
                    start=True,
                )
            except HyperVMCPError as e:
                report.restored = False
                await self._warn(report, progress, MigrationPhase.RESTORE, f"Restore on source failed: {e}")

            report.cleanup_converged = await self._clean_destination(
                context, preflight, progress, report, remove_realized=destination_lookup.is_found
            )
            return report

        if source_lookup.is_missing and destination_lookup.is_found:
            report = RestoreReport(authoritative_host=plan.destination_host)
            await progress.set_authoritative(MigrationPhase.RESTORE, plan.destination_host)
            await self._warn(
                report,
                progress,
                MigrationPhase.RESTORE,
                f"VM {plan.vm.id} is only realized on {plan.destination_host}; keeping it there "
                f"and leaving {plan.source_host} files for review",
            )
            try:
                await self._restore_on(
                    plan.destination_host,
                    plan,
                    preflight.preserved,
                    preflight.destination_cluster,
                    context,
                    progress,
                    start=plan.restart,
                )
            except HyperVMCPError as e:
                report.restored = False
                await self._warn(report, progress, MigrationPhase.RESTORE, f"Restore on destination failed: {e}")
            return report

        states = (
            f"{plan.source_host}={source_lookup.status.value}, "
            f"{plan.destination_host}={destination_lookup.status.value}"
        )
        await progress.error(
            MigrationPhase.RESTORE,
            f"Cannot locate a realized copy of VM {plan.vm.id} ({states}); manual review required",
        )
        return RestoreReport(authoritative_host=None, restored=False, cleanup_converged=False)

    async def _restore_on(
        self,
        host: str,
        plan: MigrationPlan,
        preserved: PreservedVmState,
        cluster: HostClusterInfo | None,
        context: TransferContext,
        progress: MigrationProgress,
        start: bool,
    ) -> None:
        """Re-apply autostart, cluster membership and running state on ``host``.

        On the source the VM goes back to exactly what it was. On a clustered
        destination the cluster role owns startup, so the automatic start
        action stays ``Nothing`` and only the role is added.
        """
        vm_id = plan.vm.id
        on_source = host == plan.source_host
        cluster_managed = cluster is not None and cluster.is_clustered and bool(cluster.cluster_name)

        if on_source or not cluster_managed:
            await self._restore_autostart(host, vm_id, preserved, context, progress)
        elif context.autostart_disarmed:
            await progress.info(
                MigrationPhase.RESTORE,
                f"Automatic start action left at Nothing; {cluster.cluster_name} manages startup",
                host=host,
            )

        rejoin = context.cluster_group_removed if on_source else True
        if rejoin and cluster_managed:
            priority = preserved.cluster_group.priority if preserved.cluster_group else None
            group = await self.cluster_manager.add_vm_role(host, cluster.cluster_name, vm_id, priority)
            await progress.info(
                MigrationPhase.RESTORE,
                f"Cluster role {group.group_name if group else vm_id} added to {cluster.cluster_name}",
                host=host,
            )

        if start and preserved.was_running:
            lookup = await self.hyperv.get_vm(host, vm_id)
            if lookup.vm is not None and not lookup.vm.is_running:
                await self.hyperv.start_vm(host, vm_id)
                await progress.info(MigrationPhase.RESTORE, f"Started {plan.vm.name}", host=host)

    async def _restore_autostart(
        self,
        host: str,
        vm_id: str,
        preserved: PreservedVmState,
        context: TransferContext,
        progress: MigrationProgress,
    ) -> None:
        if context.autostart_disarmed and preserved.automatic_start_action:
            await self.hyperv.set_automatic_start_action(host, vm_id, preserved.automatic_start_action)
            await progress.info(
                MigrationPhase.RESTORE,
                f"Automatic start action restored to {preserved.automatic_start_action}",
                host=host,
            )

    async def _clean_destination(
        self,
        context: TransferContext,
        preflight: PreflightResult,
        progress: MigrationProgress,
        report: RestoreReport,
        remove_realized: bool,
    ) -> bool:
        """Remove planned/duplicate VMs and the export folder from the destination."""
        plan = context.plan
        host, vm_id = plan.destination_host, plan.vm.id
        protected = preflight.preserved.paths.all_paths() if _shares_storage(preflight) else []
        converged = True

        try:
            if remove_realized:
                await self._warn(
                    report, progress, MigrationPhase.CLEANUP, f"Removing duplicate of {vm_id} from {host}"
                )
                converged &= await self._remove_realized(host, vm_id, progress, report)
            converged &= await self._remove_planned(host, vm_id, progress, report)

            if context.export_started and context.export_directory:
                if self._is_protected(context.export_directory, protected):
                    await self._warn(
                        report,
                        progress,
                        MigrationPhase.CLEANUP,
                        f"Not removing {context.export_directory}: it holds source VM files",
                    )
                else:
                    converged &= await self._remove_path(
                        host, context.export_directory, progress, report, recurse=True
                    )
        except HyperVMCPError as e:
            await self._warn(report, progress, MigrationPhase.CLEANUP, f"Cleanup on {host} failed: {e}")
            return False
        return converged

    # Removal routine

    async def remove_vm(
        self,
        host: str,
        vm_id: str,
        paths: VmPathSet,
        progress: MigrationProgress,
        report: RestoreReport,
        protected: Iterable[str] = (),
        ceilings: Iterable[str] = (),
    ) -> bool:
        """Remove a VM and its files from ``host``.

        Order: VM object, planned VM, each virtual disk, then folders deepest
        first. Paths that are, contain or lie inside a ``protected`` path are
        left alone, as is every ancestor of a ``ceilings`` path. Folders that
        still hold files unrelated to ``vm_id`` are skipped.

        Returns:
            True when every removal converged within the retry budget
        """
        protected = list(protected)
        ceilings = list(ceilings)
        converged = True
        try:
            converged &= await self._remove_realized(host, vm_id, progress, report)
            converged &= await self._remove_planned(host, vm_id, progress, report)

            for disk in paths.disk_paths:
                if self._is_protected(disk, protected, ceilings):
                    continue
                converged &= await self._remove_path(host, disk, progress, report)

            for folder in sorted(paths.directories(), key=_depth, reverse=True):
                if self._is_protected(folder, protected, ceilings):
                    continue
                if not await self.hyperv.test_path(host, folder):
                    continue
                files = await self.hyperv.list_child_items(host, folder, recurse=True, files_only=True)
                foreign = [path for path in files if vm_id.lower() not in windows_basename(path).lower()]
                if foreign:
                    await self._warn(
                        report,
                        progress,
                        MigrationPhase.CLEANUP,
                        f"Skipping {folder} on {host}: {len(foreign)} unrelated file(s) remain",
                    )
                    continue
                converged &= await self._remove_path(host, folder, progress, report, recurse=True)
        except HyperVMCPError as e:
            await self._warn(report, progress, MigrationPhase.CLEANUP, f"Cleanup on {host} failed: {e}")
            return False

        if converged:
            await progress.info(MigrationPhase.CLEANUP, f"Removed VM {vm_id} remnants", host=host)
        return converged

    async def _remove_realized(
        self, host: str, vm_id: str, progress: MigrationProgress, report: RestoreReport
    ) -> bool:
        async def absent() -> bool:
            lookup = await self.hyperv.get_vm(host, vm_id)
            return lookup.status is LookupStatus.NOT_FOUND

        return await self._converge(
            absent,
            lambda: self.hyperv.remove_vm(host, vm_id),
            f"VM {vm_id} removed from {host}",
            progress,
            report,
        )

    async def _remove_planned(
        self, host: str, vm_id: str, progress: MigrationProgress, report: RestoreReport
    ) -> bool:
        async def absent() -> bool:
            lookup = await self.hyperv.get_planned_vm(host, vm_id)
            return lookup.status is LookupStatus.NOT_FOUND

        return await self._converge(
            absent,
            lambda: self.hyperv.remove_planned_vm(host, vm_id),
            f"planned VM {vm_id} removed from {host}",
            progress,
            report,
        )

    async def _remove_path(
        self,
        host: str,
        path: str,
        progress: MigrationProgress,
        report: RestoreReport,
        recurse: bool = False,
    ) -> bool:
        async def absent() -> bool:
            return not await self.hyperv.test_path(host, path)

        return await self._converge(
            absent,
            lambda: self.hyperv.remove_path(host, path, recurse=recurse),
            f"{path} removed from {host}",
            progress,
            report,
        )

    async def _converge(self, predicate, action, description, progress, report) -> bool:
        if await assert_until(predicate, action, self.budget, description=description):
            return True
        await self._warn(report, progress, MigrationPhase.CLEANUP, f"Did not converge: {description}")
        return False

    async def _paths_of(self, host: str, vm_id: str) -> list[str]:
        try:
            paths = await self.hyperv.get_vm_paths(host, vm_id)
        except HyperVMCPError as e:
            self.logger.warning("Could not read VM paths", host=host, vm_id=vm_id, error=str(e))
            return []
        return paths.all_paths() if paths else []

    @staticmethod
    def _is_protected(path: str, protected: Iterable[str], ceilings: Iterable[str] = ()) -> bool:
        if any(is_under(path, keep) or is_under(keep, path) for keep in protected):
            return True
        return any(is_under(ceiling, path) for ceiling in ceilings)

    async def _warn(
        self, report: RestoreReport, progress: MigrationProgress, phase: MigrationPhase, message: str
    ) -> None:
        report.warnings.append(message)
        await progress.warning(phase, message)
