"""
Transfer Engine Module

Moves a validated VM to its destination. Offline migrations export at the
source and import on the destination; online migrations hand the live VM to
Move-VM. Transitions are strictly forward: the first failing step ends the
run with ``Failed(phase, reason)`` and nothing is retried in place.
"""

from dataclasses import dataclass

import structlog

from ...constants import AUTOSTART_NOTHING
from ...core.cluster import ClusterResourceManager
from ...core.config_loader import HyperVMCPConfig
from ...core.exceptions import (
    HyperVMCPError,
    IncompatibilityError,
    RemoteCommandError,
    TransferError,
)
from ...core.hyperv import HyperVClient
from ...core.logging_config import bind_phase
from ...core.retry import RetryBudget, assert_until
from ...models.enums import MigrationMode, MigrationPhase
from ...models.migration import (
    CompatibilityReport,
    ImportOptions,
    Incompatibility,
    MigrationOutcome,
    MigrationPlan,
    MoveOptions,
    PreflightResult,
)
from ...models.vm import VmIdentity
from ...utils import same_host, windows_join
from .compatibility import CompatibilityResolver
from .progress import ApprovalPolicy, MigrationProgress


@dataclass
class TransferContext:
    """What the transfer has changed so far; consumed by the restore step."""

    plan: MigrationPlan
    phase: MigrationPhase = MigrationPhase.PRECHECK
    preflight: PreflightResult | None = None
    outcome: MigrationOutcome | None = None
    cluster_group_removed: bool = False
    stopped: bool = False
    autostart_disarmed: bool = False
    export_directory: str | None = None
    export_started: bool = False
    import_started: bool = False
    move_started: bool = False

    @property
    def destination_touched(self) -> bool:
        return self.export_started or self.import_started or self.move_started


class TransferEngine:
    """Executes the offline or online state machine for one VM."""

    def __init__(
        self,
        config: HyperVMCPConfig,
        hyperv: HyperVClient,
        cluster_manager: ClusterResourceManager,
        resolver: CompatibilityResolver,
        budget: RetryBudget | None = None,
    ):
        self.config = config
        self.hyperv = hyperv
        self.cluster_manager = cluster_manager
        self.resolver = resolver
        self.budget = budget or RetryBudget()
        self.logger = structlog.get_logger().bind(component="transfer_engine")

    async def run(
        self,
        context: TransferContext,
        progress: MigrationProgress,
        approval: ApprovalPolicy,
    ) -> MigrationOutcome:
        """Run the state machine selected by the plan's mode.

        Never raises for collaborator failures; they become ``Failed`` outcomes
        tagged with the phase that was executing.
        """
        plan = context.plan
        try:
            if plan.mode is MigrationMode.OFFLINE:
                outcome = await self._run_offline(context, progress, approval)
            else:
                outcome = await self._run_online(context, progress)
        except HyperVMCPError as e:
            phase = MigrationPhase(e.phase) if isinstance(e, TransferError) else context.phase
            outcome = MigrationOutcome.failed(phase, str(e))
            await progress.error(phase, f"{phase.value} failed: {e}")

        context.outcome = outcome
        return outcome

    def _enter(self, context: TransferContext, phase: MigrationPhase) -> None:
        context.phase = phase
        bind_phase(phase)

    async def _prepare_cluster(self, context: TransferContext, progress: MigrationProgress) -> None:
        """Take the VM out of its cluster resource group before storage moves."""
        preserved = context.preflight.preserved if context.preflight else None
        if preserved is None or preserved.cluster_group is None:
            return

        self._enter(context, MigrationPhase.CLUSTER_PREP)
        group = preserved.cluster_group
        await progress.info(
            MigrationPhase.CLUSTER_PREP,
            f"Removing cluster group {group.group_name} from {group.cluster_name}",
            host=context.plan.source_host,
        )
        await self.cluster_manager.remove_cluster_group(
            context.plan.source_host, group.cluster_name, context.plan.vm.id, remove_resources=True
        )
        context.cluster_group_removed = True

    async def _verify_realized(
        self, host: str, vm_id: str, phase: MigrationPhase, progress: MigrationProgress
    ) -> None:
        """Wait for the VM to show up on ``host`` after a primitive reported success.

        A copy that is still invisible when the budget runs out is only a
        warning: the primitive succeeded, so the outcome stays ``Moved``.
        """
        converged = await assert_until(
            lambda: self._is_realized(host, vm_id),
            budget=self.budget,
            description=f"VM {vm_id} realized on {host}",
        )
        if not converged:
            await progress.warning(
                phase, f"VM {vm_id} is not yet visible on {host}; verify it there", host=host
            )

    async def _is_realized(self, host: str, vm_id: str) -> bool:
        lookup = await self.hyperv.get_vm(host, vm_id)
        return lookup.is_found

    async def _resolve(
        self,
        context: TransferContext,
        progress: MigrationProgress,
        incompatibilities: list[Incompatibility],
    ) -> CompatibilityReport:
        plan = context.plan
        self._enter(context, MigrationPhase.RESOLVE)
        host_config = self.config.find_host(plan.destination_host)
        requested = plan.switch_name or (host_config.switch_name if host_config else None)

        report = await self.resolver.resolve(plan.destination_host, incompatibilities, requested)
        if not report.resolved:
            raise IncompatibilityError(report.unresolved_reasons)
        for resolution in report.resolutions:
            target = resolution.switch_name or "disconnected"
            await progress.info(
                MigrationPhase.RESOLVE,
                f"Adapter {resolution.adapter_name or '?'} -> {target}",
                host=plan.destination_host,
            )
        return report

    # Offline: shutdown, disarm autostart, export, compare, resolve, import

    async def _run_offline(
        self, context: TransferContext, progress: MigrationProgress, approval: ApprovalPolicy
    ) -> MigrationOutcome:
        plan = context.plan
        preflight = context.preflight
        if preflight is None or preflight.vm is None or preflight.preserved is None:
            raise TransferError(MigrationPhase.PRECHECK.value, "transfer started without preflight")
        source, destination, vm_id = plan.source_host, plan.destination_host, plan.vm.id

        await self._prepare_cluster(context, progress)

        if preflight.preserved.was_running:
            self._enter(context, MigrationPhase.SHUTDOWN)
            if not plan.force and not await approval.approve(
                f"Stop running VM {plan.vm.name} on {source} for offline migration?"
            ):
                raise TransferError(MigrationPhase.SHUTDOWN.value, "Shutdown was not approved")
            await progress.info(MigrationPhase.SHUTDOWN, f"Stopping {plan.vm.name}", host=source)
            await self.hyperv.stop_vm(source, vm_id)
            context.stopped = True
            stopped = await assert_until(
                lambda: self._is_off(source, vm_id),
                budget=self.budget,
                description=f"VM {vm_id} off on {source}",
            )
            if not stopped:
                raise TransferError(MigrationPhase.SHUTDOWN.value, f"VM {vm_id} did not stop")

        if preflight.preserved.automatic_start_action != AUTOSTART_NOTHING:
            self._enter(context, MigrationPhase.DISARM_AUTOSTART)
            await self.hyperv.set_automatic_start_action(source, vm_id, AUTOSTART_NOTHING)
            context.autostart_disarmed = True
            await progress.info(
                MigrationPhase.DISARM_AUTOSTART, "Automatic start disabled", host=source
            )

        self._enter(context, MigrationPhase.EXPORT)
        storage_path = preflight.destination_storage_path or ""
        context.export_directory = preflight.export_directory
        export_target = await self.hyperv.resolve_unc_share(
            self.config.hostname_for(destination), storage_path
        )
        await progress.info(MigrationPhase.EXPORT, f"Exporting to {export_target}", host=source)
        await self._export_with_trust(context, export_target)

        config_path = await self.hyperv.find_vm_config(
            destination, context.export_directory or storage_path, vm_id
        )
        if not config_path:
            raise TransferError(
                MigrationPhase.EXPORT.value,
                f"Exported configuration for {vm_id} not found under {context.export_directory}",
            )

        self._enter(context, MigrationPhase.COMPARE)
        options = ImportOptions(config_path=config_path)
        incompatibilities = await self.hyperv.compare_import(destination, options)
        await progress.info(
            MigrationPhase.COMPARE,
            f"{len(incompatibilities)} incompatibilities reported",
            host=destination,
        )
        report = await self._resolve(context, progress, incompatibilities)

        self._enter(context, MigrationPhase.IMPORT)
        context.import_started = True
        await progress.info(MigrationPhase.IMPORT, f"Importing {config_path}", host=destination)
        imported = await self.hyperv.import_vm(destination, options, report.resolutions)
        await self._verify_realized(destination, vm_id, MigrationPhase.IMPORT, progress)

        await progress.set_authoritative(MigrationPhase.IMPORT, destination)
        return MigrationOutcome.moved(
            VmIdentity(id=imported.id or vm_id, name=imported.name or plan.vm.name, source_host=destination)
        )

    async def _is_off(self, host: str, vm_id: str) -> bool:
        lookup = await self.hyperv.get_vm(host, vm_id)
        return lookup.vm is not None and lookup.vm.is_off

    async def _export_with_trust(self, context: TransferContext, export_target: str) -> None:
        """Export while the source machine account is a destination administrator."""
        plan = context.plan
        source, destination = plan.source_host, plan.destination_host
        grant = self.config.migration.grant_source_trust and not same_host(
            self.config.hostname_for(source), self.config.hostname_for(destination)
        )

        account = None
        added = False
        if grant:
            account = await self.hyperv.get_machine_account(source)
            added = await self.hyperv.add_local_admin(destination, account)
            self.logger.info(
                "Granted export trust", destination=destination, account=account, added=added
            )

        context.export_started = True
        try:
            await self.hyperv.export_vm(source, plan.vm.id, export_target)
        finally:
            if added and account:
                try:
                    await self.hyperv.remove_local_admin(destination, account)
                except RemoteCommandError as e:
                    self.logger.error(
                        "Failed to revoke export trust",
                        destination=destination,
                        account=account,
                        error=str(e),
                    )

    # Online: compare, resolve, move

    async def _run_online(
        self, context: TransferContext, progress: MigrationProgress
    ) -> MigrationOutcome:
        plan = context.plan
        preflight = context.preflight
        if preflight is None:
            raise TransferError(MigrationPhase.PRECHECK.value, "transfer started without preflight")
        source, destination, vm_id = plan.source_host, plan.destination_host, plan.vm.id

        await self._prepare_cluster(context, progress)

        self._enter(context, MigrationPhase.COMPARE)
        options = MoveOptions(
            destination_host=self.config.hostname_for(destination),
            destination_storage_path=(
                windows_join(preflight.destination_storage_path, plan.vm.name)
                if preflight.destination_storage_path
                else None
            ),
            vhd_mappings=list(plan.vhd_mappings),
        )
        incompatibilities = await self.hyperv.compare_move(source, vm_id, options)
        await progress.info(
            MigrationPhase.COMPARE,
            f"{len(incompatibilities)} incompatibilities reported",
            host=source,
        )
        report = await self._resolve(context, progress, incompatibilities)

        self._enter(context, MigrationPhase.MOVE)
        context.move_started = True
        await progress.info(MigrationPhase.MOVE, f"Live-moving to {destination}", host=source)
        await self.hyperv.move_vm(source, vm_id, options, report.resolutions)
        await self._verify_realized(destination, vm_id, MigrationPhase.MOVE, progress)

        await progress.set_authoritative(MigrationPhase.MOVE, destination)
        return MigrationOutcome.moved(VmIdentity(id=vm_id, name=plan.vm.name, source_host=destination))
