"""VM migration orchestrator."""

import asyncio
import re
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from structlog.stdlib import BoundLogger

from ...core.cluster import ClusterResourceManager, ClusterStateInspector
from ...core.config_loader import HyperVMCPConfig
from ...core.exceptions import PreconditionError
from ...core.hyperv import HyperVClient
from ...core.logging_config import bind_phase, migration_context
from ...core.retry import RetryBudget
from ...core.session_pool import RemoteSessionPool
from ...models.enums import LookupStatus, MigrationPhase
from ...models.migration import (
    MigrationOutcome,
    MigrationPlan,
    MigrationReport,
    PreflightResult,
    RestoreReport,
)
from ...models.vm import VmIdentity
from ...utils import format_duration, short_hostname
from .compatibility import CompatibilityResolver
from .progress import ApprovalPolicy, EventListener, MigrationProgress
from .restore import RollbackRestoreManager
from .transfer import TransferContext, TransferEngine
from .validation import VM_AMBIGUOUS, VM_NOT_FOUND, PreconditionValidator

_GUID_PATTERN = re.compile(r"^\{?[0-9a-fA-F]{8}(-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12}\}?$")


class HostLockRegistry:
    """Per-host locks serializing migrations that share a host.

    Locks are taken in sorted order so two migrations over the same pair of
    hosts cannot deadlock. They only guard this process.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, *hosts: str) -> AsyncIterator[None]:
        keys = sorted({short_hostname(host) for host in hosts})
        acquired: list[asyncio.Lock] = []
        try:
            for key in keys:
                lock = self._locks[key]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, host: str) -> bool:
        return self._locks[short_hostname(host)].locked()


class VmMigrationOrchestrator:
    """Orchestrates VM migrations between Hyper-V hosts.

    Runs the precondition checks, the transfer and the restore/cleanup step
    for one VM, reporting progress phase by phase. Each run holds the locks of
    both hosts involved, so migrations sharing a host never overlap.
    """

    def __init__(
        self,
        config: HyperVMCPConfig,
        hyperv: HyperVClient,
        cluster_manager: ClusterResourceManager,
        locks: HostLockRegistry | None = None,
    ):
        """Initialize the orchestrator and its phase modules."""
        self.config = config
        self.hyperv = hyperv
        self.cluster_manager = cluster_manager
        settings = config.migration
        self.budget = RetryBudget(settings.assert_max_attempts, settings.assert_interval)
        self.inspector = ClusterStateInspector(cluster_manager)
        self.validator = PreconditionValidator(config, hyperv, self.inspector, self.budget)
        self.resolver = CompatibilityResolver(hyperv, settings.switch_hint)
        self.transfer = TransferEngine(config, hyperv, cluster_manager, self.resolver, self.budget)
        self.restore_manager = RollbackRestoreManager(hyperv, cluster_manager, self.budget)
        self.locks = locks or HostLockRegistry()
        self.logger: BoundLogger = structlog.get_logger().bind(component="migration_orchestrator")

    @classmethod
    def from_pool(
        cls,
        config: HyperVMCPConfig,
        pool: RemoteSessionPool,
        locks: HostLockRegistry | None = None,
    ) -> "VmMigrationOrchestrator":
        return cls(config, HyperVClient(pool), ClusterResourceManager(pool), locks)

    async def resolve_identity(self, source_host: str, vm: str) -> VmIdentity:
        """Resolve a VM id or name on ``source_host`` to its identity.

        Raises:
            PreconditionError: No VM or more than one VM matches
        """
        if _GUID_PATTERN.match(vm.strip()):
            lookup = await self.hyperv.get_vm(source_host, vm.strip().strip("{}").lower())
            if lookup.status is LookupStatus.ERROR:
                raise PreconditionError("remote_error", lookup.error or f"Get-VM failed on {source_host}")
            if lookup.vm is not None:
                return lookup.vm.identity()

        matches = await self.hyperv.find_vms_by_name(source_host, vm)
        if not matches:
            raise PreconditionError(VM_NOT_FOUND, f"No VM named '{vm}' on {source_host}")
        if len(matches) > 1:
            ids = ", ".join(match.id for match in matches)
            raise PreconditionError(
                VM_AMBIGUOUS, f"{len(matches)} VMs named '{vm}' on {source_host}: {ids}"
            )
        return matches[0].identity()

    async def preflight(self, plan: MigrationPlan) -> PreflightResult:
        """Run the precondition checks only; nothing is mutated beyond path creation."""
        return await self.validator.validate(plan)

    async def migrate(
        self,
        plan: MigrationPlan,
        approval: ApprovalPolicy | None = None,
        listener: EventListener | None = None,
    ) -> MigrationReport:
        """Migrate one VM within the configured wall-clock budget.

        Args:
            plan: What to move and where
            approval: Policy for stopping a running VM; defaults to the configured auto-approve
            listener: Optional callback receiving each progress event as it happens

        Returns:
            MigrationReport with the outcome, the restore report and every event
        """
        approval = approval or ApprovalPolicy(auto_approve=self.config.migration.auto_approve)
        progress = MigrationProgress(plan.vm, listener)
        context = TransferContext(plan=plan)
        timeout = self.config.migration.migration_timeout
        loop = asyncio.get_running_loop()
        started = loop.time()

        with migration_context(plan.vm.id, plan.vm.name, plan.source_host, plan.destination_host):
            async with self.locks.hold(plan.source_host, plan.destination_host):
                try:
                    report = await asyncio.wait_for(
                        self._run(context, progress, approval), timeout=timeout
                    )
                except TimeoutError:
                    report = await self._timed_out(context, progress, timeout)

        self.logger.info(
            "Migration finished",
            vm_id=plan.vm.id,
            source=plan.source_host,
            destination=plan.destination_host,
            outcome=report.outcome.kind,
            phase=report.outcome.phase.value if report.outcome.phase else None,
            authoritative_host=report.authoritative_host,
            duration=format_duration(loop.time() - started),
            warnings=len(report.warnings),
        )
        return report

    async def _run(
        self, context: TransferContext, progress: MigrationProgress, approval: ApprovalPolicy
    ) -> MigrationReport:
        plan = context.plan
        bind_phase(MigrationPhase.PRECHECK)
        await progress.info(
            MigrationPhase.PRECHECK,
            f"Checking {plan.vm.name} {plan.source_host} -> {plan.destination_host} ({plan.mode.value})",
        )
        preflight = await self.validator.validate(plan)
        context.preflight = preflight
        if not preflight.success:
            await progress.error(
                MigrationPhase.PRECHECK, f"Precondition {preflight.condition} violated: {preflight.violation}"
            )
            outcome = MigrationOutcome.failed(
                MigrationPhase.PRECHECK, f"{preflight.condition}: {preflight.violation}"
            )
            context.outcome = outcome
            return MigrationReport(plan=plan, outcome=outcome, preflight=preflight, events=progress.events)

        outcome = await self.transfer.run(context, progress, approval)

        context.phase = MigrationPhase.RESTORE
        bind_phase(context.phase)
        restore = await self.restore_manager.restore(context, outcome, progress)

        if outcome.succeeded:
            await progress.info(
                MigrationPhase.COMPLETE,
                f"{plan.vm.name} is running from {plan.destination_host}"
                if preflight.preserved and preflight.preserved.was_running and plan.restart
                else f"{plan.vm.name} now lives on {plan.destination_host}",
                host=plan.destination_host,
            )
        else:
            await progress.error(
                MigrationPhase.COMPLETE,
                f"Migration failed during {outcome.phase.value if outcome.phase else 'unknown'}; "
                f"authoritative host: {restore.authoritative_host or 'unknown'}",
            )

        return MigrationReport(
            plan=plan, outcome=outcome, preflight=preflight, restore=restore, events=progress.events
        )

    async def _timed_out(
        self, context: TransferContext, progress: MigrationProgress, timeout: int
    ) -> MigrationReport:
        """Report the budget overrun; nothing is rolled back."""
        plan = context.plan
        message = (
            f"Wall-clock budget of {format_duration(timeout)} exceeded during {context.phase.value}; "
            f"last known authoritative host: {progress.authoritative_host}. Manual review required"
        )
        if context.outcome is not None:
            await progress.warning(context.phase, message)
            outcome = context.outcome
        else:
            await progress.error(context.phase, message)
            outcome = MigrationOutcome.failed(context.phase, "timeout")
        restore = RestoreReport(
            authoritative_host=progress.authoritative_host,
            restored=False,
            cleanup_converged=False,
            warnings=[message],
        )
        return MigrationReport(
            plan=plan,
            outcome=outcome,
            preflight=context.preflight,
            restore=restore,
            events=progress.events,
        )

    async def migrate_batch(
        self,
        plans: list[MigrationPlan],
        approval: ApprovalPolicy | None = None,
        listener: EventListener | None = None,
    ) -> list[MigrationReport]:
        """Migrate several VMs; reports come back in input order.

        Sequential unless ``max_parallel_migrations`` allows more; even then
        migrations that share a host wait for each other.
        """
        limit = self.config.migration.max_parallel_migrations
        self.logger.info("Starting batch migration", count=len(plans), max_parallel=limit)
        if limit <= 1:
            return [await self.migrate(plan, approval, listener) for plan in plans]

        semaphore = asyncio.Semaphore(limit)

        async def run_one(plan: MigrationPlan) -> MigrationReport:
            async with semaphore:
                return await self.migrate(plan, approval, listener)

        return list(await asyncio.gather(*(run_one(plan) for plan in plans)))
