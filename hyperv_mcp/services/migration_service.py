"""
VM Migration Service

Facade between the MCP tools and the migration modules. Each call opens its
own remote session pool and releases it on every exit path.
"""

from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent

from ..core.config_loader import HyperVMCPConfig
from ..core.exceptions import HyperVMCPError, PreconditionError
from ..core.session_pool import RemoteSessionPool
from ..models.enums import EventLevel, MigrateAction, MigrationMode
from ..models.migration import MigrationPlan, MigrationReport, PreflightResult, VhdMapping
from ..models.vm import VmIdentity
from .migration.orchestrator import HostLockRegistry, VmMigrationOrchestrator
from .migration.progress import ApprovalPolicy

_LEVEL_MARKERS = {EventLevel.INFO: "•", EventLevel.WARNING: "⚠️", EventLevel.ERROR: "❌"}


class VmMigrationService:
    """Service for VM migration and host inspection operations."""

    def __init__(self, config: HyperVMCPConfig):
        self.config = config
        self.locks = HostLockRegistry()
        self.logger = structlog.get_logger().bind(component="migration_service")

    def _validate_host(self, host: str) -> tuple[bool, str]:
        """Validate host exists in configuration."""
        host_config = self.config.find_host(host)
        if host_config is None:
            return False, f"Host '{host}' not found"
        if not host_config.enabled:
            return False, f"Host '{host}' is disabled"
        return True, ""

    def _pool(self) -> RemoteSessionPool:
        return RemoteSessionPool(self.config)

    async def handle_action(self, action: MigrateAction | str, **params) -> ToolResult:
        """Unified action handler for the migrate_vm tool."""
        try:
            normalized = action if isinstance(action, MigrateAction) else MigrateAction(str(action).lower())
        except ValueError:
            return self._create_error_result(
                f"Unsupported action: {action}",
                {"supported_actions": [item.value for item in MigrateAction]},
            )

        dispatch_map: dict[MigrateAction, Callable[..., Awaitable[ToolResult]]] = {
            MigrateAction.MIGRATE: self.migrate_vm,
            MigrateAction.CHECK: self.check_vm,
        }
        try:
            return await dispatch_map[normalized](**params)
        except HyperVMCPError as e:
            self.logger.error(
                "migration service action error",
                action=normalized.value,
                vm=params.get("vm", ""),
                source_host=params.get("source_host", ""),
                error=str(e),
            )
            return self._create_error_result(str(e), {"action": normalized.value})

    async def _build_plan(
        self,
        orchestrator: VmMigrationOrchestrator,
        source_host: str,
        vm: str,
        destination_host: str,
        mode: MigrationMode | str = MigrationMode.OFFLINE,
        destination_storage_path: str | None = None,
        switch_name: str | None = None,
        vhd_mappings: list[dict[str, str]] | None = None,
        force: bool = False,
        restart: bool = True,
    ) -> MigrationPlan:
        identity: VmIdentity = await orchestrator.resolve_identity(source_host, vm)
        return MigrationPlan(
            vm=identity,
            destination_host=destination_host,
            mode=MigrationMode(mode) if not isinstance(mode, MigrationMode) else mode,
            destination_storage_path=destination_storage_path,
            switch_name=switch_name,
            vhd_mappings=tuple(VhdMapping(**mapping) for mapping in vhd_mappings or []),
            force=force,
            restart=restart,
        )

    async def migrate_vm(
        self,
        source_host: str,
        vm: str,
        destination_host: str,
        mode: MigrationMode | str = MigrationMode.OFFLINE,
        destination_storage_path: str | None = None,
        switch_name: str | None = None,
        vhd_mappings: list[dict[str, str]] | None = None,
        force: bool = False,
        restart: bool = True,
        auto_approve: bool | None = None,
    ) -> ToolResult:
        """Migrate a VM between Hyper-V hosts.

        Args:
            source_host: Host currently running the VM
            vm: VM name or id on the source host
            destination_host: Host to move the VM to
            mode: "offline" (export/import) or "online" (live move)
            destination_storage_path: Destination root for VM files
            switch_name: Switch to bind adapters whose switch is missing on the destination
            vhd_mappings: Per-disk destinations for online moves ({source_path, destination_path})
            force: Stop a running VM without approval
            restart: Start the VM on the destination if it was running
            auto_approve: Override the configured approval policy

        Returns:
            ToolResult with the outcome, authoritative host and every progress event
        """
        for host in (source_host, destination_host):
            is_valid, error_msg = self._validate_host(host)
            if not is_valid:
                return self._create_error_result(error_msg, {"vm": vm})

        approval = ApprovalPolicy(
            auto_approve=self.config.migration.auto_approve if auto_approve is None else auto_approve
        )
        async with self._pool() as pool:
            orchestrator = VmMigrationOrchestrator.from_pool(self.config, pool, self.locks)
            try:
                plan = await self._build_plan(
                    orchestrator,
                    source_host,
                    vm,
                    destination_host,
                    mode,
                    destination_storage_path,
                    switch_name,
                    vhd_mappings,
                    force,
                    restart,
                )
            except PreconditionError as e:
                return self._create_error_result(str(e), {"vm": vm, "condition": e.condition})

            report = await orchestrator.migrate(plan, approval)
            stats = pool.get_stats()

        return self._create_final_result(report, stats)

    async def check_vm(
        self,
        source_host: str,
        vm: str,
        destination_host: str,
        mode: MigrationMode | str = MigrationMode.OFFLINE,
        destination_storage_path: str | None = None,
        switch_name: str | None = None,
        vhd_mappings: list[dict[str, str]] | None = None,
        **_: Any,
    ) -> ToolResult:
        """Run only the precondition checks for a planned migration."""
        for host in (source_host, destination_host):
            is_valid, error_msg = self._validate_host(host)
            if not is_valid:
                return self._create_error_result(error_msg, {"vm": vm})

        async with self._pool() as pool:
            orchestrator = VmMigrationOrchestrator.from_pool(self.config, pool, self.locks)
            try:
                plan = await self._build_plan(
                    orchestrator,
                    source_host,
                    vm,
                    destination_host,
                    mode,
                    destination_storage_path,
                    switch_name,
                    vhd_mappings,
                )
            except PreconditionError as e:
                return self._create_error_result(str(e), {"vm": vm, "condition": e.condition})

            async with self.locks.hold(plan.source_host, plan.destination_host):
                preflight = await orchestrator.preflight(plan)

        return self._create_check_result(plan, preflight)

    async def inspect_host(self, host: str, vm: str | None = None) -> ToolResult:
        """Report cluster membership, switches and optionally a VM's paths on ``host``."""
        is_valid, error_msg = self._validate_host(host)
        if not is_valid:
            return self._create_error_result(error_msg, {"host": host})

        data: dict[str, Any] = {"host": host}
        try:
            async with self._pool() as pool:
                orchestrator = VmMigrationOrchestrator.from_pool(self.config, pool, self.locks)
                cluster = await orchestrator.inspector.get_cluster_info(host)
                switches = await orchestrator.hyperv.get_switches(host)
                data["cluster"] = cluster.model_dump(mode="json")
                data["switches"] = [switch.model_dump(mode="json") for switch in switches]

                if vm:
                    identity = await orchestrator.resolve_identity(host, vm)
                    paths = await orchestrator.hyperv.get_vm_paths(host, identity.id)
                    data["vm"] = identity.model_dump(mode="json")
                    data["vm_paths"] = paths.model_dump(mode="json") if paths else None
                    if cluster.is_clustered and cluster.cluster_name:
                        group = await orchestrator.cluster_manager.get_cluster_group(
                            host, cluster.cluster_name, identity.id
                        )
                        data["cluster_group"] = group.model_dump(mode="json") if group else None
        except HyperVMCPError as e:
            self.logger.error("Host inspection failed", host=host, error=str(e))
            return self._create_error_result(str(e), data)

        lines = [
            f"Host: {host}",
            f"Cluster: {data['cluster'].get('cluster_name') or 'not clustered'}",
            "Switches: "
            + (", ".join(f"{s['name']} ({s['switch_type']})" for s in data["switches"]) or "none"),
        ]
        if "vm" in data:
            lines.append(f"VM: {data['vm']['name']} ({data['vm']['id']})")
        data["success"] = True
        return ToolResult(
            content=[TextContent(type="text", text="\n".join(lines))],
            structured_content=data,
        )

    def _create_check_result(self, plan: MigrationPlan, preflight: PreflightResult) -> ToolResult:
        data: dict[str, Any] = {
            "success": preflight.success,
            "vm": plan.vm.model_dump(mode="json"),
            "destination_host": plan.destination_host,
            "mode": plan.mode.value,
            "preflight": preflight.model_dump(mode="json"),
        }
        if preflight.success:
            text = (
                f"✅ {plan.vm.name} can move {plan.source_host} → {plan.destination_host} "
                f"({plan.mode.value}); storage: {preflight.destination_storage_path}"
            )
        else:
            data["error"] = preflight.violation
            text = f"❌ Precondition {preflight.condition} violated: {preflight.violation}"
        return ToolResult(content=[TextContent(type="text", text=text)], structured_content=data)

    def _create_final_result(self, report: MigrationReport, stats: dict[str, Any]) -> ToolResult:
        """Create final migration result."""
        plan, outcome = report.plan, report.outcome
        header = (
            f"✅ Moved {plan.vm.name} ({plan.vm.id})"
            if outcome.succeeded
            else f"❌ Migration of {plan.vm.name} failed at {outcome.phase.value if outcome.phase else '?'}"
        )
        lines = [
            header,
            f"Source: {plan.source_host} → Destination: {plan.destination_host} ({plan.mode.value})",
            f"Authoritative host: {report.authoritative_host or 'unknown'}",
            "",
            *(
                f"{_LEVEL_MARKERS[event.level]} [{event.phase.value}] {event.message}"
                for event in report.events
            ),
        ]

        data: dict[str, Any] = {
            "success": outcome.succeeded,
            "outcome": outcome.model_dump(mode="json"),
            "authoritative_host": report.authoritative_host,
            "warnings": report.warnings,
            "events": [event.model_dump(mode="json") for event in report.events],
            "session_stats": stats,
        }
        if report.restore is not None:
            data["restore"] = report.restore.model_dump(mode="json")
        if not outcome.succeeded:
            data["error"] = outcome.reason
        return ToolResult(content=[TextContent(type="text", text="\n".join(lines))], structured_content=data)

    def _create_error_result(self, error_message: str, data: dict[str, Any]) -> ToolResult:
        """Create standardized error result."""
        data.update({"success": False, "error": error_message})
        return ToolResult(
            content=[TextContent(type="text", text=f"❌ Migration Error: {error_message}")],
            structured_content=data,
        )
