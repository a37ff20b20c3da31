"""Shared pytest fixtures for Hyper-V MCP tests.

``FakeFabric`` models a handful of Hyper-V hosts and failover clusters in
memory. ``FakeHyperVClient`` and ``FakeClusterManager`` expose the same
coroutine surface as the real adapters, record every mutating call, support
per-operation fault injection, and can keep removed objects visible for a
number of polls to mimic asynchronous removal.
"""

import copy
import uuid
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest

from hyperv_mcp.core.config_loader import HyperVHost, HyperVMCPConfig, MigrationSettings
from hyperv_mcp.core.exceptions import ConnectivityError, RemoteCommandError
from hyperv_mcp.models import (
    ClusterGroupInfo,
    ClusterPresence,
    ImportOptions,
    Incompatibility,
    IncompatibilityCode,
    MigrationMode,
    MigrationPlan,
    MoveOptions,
    Resolution,
    ResolutionAction,
    SharedVolume,
    VmIdentity,
    VmLookup,
    VmPathSet,
    VmRecord,
    VmSwitch,
)
from hyperv_mcp.services.migration.orchestrator import VmMigrationOrchestrator
from hyperv_mcp.utils import (
    is_under,
    normalize_path,
    short_hostname,
    to_unc_path,
    windows_basename,
    windows_join,
)

DOMAIN = "CORP"


@dataclass
class FakeVm:
    id: str
    name: str
    state: str = "Running"
    automatic_start_action: str = "StartIfRunning"
    configuration_location: str = ""
    disks: list[str] = field(default_factory=list)
    adapters: list[list[str | None]] = field(default_factory=list)
    snapshots: list[str] = field(default_factory=list)

    @property
    def adapter_switches(self) -> list[str | None]:
        return [switch for _, switch in self.adapters]

    def record(self, host: str, planned: bool = False) -> VmRecord:
        return VmRecord(
            id=self.id,
            name=self.name,
            host=host,
            state="Planned" if planned else self.state,
            automatic_start_action=self.automatic_start_action,
            configuration_location=self.configuration_location,
            planned=planned,
        )

    def paths(self) -> VmPathSet:
        return VmPathSet(
            configuration_location=self.configuration_location,
            checkpoint_location=self.configuration_location,
            smart_paging_path=self.configuration_location,
            snapshot_location=self.configuration_location,
            disk_paths=list(self.disks),
        )


@dataclass
class FakeHost:
    name: str
    switches: list[VmSwitch] = field(default_factory=list)
    default_path: str = "C:\\ProgramData\\Microsoft\\Windows\\Hyper-V"
    cluster: str | None = None
    reachable: bool = True
    vms: dict[str, FakeVm] = field(default_factory=dict)
    planned: dict[str, FakeVm] = field(default_factory=dict)
    files: dict[str, str] = field(default_factory=dict)
    dirs: dict[str, str] = field(default_factory=dict)
    admins: set[str] = field(default_factory=set)


@dataclass
class FakeCluster:
    name: str
    nodes: list[str]
    volumes: list[SharedVolume] = field(default_factory=list)
    groups: dict[str, ClusterGroupInfo] = field(default_factory=dict)


class FakeFabric:
    """In-memory Hyper-V hosts and clusters."""

    def __init__(self):
        self.hosts: dict[str, FakeHost] = {}
        self.clusters: dict[str, FakeCluster] = {}
        self.exports: dict[str, FakeVm] = {}
        self.mutations: list[tuple[str, str, str]] = []
        self.faults: dict[str, Exception] = {}
        self.removal_delays: dict[str, int] = {}
        self.pending: dict[tuple[str, str, str], int] = {}
        self.extra_incompatibilities: dict[str, list[Incompatibility]] = {}
        self.require_export_trust = True

    # Building

    def add_host(
        self,
        name: str,
        switches: list[VmSwitch] | None = None,
        cluster: str | None = None,
        default_path: str = "C:\\ProgramData\\Microsoft\\Windows\\Hyper-V",
    ) -> FakeHost:
        host = FakeHost(
            name=name,
            switches=switches if switches is not None else [VmSwitch(name="vSwitch-Compute")],
            default_path=default_path,
            cluster=cluster,
        )
        self.hosts[short_hostname(name)] = host
        return host

    def add_cluster(self, name: str, nodes: list[str], volumes: list[SharedVolume] | None = None):
        cluster = FakeCluster(name=name, nodes=nodes, volumes=volumes or [])
        self.clusters[name.lower()] = cluster
        for node in nodes:
            self.host(node).cluster = name
        return cluster

    def add_vm(
        self,
        host: str,
        name: str,
        root: str = "D:\\VMs",
        vm_id: str | None = None,
        state: str = "Running",
        automatic_start_action: str = "StartIfRunning",
        adapters: list[tuple[str, str | None]] | None = None,
        snapshots: list[str] | None = None,
        cluster_priority: int | None = None,
    ) -> FakeVm:
        vm_id = vm_id or str(uuid.uuid4())
        if adapters is None:
            adapters = [("Network Adapter", "vSwitch-Compute")]
        folder = windows_join(root, name)
        vm = FakeVm(
            id=vm_id,
            name=name,
            state=state,
            automatic_start_action=automatic_start_action,
            configuration_location=folder,
            disks=[windows_join(folder, "Virtual Hard Disks", f"{name}.vhdx")],
            adapters=[list(pair) for pair in adapters],
            snapshots=snapshots or [],
        )
        target = self.host(host)
        target.vms[vm_id] = vm
        self._write_vm_files(target, vm)
        if cluster_priority is not None and target.cluster:
            self.cluster(target.cluster).groups[vm_id] = ClusterGroupInfo(
                cluster_name=target.cluster,
                group_name=name,
                vm_id=vm_id,
                owner_node=target.name,
                priority=cluster_priority,
            )
        return vm

    def add_dir(self, host: str, path: str) -> None:
        self.host(host).dirs[normalize_path(path)] = path

    def add_file(self, host: str, path: str) -> None:
        self.host(host).files[normalize_path(path)] = path

    def _write_vm_files(self, host: FakeHost, vm: FakeVm) -> None:
        folder = vm.configuration_location
        host.dirs[normalize_path(folder)] = folder
        for path in [
            windows_join(folder, "Virtual Machines", f"{vm.id}.vmcx"),
            windows_join(folder, "Virtual Machines", f"{vm.id}.vmgs"),
            *vm.disks,
        ]:
            host.files[normalize_path(path)] = path

    # Fault injection

    def fail(self, operation: str, error: Exception | None = None) -> None:
        self.faults[operation] = error or RemoteCommandError("fabric", operation, "injected failure")

    def delay_removal(self, operation: str, polls: int) -> None:
        """Keep objects removed by ``operation`` visible for ``polls`` reads."""
        self.removal_delays[operation] = polls

    def check_fault(self, operation: str) -> None:
        if operation in self.faults:
            raise self.faults[operation]

    # Queries

    def host(self, name: str) -> FakeHost:
        key = short_hostname(name)
        if key not in self.hosts:
            raise ConnectivityError(name, "unknown host")
        host = self.hosts[key]
        if not host.reachable:
            raise ConnectivityError(name, "host unreachable")
        return host

    def cluster(self, name: str) -> FakeCluster:
        return self.clusters[name.lower()]

    def realized_on(self, vm_id: str) -> list[str]:
        return sorted(host.name for host in self.hosts.values() if vm_id in host.vms)

    def planned_on(self, vm_id: str) -> list[str]:
        return sorted(host.name for host in self.hosts.values() if vm_id in host.planned)

    def vm_state(self, host: str, vm_id: str) -> tuple[str, str, int | None]:
        """(state, automatic start action, cluster priority or None)."""
        target = self.host(host)
        vm = target.vms[vm_id]
        priority = None
        if target.cluster and vm_id in self.cluster(target.cluster).groups:
            priority = self.cluster(target.cluster).groups[vm_id].priority
        return vm.state, vm.automatic_start_action, priority

    def exists(self, host: str, path: str) -> bool:
        target = self.host(host)
        key = normalize_path(path)
        if key in target.files or key in target.dirs:
            return True
        return any(is_under(original, path) for original in target.files.values())

    def files_under(self, host: str, path: str) -> list[str]:
        target = self.host(host)
        return sorted(
            original
            for original in target.files.values()
            if is_under(original, path) and normalize_path(original) != normalize_path(path)
        )

    def record(self, operation: str, host: str, detail: str = "") -> None:
        self.mutations.append((operation, short_hostname(host), detail))

    def mutations_for(self, operation: str) -> list[tuple[str, str, str]]:
        return [entry for entry in self.mutations if entry[0] == operation]

    def _defer(self, operation: str, host: str, key: str) -> bool:
        """Register a delayed removal; True when the object must stay visible."""
        polls = self.removal_delays.get(operation, 0)
        if polls <= 0:
            return False
        self.pending.setdefault((operation, short_hostname(host), key), polls)
        return True

    def _visible(self, operation: str, host: str, key: str) -> bool | None:
        """None when nothing is pending, else whether the object is still visible."""
        pending_key = (operation, short_hostname(host), key)
        if pending_key not in self.pending:
            return None
        self.pending[pending_key] -= 1
        if self.pending[pending_key] > 0:
            return True
        del self.pending[pending_key]
        return False

    def remove_tree(self, host: FakeHost, path: str) -> None:
        for key in [key for key, original in host.files.items() if is_under(original, path)]:
            del host.files[key]
        for key in [key for key, original in host.dirs.items() if is_under(original, path)]:
            del host.dirs[key]


def _dangling_adapters(vm: FakeVm, host: FakeHost) -> list[int]:
    names = {switch.name.lower() for switch in host.switches}
    return [
        position
        for position, (_, switch) in enumerate(vm.adapters)
        if switch is not None and switch.lower() not in names
    ]


def _apply_resolutions(vm: FakeVm, resolutions: list[Resolution], host: FakeHost) -> None:
    """Replay resolutions against one comparison, the way the remote script does."""
    dangling = _dangling_adapters(vm, host)
    for resolution in resolutions:
        if resolution.incompatibility_index is not None:
            if resolution.incompatibility_index >= len(dangling):
                continue
            position = dangling[resolution.incompatibility_index]
        else:
            matches = [pos for pos in dangling if vm.adapters[pos][0] == resolution.adapter_name]
            if not matches:
                continue
            position = matches[0]
        if resolution.action is ResolutionAction.CONNECT:
            vm.adapters[position][1] = resolution.switch_name
        else:
            vm.adapters[position][1] = None


def _switch_incompatibilities(vm: FakeVm, host: FakeHost) -> list[Incompatibility]:
    return [
        Incompatibility(
            code=IncompatibilityCode.SWITCH_NOT_FOUND,
            message_id=33012,
            message=f"Could not find Ethernet switch '{vm.adapters[position][1]}'.",
            element_type="VMNetworkAdapter",
            element_name=vm.adapters[position][0],
            switch_name=vm.adapters[position][1],
            index=index,
        )
        for index, position in enumerate(_dangling_adapters(vm, host))
    ]

def _unc_to_local(path: str) -> tuple[str, str]:
    parts = path.lstrip("\\").split("\\")
    host, share, rest = parts[0], parts[1], parts[2:]
    drive = share.rstrip("$") + ":\\"
    return host, windows_join(drive, *rest)


class FakeHyperVClient:
    """Stand-in for ``HyperVClient`` backed by a ``FakeFabric``."""

    def __init__(self, fabric: FakeFabric):
        self.fabric = fabric

    # VM inventory

    async def get_vm(self, host: str, vm_id: str) -> VmLookup:
        try:
            target = self.fabric.host(host)
        except ConnectivityError as e:
            return VmLookup.failed(str(e))
        visible = self.fabric._visible("remove_vm", host, vm_id)
        if visible is False:
            target.vms.pop(vm_id, None)
        if vm_id not in target.vms:
            return VmLookup.not_found()
        return VmLookup.found(target.vms[vm_id].record(target.name))

    async def find_vms_by_name(self, host: str, name: str) -> list[VmRecord]:
        target = self.fabric.host(host)
        return [vm.record(target.name) for vm in target.vms.values() if vm.name.lower() == name.lower()]

    async def get_planned_vm(self, host: str, vm_id: str) -> VmLookup:
        try:
            target = self.fabric.host(host)
        except ConnectivityError as e:
            return VmLookup.failed(str(e))
        visible = self.fabric._visible("remove_planned_vm", host, vm_id)
        if visible is False:
            target.planned.pop(vm_id, None)
        if vm_id not in target.planned:
            return VmLookup.not_found()
        return VmLookup.found(target.planned[vm_id].record(target.name, planned=True))

    async def get_vm_paths(self, host: str, vm_id: str) -> VmPathSet | None:
        target = self.fabric.host(host)
        vm = target.vms.get(vm_id)
        return vm.paths() if vm else None

    async def get_snapshots(self, host: str, vm_id: str) -> list[str]:
        vm = self.fabric.host(host).vms.get(vm_id)
        return list(vm.snapshots) if vm else []

    async def get_switches(self, host: str) -> list[VmSwitch]:
        return list(self.fabric.host(host).switches)

    async def get_default_storage_path(self, host: str) -> str:
        return self.fabric.host(host).default_path

    # VM compute

    async def stop_vm(self, host: str, vm_id: str, turn_off: bool = False) -> None:
        self.fabric.check_fault("stop_vm")
        self.fabric.record("stop_vm", host, vm_id)
        self.fabric.host(host).vms[vm_id].state = "Off"

    async def start_vm(self, host: str, vm_id: str) -> None:
        self.fabric.check_fault("start_vm")
        self.fabric.record("start_vm", host, vm_id)
        self.fabric.host(host).vms[vm_id].state = "Running"

    async def remove_vm(self, host: str, vm_id: str) -> None:
        self.fabric.check_fault("remove_vm")
        target = self.fabric.host(host)
        self.fabric.record("remove_vm", host, vm_id)
        if vm_id in target.vms and not self.fabric._defer("remove_vm", host, vm_id):
            del target.vms[vm_id]

    async def remove_planned_vm(self, host: str, vm_id: str) -> None:
        self.fabric.check_fault("remove_planned_vm")
        target = self.fabric.host(host)
        self.fabric.record("remove_planned_vm", host, vm_id)
        if vm_id in target.planned and not self.fabric._defer("remove_planned_vm", host, vm_id):
            del target.planned[vm_id]

    async def set_automatic_start_action(self, host: str, vm_id: str, action: str = "Nothing") -> None:
        self.fabric.check_fault("set_automatic_start_action")
        self.fabric.record("set_automatic_start_action", host, f"{vm_id}:{action}")
        self.fabric.host(host).vms[vm_id].automatic_start_action = action

    # Transfer

    async def export_vm(self, host: str, vm_id: str, path: str) -> None:
        source = self.fabric.host(host)
        vm = source.vms[vm_id]
        destination_name, local_root = _unc_to_local(path)
        destination = self.fabric.host(destination_name)
        if self.fabric.require_export_trust and f"{DOMAIN}\\{source.name.upper()}$" not in destination.admins:
            raise RemoteCommandError(host, "Export-VM", f"Access denied to {path}")

        folder = windows_join(local_root, vm.name)
        self.fabric.record("export_vm", host, folder)
        destination.dirs[normalize_path(folder)] = folder
        self.fabric.check_fault("export_vm")

        exported = copy.deepcopy(vm)
        exported.state = "Off"
        exported.snapshots = []
        exported.configuration_location = folder
        exported.disks = [
            windows_join(folder, "Virtual Hard Disks", windows_basename(disk)) for disk in vm.disks
        ]
        self.fabric._write_vm_files(destination, exported)
        config_path = windows_join(folder, "Virtual Machines", f"{vm.id}.vmcx")
        self.fabric.exports[normalize_path(config_path)] = exported

    async def find_vm_config(self, host: str, directory: str, vm_id: str) -> str | None:
        for path in self.fabric.files_under(host, directory):
            if windows_basename(path).lower() == f"{vm_id}.vmcx":
                return path
        return None

    async def compare_import(self, host: str, options: ImportOptions) -> list[Incompatibility]:
        target = self.fabric.host(host)
        exported = self.fabric.exports[normalize_path(options.config_path)]
        return [
            *_switch_incompatibilities(exported, target),
            *self.fabric.extra_incompatibilities.get(short_hostname(host), []),
        ]

    async def import_vm(
        self, host: str, options: ImportOptions, resolutions: list[Resolution]
    ) -> VmRecord:
        target = self.fabric.host(host)
        vm = copy.deepcopy(self.fabric.exports[normalize_path(options.config_path)])
        self.fabric.record("import_vm", host, options.config_path)
        target.planned[vm.id] = vm
        self.fabric.check_fault("import_vm")

        _apply_resolutions(vm, resolutions, target)
        if _switch_incompatibilities(vm, target):
            raise RemoteCommandError(host, "Import-VM", "unresolved switch reference")
        target.vms[vm.id] = vm
        del target.planned[vm.id]
        return vm.record(target.name)

    async def compare_move(
        self, source_host: str, vm_id: str, options: MoveOptions
    ) -> list[Incompatibility]:
        vm = self.fabric.host(source_host).vms[vm_id]
        destination = self.fabric.host(options.destination_host)
        return [
            *_switch_incompatibilities(vm, destination),
            *self.fabric.extra_incompatibilities.get(short_hostname(options.destination_host), []),
        ]

    async def move_vm(
        self, source_host: str, vm_id: str, options: MoveOptions, resolutions: list[Resolution]
    ) -> None:
        source = self.fabric.host(source_host)
        destination = self.fabric.host(options.destination_host)
        self.fabric.record("move_vm", source_host, options.destination_host)
        self.fabric.check_fault("move_vm")

        vm = copy.deepcopy(source.vms[vm_id])
        _apply_resolutions(vm, resolutions, destination)
        if _switch_incompatibilities(vm, destination):
            raise RemoteCommandError(source_host, "Move-VM", "unresolved switch reference")

        del source.vms[vm_id]
        for disk in vm.disks:
            source.files.pop(normalize_path(disk), None)
        self.fabric.remove_tree(source, vm.configuration_location)

        folder = options.destination_storage_path or windows_join(destination.default_path, vm.name)
        mapped = {normalize_path(m.source_path): m.destination_path for m in options.vhd_mappings}
        vm.disks = [
            mapped.get(
                normalize_path(disk),
                windows_join(folder, "Virtual Hard Disks", windows_basename(disk)),
            )
            for disk in vm.disks
        ]
        vm.configuration_location = folder
        destination.vms[vm_id] = vm
        self.fabric._write_vm_files(destination, vm)

    # Storage

    async def test_path(self, host: str, path: str) -> bool:
        target = self.fabric.host(host)
        key = normalize_path(path)
        visible = self.fabric._visible("remove_path", host, key)
        if visible is False:
            self.fabric.remove_tree(target, path)
        return self.fabric.exists(host, path)

    async def new_directory(self, host: str, path: str) -> None:
        self.fabric.check_fault("new_directory")
        self.fabric.record("new_directory", host, path)
        self.fabric.add_dir(host, path)

    async def remove_path(self, host: str, path: str, recurse: bool = False) -> None:
        self.fabric.check_fault("remove_path")
        target = self.fabric.host(host)
        self.fabric.record("remove_path", host, path)
        if self.fabric._defer("remove_path", host, normalize_path(path)):
            return
        if recurse:
            self.fabric.remove_tree(target, path)
        else:
            target.files.pop(normalize_path(path), None)
            target.dirs.pop(normalize_path(path), None)

    async def list_child_items(
        self,
        host: str,
        path: str,
        recurse: bool = False,
        files_only: bool = False,
        name_filter: str | None = None,
    ) -> list[str]:
        return self.fabric.files_under(host, path)

    async def resolve_unc_share(self, host: str, path: str) -> str:
        return to_unc_path(host, path)

    # Trust

    async def get_machine_account(self, host: str) -> str:
        return f"{DOMAIN}\\{self.fabric.host(host).name.upper()}$"

    async def add_local_admin(self, host: str, member: str) -> bool:
        target = self.fabric.host(host)
        if member in target.admins:
            return False
        self.fabric.record("add_local_admin", host, member)
        target.admins.add(member)
        return True

    async def remove_local_admin(self, host: str, member: str) -> None:
        self.fabric.record("remove_local_admin", host, member)
        self.fabric.host(host).admins.discard(member)


class FakeClusterManager:
    """Stand-in for ``ClusterResourceManager`` backed by a ``FakeFabric``."""

    def __init__(self, fabric: FakeFabric):
        self.fabric = fabric

    async def get_cluster_name(self, host: str) -> str | None:
        return self.fabric.host(host).cluster

    async def get_cluster_nodes(self, host: str, cluster: str) -> list[str]:
        return list(self.fabric.cluster(cluster).nodes)

    async def list_shared_volumes(self, host: str, cluster: str) -> list[SharedVolume]:
        return list(self.fabric.cluster(cluster).volumes)

    async def get_cluster_group(self, host: str, cluster: str, vm_id: str) -> ClusterGroupInfo | None:
        return self.fabric.cluster(cluster).groups.get(vm_id)

    async def add_vm_role(
        self, host: str, cluster: str, vm_id: str, priority: int | None = None
    ) -> ClusterGroupInfo | None:
        self.fabric.check_fault("add_vm_role")
        self.fabric.record("add_vm_role", host, vm_id)
        vm = self.fabric.host(host).vms[vm_id]
        group = ClusterGroupInfo(
            cluster_name=cluster,
            group_name=vm.name,
            vm_id=vm_id,
            owner_node=self.fabric.host(host).name,
            priority=priority if priority is not None else 2000,
        )
        self.fabric.cluster(cluster).groups[vm_id] = group
        return group

    async def remove_cluster_group(
        self, host: str, cluster: str, vm_id: str, remove_resources: bool = True
    ) -> None:
        self.fabric.check_fault("remove_cluster_group")
        self.fabric.record("remove_cluster_group", host, vm_id)
        self.fabric.cluster(cluster).groups.pop(vm_id, None)

    async def find_vm_nodes(self, host: str, cluster: str, vm_id: str) -> list[ClusterPresence]:
        presence = []
        for node in self.fabric.cluster(cluster).nodes:
            target = self.fabric.host(node)
            realized, planned = vm_id in target.vms, vm_id in target.planned
            if realized or planned:
                presence.append(ClusterPresence(node=node, realized=realized, planned=planned))
        return presence


class MockCall:
    """Mock call_next function for middleware testing."""

    def __init__(self, return_value=None, exception=None):
        self.return_value = return_value or {"status": "success"}
        self.exception = exception
        self.call_count = 0

    async def __call__(self, context):
        self.call_count += 1
        if self.exception:
            raise self.exception
        return self.return_value


def make_config(*host_names: str, **migration: Any) -> HyperVMCPConfig:
    settings = {"assert_interval": 0, "local_hostname": "mgmt01", **migration}
    return HyperVMCPConfig(
        hosts={name: HyperVHost(hostname=name, user="administrator") for name in host_names},
        migration=MigrationSettings(**settings),
    )


def make_plan(vm: FakeVm, source: str, destination: str, **kwargs: Any) -> MigrationPlan:
    kwargs.setdefault("mode", MigrationMode.OFFLINE)
    kwargs.setdefault("destination_storage_path", "D:\\Hyper-V")
    return MigrationPlan(
        vm=VmIdentity(id=vm.id, name=vm.name, source_host=source),
        destination_host=destination,
        **kwargs,
    )


@pytest.fixture
def fabric() -> FakeFabric:
    """Two standalone hosts: hv01 (source side) and hv02 with an external compute switch."""
    fabric = FakeFabric()
    fabric.add_host("hv01", switches=[VmSwitch(name="vSwitch-Old")])
    fabric.add_host("hv02", switches=[VmSwitch(name="vSwitch-Compute")])
    fabric.add_dir("hv02", "D:\\Hyper-V")
    return fabric


@pytest.fixture
def hyperv(fabric: FakeFabric) -> FakeHyperVClient:
    return FakeHyperVClient(fabric)


@pytest.fixture
def cluster_manager(fabric: FakeFabric) -> FakeClusterManager:
    return FakeClusterManager(fabric)


@pytest.fixture
def config() -> HyperVMCPConfig:
    return make_config("hv01", "hv02", "hv03", "hv04")


@pytest.fixture
def orchestrator(
    config: HyperVMCPConfig, hyperv: FakeHyperVClient, cluster_manager: FakeClusterManager
) -> VmMigrationOrchestrator:
    return VmMigrationOrchestrator(config, hyperv, cluster_manager)


@pytest.fixture
def mock_context():
    """Create mock MiddlewareContext for unit tests."""
    context = MagicMock()
    context.method = "tools/call"
    context.source = "test_client"
    context.type = "request"
    context.message = SimpleNamespace(
        name="migrate_vm",
        arguments={"vm": "web01", "source_host": "hv01", "password": "hunter2"},
    )
    return context
