"""Hyper-V inventory, storage and trust operations over the session pool.

Each public coroutine maps to one remote PowerShell script block. Failures
surface as ``RemoteCommandError`` / ``ConnectivityError``; lookups that may
legitimately find nothing return ``VmLookup`` instead of raising.
"""

from typing import Any

import structlog

from ..constants import (
    AUTOSTART_NOTHING,
    HYPERV_NAMESPACE,
    LOCAL_ADMIN_GROUP,
    PLANNED_VM_CLASS,
    SWITCH_NOT_FOUND_MESSAGE_IDS,
    VM_CONFIG_EXTENSIONS,
    VSMS_CLASS,
)
from ..models.enums import IncompatibilityCode
from ..models.migration import ImportOptions, Incompatibility, MoveOptions, Resolution
from ..models.vm import SmbShare, VmLookup, VmPathSet, VmRecord, VmSwitch
from ..utils import as_list, to_unc_path
from .exceptions import ConnectivityError, RemoteCommandError
from .session_pool import RemoteResult, RemoteSessionPool
from .settings import EXPORT_TIMEOUT, IMPORT_TIMEOUT, MOVE_TIMEOUT

logger = structlog.get_logger()

_VM_SELECT = """Select-Object @{n='Id';e={$_.Id.ToString()}}, Name, @{n='State';e={$_.State.ToString()}},
    @{n='AutomaticStartAction';e={$_.AutomaticStartAction.ToString()}}, ConfigurationLocation, IsClustered"""

_GET_VM = "$vm = Get-VM -Id $params.vm_id -ErrorAction SilentlyContinue"

_PLANNED_FILTER = "\"Name='$($params.vm_id -replace \"'\", '')'\""

_GET_PLANNED = (
    f"$planned = Get-CimInstance -Namespace '{HYPERV_NAMESPACE}' -ClassName {PLANNED_VM_CLASS} "
    f"-Filter {_PLANNED_FILTER} -ErrorAction SilentlyContinue"
)

_INCOMPATIBILITY_SELECT = """$items = @($report.Incompatibilities)
for ($i = 0; $i -lt $items.Count; $i++) {
    $source = $items[$i].Source
    [pscustomobject]@{
        Index = $i
        MessageId = [int]$items[$i].MessageId
        Message = $items[$i].Message
        SourceType = if ($source) { $source.GetType().Name } else { $null }
        SourceName = if ($source -and $source.PSObject.Properties['Name']) { $source.Name } else { $null }
        SwitchName = if ($source -and $source.PSObject.Properties['SwitchName']) { $source.SwitchName } else { $null }
    }
}"""

_IMPORT_REPORT = """$compareArgs = @{ Path = $params.config_path }
if ($params.copy_files) {
    $compareArgs.Copy = $true
    $compareArgs.GenerateNewId = $false
    if ($params.virtual_machine_path) { $compareArgs.VirtualMachinePath = $params.virtual_machine_path }
    if ($params.vhd_destination_path) { $compareArgs.VhdDestinationPath = $params.vhd_destination_path }
} else {
    $compareArgs.Register = $true
}
$report = Compare-VM @compareArgs"""

_MOVE_REPORT = """$moveArgs = @{
    VM = (Get-VM -Id $params.vm_id)
    DestinationHost = $params.destination_host
}
if ($params.vhd_mappings) {
    if ($params.destination_storage_path) { $moveArgs.VirtualMachinePath = $params.destination_storage_path }
    $moveArgs.VHDs = @($params.vhd_mappings | ForEach-Object {
        @{ SourceFilePath = $_.source_path; DestinationFilePath = $_.destination_path }
    })
} elseif ($params.destination_storage_path) {
    $moveArgs.IncludeStorage = $true
    $moveArgs.DestinationStoragePath = $params.destination_storage_path
}
$report = Compare-VM @moveArgs"""

_APPLY_RESOLUTIONS = """$items = @($report.Incompatibilities)
foreach ($fix in @($params.resolutions)) {
    if ($null -eq $fix) { continue }
    if ($null -ne $fix.incompatibility_index) {
        $item = if ($fix.incompatibility_index -lt $items.Count) { $items[$fix.incompatibility_index] } else { $null }
        if ($item -and $item.MessageId -ne $fix.message_id) {
            throw "Incompatibility $($fix.incompatibility_index) is now $($item.MessageId), expected $($fix.message_id)"
        }
    } else {
        $item = $items | Where-Object {
            $_.MessageId -eq $fix.message_id -and (-not $fix.adapter_name -or $_.Source.Name -eq $fix.adapter_name)
        } | Select-Object -First 1
    }
    if (-not $item) { continue }
    if ($fix.action -eq 'connect') {
        $item.Source | Connect-VMNetworkAdapter -SwitchName $fix.switch_name
    } else {
        $item.Source | Disconnect-VMNetworkAdapter
    }
}"""


def parse_incompatibility(entry: dict[str, Any]) -> Incompatibility:
    """Classify one Compare-VM incompatibility."""
    message_id = int(entry.get("MessageId") or 0)
    code = (
        IncompatibilityCode.SWITCH_NOT_FOUND
        if message_id in SWITCH_NOT_FOUND_MESSAGE_IDS
        else IncompatibilityCode.UNKNOWN
    )
    return Incompatibility(
        code=code,
        message_id=message_id,
        message=str(entry.get("Message") or ""),
        element_type=entry.get("SourceType"),
        element_name=entry.get("SourceName"),
        switch_name=entry.get("SwitchName"),
        index=int(entry["Index"]) if entry.get("Index") is not None else None,
    )


def _vm_record(host: str, entry: dict[str, Any], planned: bool = False) -> VmRecord:
    return VmRecord(
        id=str(entry.get("Id") or ""),
        name=str(entry.get("Name") or ""),
        host=host,
        state=str(entry.get("State") or "Off"),
        automatic_start_action=entry.get("AutomaticStartAction"),
        configuration_location=entry.get("ConfigurationLocation"),
        is_clustered=bool(entry.get("IsClustered", False)),
        planned=planned,
    )


class HyperVClient:
    """VM inventory/compute, storage and trust-bootstrap calls against Hyper-V hosts."""

    def __init__(self, pool: RemoteSessionPool):
        self.pool = pool
        self.logger = logger.bind(component="hyperv_client")

    async def _run(
        self,
        host: str,
        operation: str,
        command: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
    ) -> Any:
        """Execute a script and return its decoded JSON output."""
        result: RemoteResult = await self.pool.execute(host, command, params, timeout=timeout)
        if not result.success:
            self.logger.warning(
                "Remote operation failed",
                host=host,
                operation=operation,
                exit_code=result.exit_code,
                error=result.stderr.strip()[:500],
            )
            raise RemoteCommandError(host, operation, result.stderr, result.exit_code)
        try:
            return result.json()
        except ValueError as e:
            raise RemoteCommandError(host, operation, f"unparseable output: {e}") from e

    # VM inventory

    async def get_vm(self, host: str, vm_id: str) -> VmLookup:
        """Look up a realized VM by id."""
        try:
            data = await self._run(
                host, "Get-VM", f"{_GET_VM}\nif ($vm) {{ $vm | {_VM_SELECT} }}", {"vm_id": vm_id}
            )
        except (RemoteCommandError, ConnectivityError) as e:
            return VmLookup.failed(str(e))
        entries = as_list(data)
        if not entries:
            return VmLookup.not_found()
        return VmLookup.found(_vm_record(host, entries[0]))

    async def find_vms_by_name(self, host: str, name: str) -> list[VmRecord]:
        """List realized VMs carrying ``name`` (names are not unique)."""
        data = await self._run(
            host,
            "Get-VM",
            f"Get-VM -Name $params.name -ErrorAction SilentlyContinue | {_VM_SELECT}",
            {"name": name},
        )
        return [_vm_record(host, entry) for entry in as_list(data)]

    async def get_planned_vm(self, host: str, vm_id: str) -> VmLookup:
        """Look up a planned (mid-import) VM by id through WMI."""
        command = (
            f"{_GET_PLANNED}\n"
            "if ($planned) { $planned | Select-Object @{n='Id';e={$_.Name}}, "
            "@{n='Name';e={$_.ElementName}}, @{n='State';e={'Planned'}} }"
        )
        try:
            data = await self._run(host, "Get-PlannedVM", command, {"vm_id": vm_id})
        except (RemoteCommandError, ConnectivityError) as e:
            return VmLookup.failed(str(e))
        entries = as_list(data)
        if not entries:
            return VmLookup.not_found()
        return VmLookup.found(_vm_record(host, entries[0], planned=True))

    async def get_vm_paths(self, host: str, vm_id: str) -> VmPathSet | None:
        """Collect every path the VM's identity touches on ``host``."""
        command = f"""{_GET_VM}
if ($vm) {{
    [pscustomobject]@{{
        ConfigurationLocation = $vm.ConfigurationLocation
        CheckpointFileLocation = $vm.CheckpointFileLocation
        SmartPagingFilePath = $vm.SmartPagingFilePath
        SnapshotFileLocation = $vm.SnapshotFileLocation
        HardDrives = @($vm.HardDrives | Where-Object {{ $_.Path }} | ForEach-Object {{ $_.Path }})
    }}
}}"""
        data = await self._run(host, "Get-VMPaths", command, {"vm_id": vm_id})
        if not data:
            return None
        return VmPathSet(
            configuration_location=data.get("ConfigurationLocation"),
            checkpoint_location=data.get("CheckpointFileLocation"),
            smart_paging_path=data.get("SmartPagingFilePath"),
            snapshot_location=data.get("SnapshotFileLocation"),
            disk_paths=[str(path) for path in as_list(data.get("HardDrives"))],
        )

    async def get_snapshots(self, host: str, vm_id: str) -> list[str]:
        """Names of the VM's checkpoints."""
        data = await self._run(
            host,
            "Get-VMSnapshot",
            f"{_GET_VM}\nif ($vm) {{ $vm | Get-VMSnapshot | Select-Object -ExpandProperty Name }}",
            {"vm_id": vm_id},
        )
        return [str(name) for name in as_list(data)]

    async def get_switches(self, host: str) -> list[VmSwitch]:
        data = await self._run(
            host,
            "Get-VMSwitch",
            "Get-VMSwitch | Select-Object Name, @{n='SwitchType';e={$_.SwitchType.ToString()}}",
        )
        return [
            VmSwitch(name=str(entry["Name"]), switch_type=str(entry.get("SwitchType") or ""))
            for entry in as_list(data)
        ]

    async def get_default_storage_path(self, host: str) -> str:
        data = await self._run(
            host, "Get-VMHost", "(Get-VMHost).VirtualMachinePath"
        )
        if not data:
            raise RemoteCommandError(host, "Get-VMHost", "host reports no default VM path")
        return str(data)

    # VM compute

    async def stop_vm(self, host: str, vm_id: str, turn_off: bool = False) -> None:
        await self._run(
            host,
            "Stop-VM",
            f"{_GET_VM}\nif ($vm) {{ $vm | Stop-VM -Force -TurnOff:([bool]$params.turn_off) }}",
            {"vm_id": vm_id, "turn_off": turn_off},
        )

    async def start_vm(self, host: str, vm_id: str) -> None:
        await self._run(host, "Start-VM", f"{_GET_VM}\nif ($vm) {{ $vm | Start-VM }}", {"vm_id": vm_id})

    async def remove_vm(self, host: str, vm_id: str) -> None:
        """Unregister a realized VM; its files stay where they are."""
        await self._run(
            host, "Remove-VM", f"{_GET_VM}\nif ($vm) {{ $vm | Remove-VM -Force }}", {"vm_id": vm_id}
        )

    async def remove_planned_vm(self, host: str, vm_id: str) -> None:
        """Destroy a planned VM left behind by an interrupted import."""
        command = f"""{_GET_PLANNED}
if ($planned) {{
    $service = Get-CimInstance -Namespace '{HYPERV_NAMESPACE}' -ClassName {VSMS_CLASS}
    $null = Invoke-CimMethod -InputObject $service -MethodName DestroySystem -Arguments @{{ AffectedSystem = $planned }}
}}"""
        await self._run(host, "Remove-PlannedVM", command, {"vm_id": vm_id})

    async def set_automatic_start_action(
        self, host: str, vm_id: str, action: str = AUTOSTART_NOTHING
    ) -> None:
        await self._run(
            host,
            "Set-VM",
            f"{_GET_VM}\nif ($vm) {{ $vm | Set-VM -AutomaticStartAction $params.action }}",
            {"vm_id": vm_id, "action": action},
        )

    # Transfer primitives

    async def export_vm(self, host: str, vm_id: str, path: str) -> None:
        """Export the VM into ``path`` (a ``<name>`` folder is created below it)."""
        self.logger.info("Exporting VM", host=host, vm_id=vm_id, path=path)
        await self._run(
            host,
            "Export-VM",
            "Get-VM -Id $params.vm_id | Export-VM -Path $params.path",
            {"vm_id": vm_id, "path": path},
            timeout=EXPORT_TIMEOUT,
        )

    async def find_vm_config(self, host: str, directory: str, vm_id: str) -> str | None:
        """Locate the exported configuration file of ``vm_id`` below ``directory``."""
        filters = [f"{vm_id}{extension}" for extension in VM_CONFIG_EXTENSIONS]
        command = """foreach ($filter in $params.filters) {
    $match = Get-ChildItem -LiteralPath $params.path -Recurse -File -Filter $filter -ErrorAction SilentlyContinue |
        Select-Object -First 1
    if ($match) { $match.FullName; break }
}"""
        data = await self._run(
            host, "Find-VMConfig", command, {"path": directory, "filters": filters}
        )
        entries = as_list(data)
        return str(entries[0]) if entries else None

    async def compare_import(self, host: str, options: ImportOptions) -> list[Incompatibility]:
        data = await self._run(
            host,
            "Compare-VM",
            f"{_IMPORT_REPORT}\n{_INCOMPATIBILITY_SELECT}",
            options.model_dump(),
        )
        return [parse_incompatibility(entry) for entry in as_list(data)]

    async def import_vm(
        self, host: str, options: ImportOptions, resolutions: list[Resolution]
    ) -> VmRecord:
        """Re-run the comparison, apply the resolutions, then Import-VM from the report."""
        params = options.model_dump()
        params["resolutions"] = [resolution.model_dump(mode="json") for resolution in resolutions]
        command = f"""{_IMPORT_REPORT}
{_APPLY_RESOLUTIONS}
Import-VM -CompatibilityReport $report | {_VM_SELECT}"""
        data = await self._run(host, "Import-VM", command, params, timeout=IMPORT_TIMEOUT)
        entries = as_list(data)
        if not entries:
            raise RemoteCommandError(host, "Import-VM", "import returned no virtual machine")
        return _vm_record(host, entries[0])

    async def compare_move(
        self, source_host: str, vm_id: str, options: MoveOptions
    ) -> list[Incompatibility]:
        params = {"vm_id": vm_id, **options.model_dump(mode="json")}
        data = await self._run(
            source_host, "Compare-VM", f"{_MOVE_REPORT}\n{_INCOMPATIBILITY_SELECT}", params
        )
        return [parse_incompatibility(entry) for entry in as_list(data)]

    async def move_vm(
        self, source_host: str, vm_id: str, options: MoveOptions, resolutions: list[Resolution]
    ) -> None:
        """Live-move the VM using the hypervisor's own primitive."""
        params = {"vm_id": vm_id, **options.model_dump(mode="json")}
        params["resolutions"] = [resolution.model_dump(mode="json") for resolution in resolutions]
        command = f"""{_MOVE_REPORT}
{_APPLY_RESOLUTIONS}
Move-VM -CompatibilityReport $report"""
        self.logger.info(
            "Moving VM", source=source_host, destination=options.destination_host, vm_id=vm_id
        )
        await self._run(source_host, "Move-VM", command, params, timeout=MOVE_TIMEOUT)

    # Storage

    async def test_path(self, host: str, path: str) -> bool:
        data = await self._run(
            host, "Test-Path", "Test-Path -LiteralPath $params.path", {"path": path}
        )
        return bool(data)

    async def new_directory(self, host: str, path: str) -> None:
        await self._run(
            host,
            "New-Item",
            "$null = New-Item -ItemType Directory -Path $params.path -Force",
            {"path": path},
        )

    async def remove_path(self, host: str, path: str, recurse: bool = False) -> None:
        command = """if (Test-Path -LiteralPath $params.path) {
    Remove-Item -LiteralPath $params.path -Recurse:([bool]$params.recurse) -Force
}"""
        await self._run(host, "Remove-Item", command, {"path": path, "recurse": recurse})

    async def list_child_items(
        self,
        host: str,
        path: str,
        recurse: bool = False,
        files_only: bool = False,
        name_filter: str | None = None,
    ) -> list[str]:
        command = """$listArgs = @{ LiteralPath = $params.path; Force = $true; ErrorAction = 'SilentlyContinue' }
if ($params.recurse) { $listArgs.Recurse = $true }
if ($params.files_only) { $listArgs.File = $true }
if ($params.name_filter) { $listArgs.Filter = $params.name_filter }
Get-ChildItem @listArgs | Select-Object -ExpandProperty FullName"""
        data = await self._run(
            host,
            "Get-ChildItem",
            command,
            {"path": path, "recurse": recurse, "files_only": files_only, "name_filter": name_filter},
        )
        return [str(item) for item in as_list(data)]

    async def get_smb_shares(self, host: str) -> list[SmbShare]:
        data = await self._run(
            host,
            "Get-SmbShare",
            "Get-SmbShare | Where-Object { $_.Path } | Select-Object Name, Path",
        )
        return [SmbShare(name=str(entry["Name"]), path=str(entry["Path"])) for entry in as_list(data)]

    async def resolve_unc_share(self, host: str, path: str) -> str:
        """Translate ``path`` on ``host`` into a UNC path other hosts can write to."""
        shares = await self.get_smb_shares(host)
        return to_unc_path(host, path, [(share.name, share.path) for share in shares])

    # Administrative trust bootstrap

    async def get_machine_account(self, host: str) -> str:
        """``DOMAIN\\HOST$`` identity of the host's computer account.

        The domain comes from the computer's own membership, not from the
        session user, whose account may live in another domain.
        """
        command = """$system = Get-CimInstance -ClassName Win32_ComputerSystem
if (-not $system.PartOfDomain) { throw "$($system.Name) is not joined to a domain" }
'{0}\\{1}$' -f $system.Domain.Split('.')[0].ToUpper(), $system.Name.ToUpper()"""
        data = await self._run(host, "Get-MachineAccount", command)
        if not data:
            raise RemoteCommandError(host, "Get-MachineAccount", "empty machine account")
        return str(data)

    async def add_local_admin(self, host: str, member: str) -> bool:
        """Add ``member`` to the local Administrators group.

        Returns:
            True if the membership was created by this call, False if it already existed
        """
        command = """$existing = Get-LocalGroupMember -Group $params.group |
    Where-Object { $_.Name -eq $params.member }
if ($existing) { $false } else {
    Add-LocalGroupMember -Group $params.group -Member $params.member
    $true
}"""
        data = await self._run(
            host, "Add-LocalGroupMember", command, {"group": LOCAL_ADMIN_GROUP, "member": member}
        )
        return bool(data)

    async def remove_local_admin(self, host: str, member: str) -> None:
        command = """$existing = Get-LocalGroupMember -Group $params.group |
    Where-Object { $_.Name -eq $params.member }
if ($existing) { Remove-LocalGroupMember -Group $params.group -Member $params.member }"""
        await self._run(
            host, "Remove-LocalGroupMember", command, {"group": LOCAL_ADMIN_GROUP, "member": member}
        )
