"""Failover cluster resource manager calls and cluster state inspection."""

from typing import Any

import structlog

from ..constants import CLUSTER_SERVICE, HYPERV_NAMESPACE, PLANNED_VM_CLASS, VM_RESOURCE_TYPE
from ..models.migration import ClusterGroupInfo, ClusterPresence, HostClusterInfo, SharedVolume
from ..utils import as_list
from .exceptions import RemoteCommandError
from .session_pool import RemoteSessionPool

logger = structlog.get_logger()

_FIND_VM_GROUP = f"""$resource = Get-ClusterResource -Cluster $params.cluster |
    Where-Object {{ $_.ResourceType.Name -eq '{VM_RESOURCE_TYPE}' }} |
    Where-Object {{ ($_ | Get-ClusterParameter -Name VmID).Value -eq $params.vm_id }} |
    Select-Object -First 1
$group = if ($resource) {{ Get-ClusterGroup -Cluster $params.cluster -Name $resource.OwnerGroup.Name }} else {{ $null }}"""

_GROUP_SELECT = """[pscustomobject]@{
    GroupName = $group.Name
    OwnerNode = $group.OwnerNode.Name
    Priority = [int]$group.Priority
}"""


def _group_info(cluster: str, vm_id: str, data: Any) -> ClusterGroupInfo | None:
    entries = as_list(data)
    if not entries:
        return None
    entry = entries[0]
    priority = entry.get("Priority")
    return ClusterGroupInfo(
        cluster_name=cluster,
        group_name=str(entry["GroupName"]),
        vm_id=vm_id,
        owner_node=entry.get("OwnerNode"),
        priority=int(priority) if priority is not None else None,
    )


class ClusterResourceManager:
    """Thin adapter over the FailoverClusters cmdlets.

    Every call runs on ``host``, a node of (or a management host for) the
    cluster being queried.
    """

    def __init__(self, pool: RemoteSessionPool):
        self.pool = pool
        self.logger = logger.bind(component="cluster_manager")

    async def _run(self, host: str, operation: str, command: str, params: dict[str, Any] | None = None) -> Any:
        result = await self.pool.execute(host, command, params)
        if not result.success:
            raise RemoteCommandError(host, operation, result.stderr, result.exit_code)
        try:
            return result.json()
        except ValueError as e:
            raise RemoteCommandError(host, operation, f"unparseable output: {e}") from e

    async def get_cluster_name(self, host: str) -> str | None:
        """Name of the cluster ``host`` belongs to; None when no cluster service runs."""
        command = f"""$service = Get-Service -Name {CLUSTER_SERVICE} -ErrorAction SilentlyContinue
if ($service -and $service.Status -eq 'Running') {{ (Get-Cluster).Name }}"""
        data = await self._run(host, "Get-Cluster", command)
        return str(data) if data else None

    async def get_cluster_nodes(self, host: str, cluster: str) -> list[str]:
        data = await self._run(
            host,
            "Get-ClusterNode",
            "Get-ClusterNode -Cluster $params.cluster | Select-Object -ExpandProperty Name",
            {"cluster": cluster},
        )
        return [str(node) for node in as_list(data)]

    async def list_shared_volumes(self, host: str, cluster: str) -> list[SharedVolume]:
        command = """Get-ClusterSharedVolume -Cluster $params.cluster | ForEach-Object {
    [pscustomobject]@{
        Name = $_.Name
        Path = @($_.SharedVolumeInfo)[0].FriendlyVolumeName
        OwnerNode = $_.OwnerNode.Name
    }
}"""
        data = await self._run(host, "Get-ClusterSharedVolume", command, {"cluster": cluster})
        return [
            SharedVolume(name=str(entry["Name"]), path=str(entry["Path"]), owner_node=entry.get("OwnerNode"))
            for entry in as_list(data)
            if entry.get("Path")
        ]

    async def get_cluster_group(self, host: str, cluster: str, vm_id: str) -> ClusterGroupInfo | None:
        """Resource group holding ``vm_id``, or None when the VM is not clustered."""
        command = f"{_FIND_VM_GROUP}\nif ($group) {{ {_GROUP_SELECT} }}"
        data = await self._run(host, "Get-ClusterGroup", command, {"cluster": cluster, "vm_id": vm_id})
        return _group_info(cluster, vm_id, data)

    async def add_vm_role(
        self, host: str, cluster: str, vm_id: str, priority: int | None = None
    ) -> ClusterGroupInfo | None:
        """Make ``vm_id`` highly available again, optionally restoring its priority."""
        command = f"""$group = Add-ClusterVirtualMachineRole -Cluster $params.cluster -VMId $params.vm_id
if ($null -ne $params.priority) {{ $group.Priority = [int]$params.priority }}
{_GROUP_SELECT}"""
        self.logger.info("Adding VM role to cluster", host=host, cluster=cluster, vm_id=vm_id)
        data = await self._run(
            host,
            "Add-ClusterVirtualMachineRole",
            command,
            {"cluster": cluster, "vm_id": vm_id, "priority": priority},
        )
        return _group_info(cluster, vm_id, data)

    async def remove_cluster_group(
        self, host: str, cluster: str, vm_id: str, remove_resources: bool = True
    ) -> None:
        """Drop the VM's resource group; the VM itself stays registered on its node."""
        command = f"""{_FIND_VM_GROUP}
if ($group) {{
    Remove-ClusterGroup -Cluster $params.cluster -Name $group.Name -RemoveResources:([bool]$params.remove_resources) -Force
}}"""
        self.logger.info("Removing VM cluster group", host=host, cluster=cluster, vm_id=vm_id)
        await self._run(
            host,
            "Remove-ClusterGroup",
            command,
            {"cluster": cluster, "vm_id": vm_id, "remove_resources": remove_resources},
        )

    async def find_vm_nodes(self, host: str, cluster: str, vm_id: str) -> list[ClusterPresence]:
        """Every node of ``cluster`` that knows ``vm_id`` as realized or planned."""
        command = f"""foreach ($node in Get-ClusterNode -Cluster $params.cluster) {{
    $name = $node.Name
    $realized = Get-VM -ComputerName $name -Id $params.vm_id -ErrorAction SilentlyContinue
    $planned = Get-CimInstance -ComputerName $name -Namespace '{HYPERV_NAMESPACE}' -ClassName {PLANNED_VM_CLASS} `
        -Filter "Name='$($params.vm_id -replace "'", '')'" -ErrorAction SilentlyContinue
    if ($realized -or $planned) {{
        [pscustomobject]@{{ Node = $name; Realized = [bool]$realized; Planned = [bool]$planned }}
    }}
}}"""
        data = await self._run(host, "Find-ClusterVM", command, {"cluster": cluster, "vm_id": vm_id})
        return [
            ClusterPresence(
                node=str(entry["Node"]),
                realized=bool(entry.get("Realized")),
                planned=bool(entry.get("Planned")),
            )
            for entry in as_list(data)
        ]


class ClusterStateInspector:
    """Answers cluster membership questions; nothing is cached between calls."""

    def __init__(self, manager: ClusterResourceManager):
        self.manager = manager
        self.logger = logger.bind(component="cluster_inspector")

    async def get_cluster_info(self, host: str) -> HostClusterInfo:
        """Cluster membership of ``host``; a missing cluster service means unclustered."""
        cluster_name = await self.manager.get_cluster_name(host)
        if not cluster_name:
            return HostClusterInfo(host=host, is_clustered=False)

        nodes = await self.manager.get_cluster_nodes(host, cluster_name)
        volumes = await self.manager.list_shared_volumes(host, cluster_name)
        self.logger.debug(
            "Cluster membership", host=host, cluster=cluster_name, nodes=nodes, volumes=len(volumes)
        )
        return HostClusterInfo(
            host=host,
            is_clustered=True,
            cluster_name=cluster_name,
            nodes=nodes,
            shared_volumes=volumes,
        )

    async def get_owner_node(self, host: str, cluster_name: str, vm_id: str) -> str | None:
        """Node currently hosting the VM's resource group, if it has one."""
        group = await self.manager.get_cluster_group(host, cluster_name, vm_id)
        return group.owner_node if group else None

    async def list_shared_volume_paths(self, host: str, cluster_name: str) -> set[str]:
        volumes = await self.manager.list_shared_volumes(host, cluster_name)
        return {volume.path for volume in volumes}
