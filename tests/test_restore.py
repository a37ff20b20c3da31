"""Tests for the VM removal routine and restore bookkeeping."""

import pytest

from hyperv_mcp.core.retry import RetryBudget
from hyperv_mcp.models import EventLevel, RestoreReport, VmIdentity
from hyperv_mcp.services.migration.progress import MigrationProgress
from hyperv_mcp.services.migration.restore import RollbackRestoreManager


@pytest.fixture
def manager(hyperv, cluster_manager):
    return RollbackRestoreManager(hyperv, cluster_manager, RetryBudget(6, 0))


def progress_for(vm) -> MigrationProgress:
    return MigrationProgress(VmIdentity(id=vm.id, name=vm.name, source_host="hv01"))


class TestRemoveVm:
    """Ordered, converging removal of a VM and its files."""

    @pytest.mark.asyncio
    async def test_removes_object_disks_then_folders(self, fabric, manager):
        vm = fabric.add_vm("hv01", "web01")
        paths = vm.paths()
        report = RestoreReport(authoritative_host="hv02")

        converged = await manager.remove_vm("hv01", vm.id, paths, progress_for(vm), report)

        assert converged is True
        assert report.warnings == []
        assert fabric.realized_on(vm.id) == []
        assert fabric.files_under("hv01", "D:\\VMs") == []
        assert not fabric.exists("hv01", "D:\\VMs\\web01")
        operations = [op for op, _, _ in fabric.mutations]
        assert operations[0] == "remove_vm"
        assert fabric.mutations[1] == ("remove_path", "hv01", vm.disks[0])
        assert fabric.mutations[-1] == ("remove_path", "hv01", "D:\\VMs\\web01")

    @pytest.mark.asyncio
    async def test_planned_vm_is_removed(self, fabric, manager):
        vm = fabric.add_vm("hv02", "web01")
        del fabric.hosts["hv02"].vms[vm.id]
        fabric.hosts["hv02"].planned[vm.id] = vm
        report = RestoreReport()

        assert await manager.remove_vm("hv02", vm.id, vm.paths(), progress_for(vm), report)
        assert fabric.planned_on(vm.id) == []

    @pytest.mark.asyncio
    async def test_folder_with_unrelated_files_is_kept(self, fabric, manager):
        vm = fabric.add_vm("hv01", "web01")
        fabric.add_file("hv01", "D:\\VMs\\web01\\notes.txt")
        report = RestoreReport()
        progress = progress_for(vm)

        converged = await manager.remove_vm("hv01", vm.id, vm.paths(), progress, report)

        assert converged is True
        assert fabric.exists("hv01", "D:\\VMs\\web01\\notes.txt")
        assert any("unrelated file" in warning for warning in report.warnings)
        assert progress.warnings == report.warnings

    @pytest.mark.asyncio
    async def test_protected_paths_are_left_alone(self, fabric, manager):
        vm = fabric.add_vm("hv01", "web01")
        report = RestoreReport()

        await manager.remove_vm(
            "hv01", vm.id, vm.paths(), progress_for(vm), report, protected=["D:\\VMs\\web01"]
        )

        assert fabric.realized_on(vm.id) == []
        assert fabric.exists("hv01", vm.disks[0])
        assert fabric.mutations_for("remove_path") == []

    @pytest.mark.asyncio
    async def test_ceiling_folder_is_never_removed(self, fabric, manager):
        vm = fabric.add_vm("hv01", "web01", root="D:\\")
        report = RestoreReport()

        await manager.remove_vm(
            "hv01", vm.id, vm.paths(), progress_for(vm), report, ceilings=["D:\\web01\\Virtual Machines"]
        )

        # The disk folder is not an ancestor of the ceiling and goes
        assert not fabric.exists("hv01", "D:\\web01\\Virtual Hard Disks")
        assert fabric.exists("hv01", "D:\\web01")

    @pytest.mark.asyncio
    async def test_delayed_removal_converges(self, fabric, manager):
        vm = fabric.add_vm("hv01", "web01")
        fabric.delay_removal("remove_vm", 3)
        fabric.delay_removal("remove_path", 2)
        report = RestoreReport()

        assert await manager.remove_vm("hv01", vm.id, vm.paths(), progress_for(vm), report)
        assert report.warnings == []
        assert fabric.realized_on(vm.id) == []
        assert len(fabric.mutations_for("remove_vm")) > 1

    @pytest.mark.asyncio
    async def test_removal_that_never_converges_warns(self, fabric, manager):
        vm = fabric.add_vm("hv01", "web01")
        fabric.delay_removal("remove_vm", 100)
        report = RestoreReport()
        progress = progress_for(vm)

        converged = await manager.remove_vm("hv01", vm.id, vm.paths(), progress, report)

        assert converged is False
        assert any(warning.startswith("Did not converge: VM") for warning in report.warnings)
        assert [event.level for event in progress.events if "Did not converge" in event.message] == [
            EventLevel.WARNING
        ]

    @pytest.mark.asyncio
    async def test_remote_failure_becomes_warning(self, fabric, manager):
        vm = fabric.add_vm("hv01", "web01")
        fabric.fail("remove_path")
        report = RestoreReport()

        converged = await manager.remove_vm("hv01", vm.id, vm.paths(), progress_for(vm), report)

        assert converged is False
        assert any("Cleanup on hv01 failed" in warning for warning in report.warnings)


class TestProtection:
    """Path protection rules."""

    def test_protected_covers_inside_and_above(self):
        protected = ["C:\\ClusterStorage\\Volume1\\VMs\\web01"]
        is_protected = RollbackRestoreManager._is_protected

        assert is_protected("C:\\ClusterStorage\\Volume1\\VMs\\web01\\disk.vhdx", protected)
        assert is_protected("C:\\ClusterStorage\\Volume1\\VMs", protected)
        assert not is_protected("C:\\ClusterStorage\\Volume1\\VMs\\web02", protected)

    def test_ceiling_covers_only_ancestors(self):
        is_protected = RollbackRestoreManager._is_protected
        ceilings = ["C:\\ClusterStorage\\Volume1\\VMs"]

        assert is_protected("C:\\ClusterStorage\\Volume1", [], ceilings)
        assert is_protected("C:\\ClusterStorage\\Volume1\\VMs", [], ceilings)
        assert not is_protected("C:\\ClusterStorage\\Volume1\\VMs\\web01", [], ceilings)
