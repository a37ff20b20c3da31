"""Tests for switch choice and compatibility resolution."""

import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest

from hyperv_mcp.core.hyperv import HyperVClient
from hyperv_mcp.models import Incompatibility, IncompatibilityCode, ResolutionAction, VmSwitch
from hyperv_mcp.services.migration.compatibility import CompatibilityResolver, choose_switch


def switch_missing(adapter: str = "Network Adapter", index: int | None = None) -> Incompatibility:
    return Incompatibility(
        code=IncompatibilityCode.SWITCH_NOT_FOUND,
        message_id=33012,
        message="Could not find Ethernet switch 'vSwitch-Old'.",
        element_type="VMNetworkAdapter",
        element_name=adapter,
        switch_name="vSwitch-Old",
        index=index,
    )


def unknown() -> Incompatibility:
    return Incompatibility(
        code=IncompatibilityCode.UNKNOWN,
        message_id=40010,
        message="Processor features not supported",
        element_type="VMProcessor",
        element_name="Processor",
    )


EXTERNAL = [
    VmSwitch(name="vSwitch-Storage"),
    VmSwitch(name="vSwitch-Compute"),
    VmSwitch(name="Backbone"),
    VmSwitch(name="NAT", switch_type="Internal"),
]


class TestChooseSwitch:
    """Deterministic destination switch choice."""

    def test_requested_switch_wins_case_insensitively(self):
        assert choose_switch(EXTERNAL, requested="nat") == "NAT"

    def test_unknown_requested_switch_falls_back_to_external(self):
        assert choose_switch([VmSwitch(name="Only")], requested="missing") == "Only"

    def test_single_external_switch(self):
        switches = [VmSwitch(name="Uplink"), VmSwitch(name="NAT", switch_type="Internal")]
        assert choose_switch(switches) == "Uplink"

    def test_hint_breaks_ties(self):
        assert choose_switch(EXTERNAL, hint="compute") == "vSwitch-Compute"

    def test_lexicographic_first_without_hint_match(self):
        assert choose_switch(EXTERNAL, hint="nomatch") == "Backbone"

    def test_no_external_switch(self):
        assert choose_switch([VmSwitch(name="NAT", switch_type="Internal")]) is None
        assert choose_switch([]) is None

    def test_independent_of_enumeration_order(self):
        choices = {
            choose_switch(list(order), hint="storage") for order in itertools.permutations(EXTERNAL)
        }
        assert choices == {"vSwitch-Storage"}

    def test_several_hint_matches_pick_lexicographic_first(self):
        switches = [VmSwitch(name="Compute-B"), VmSwitch(name="Compute-A"), VmSwitch(name="Other")]
        assert choose_switch(switches, hint="compute") == "Compute-A"


class TestBuildReport:
    """Verdicts over incompatibility lists."""

    @pytest.fixture
    def resolver(self):
        return CompatibilityResolver(MagicMock(spec=HyperVClient), switch_hint="compute")

    def test_empty_list_is_resolved(self, resolver):
        report = resolver.build_report([], [])
        assert report.resolved
        assert report.resolutions == []

    def test_missing_switch_is_rebound(self, resolver):
        report = resolver.build_report([switch_missing("nic0"), switch_missing("nic1")], EXTERNAL)

        assert report.resolved
        assert [(r.adapter_name, r.action, r.switch_name) for r in report.resolutions] == [
            ("nic0", ResolutionAction.CONNECT, "vSwitch-Compute"),
            ("nic1", ResolutionAction.CONNECT, "vSwitch-Compute"),
        ]

    def test_same_named_adapters_keep_their_own_position(self, resolver):
        report = resolver.build_report([switch_missing(index=0), switch_missing(index=1)], EXTERNAL)

        assert [(r.adapter_name, r.incompatibility_index) for r in report.resolutions] == [
            ("Network Adapter", 0),
            ("Network Adapter", 1),
        ]

    def test_missing_switch_without_external_switch_disconnects(self, resolver):
        report = resolver.build_report([switch_missing()], [VmSwitch(name="NAT", switch_type="Internal")])

        assert report.resolved
        assert report.resolutions[0].action is ResolutionAction.DISCONNECT
        assert report.resolutions[0].switch_name is None

    def test_unknown_incompatibility_is_unresolved(self, resolver):
        report = resolver.build_report([switch_missing(), unknown()], EXTERNAL)

        assert not report.resolved
        assert len(report.resolutions) == 1
        assert report.unresolved_reasons == [
            "[40010] Processor features not supported (VMProcessor Processor)"
        ]


class TestResolve:
    """Switch lookups happen only when needed."""

    @pytest.mark.asyncio
    async def test_switches_fetched_for_switch_incompatibility(self):
        hyperv = MagicMock(spec=HyperVClient)
        hyperv.get_switches = AsyncMock(return_value=[VmSwitch(name="vSwitch-Compute")])
        resolver = CompatibilityResolver(hyperv)

        report = await resolver.resolve("hv02", [switch_missing()], requested_switch=None)

        hyperv.get_switches.assert_awaited_once_with("hv02")
        assert report.resolutions[0].switch_name == "vSwitch-Compute"

    @pytest.mark.asyncio
    async def test_no_lookup_without_switch_incompatibility(self):
        hyperv = MagicMock(spec=HyperVClient)
        hyperv.get_switches = AsyncMock()
        resolver = CompatibilityResolver(hyperv)

        report = await resolver.resolve("hv02", [unknown()])

        hyperv.get_switches.assert_not_called()
        assert not report.resolved

    @pytest.mark.asyncio
    async def test_requested_switch_is_honoured(self):
        hyperv = MagicMock(spec=HyperVClient)
        hyperv.get_switches = AsyncMock(return_value=EXTERNAL)
        resolver = CompatibilityResolver(hyperv)

        report = await resolver.resolve("hv02", [switch_missing()], requested_switch="vswitch-storage")

        assert report.resolutions[0].switch_name == "vSwitch-Storage"
