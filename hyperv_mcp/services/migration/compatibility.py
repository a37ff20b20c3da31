"""
Compatibility Resolution Module

Turns a raw Compare-VM incompatibility list into a verdict plus the fixes the
import or move script should replay. Only missing virtual-switch references
are fixed automatically; anything else leaves the report unresolved.
"""

import structlog

from ...constants import DEFAULT_SWITCH_HINT
from ...core.hyperv import HyperVClient
from ...models.enums import IncompatibilityCode, ResolutionAction
from ...models.migration import CompatibilityReport, Incompatibility, Resolution
from ...models.vm import VmSwitch


def choose_switch(
    switches: list[VmSwitch], requested: str | None = None, hint: str = DEFAULT_SWITCH_HINT
) -> str | None:
    """Pick the destination switch a dangling network adapter should use.

    The result depends only on the set of switches, never on the order the
    host listed them in.

    Args:
        switches: Switches present on the destination host
        requested: Switch the caller asked for explicitly
        hint: Substring preferred among external switch names

    Returns:
        Switch name, or None when the adapter should be disconnected
    """
    if requested:
        for switch in switches:
            if switch.name.lower() == requested.lower():
                return switch.name

    external = sorted({switch.name for switch in switches if switch.is_external})
    if not external:
        return None
    if len(external) == 1:
        return external[0]

    hinted = [name for name in external if hint and hint.lower() in name.lower()]
    if hinted:
        return hinted[0]
    return external[0]


class CompatibilityResolver:
    """Resolves incompatibilities between a VM and its destination host."""

    def __init__(self, hyperv: HyperVClient, switch_hint: str = DEFAULT_SWITCH_HINT):
        self.hyperv = hyperv
        self.switch_hint = switch_hint
        self.logger = structlog.get_logger().bind(component="compatibility_resolver")

    def build_report(
        self,
        incompatibilities: list[Incompatibility],
        switches: list[VmSwitch],
        requested_switch: str | None = None,
    ) -> CompatibilityReport:
        """Decide a fix for every incompatibility, or explain why there is none."""
        report = CompatibilityReport(incompatibilities=list(incompatibilities))
        if not incompatibilities:
            report.resolved = True
            return report

        target = choose_switch(switches, requested_switch, self.switch_hint)
        for item in incompatibilities:
            if item.code is not IncompatibilityCode.SWITCH_NOT_FOUND:
                element = f" ({item.element_type} {item.element_name})" if item.element_name else ""
                report.unresolved_reasons.append(
                    f"[{item.message_id}] {item.message or 'unrecognized incompatibility'}{element}"
                )
                continue

            if target is None:
                report.resolutions.append(
                    Resolution(
                        message_id=item.message_id,
                        incompatibility_index=item.index,
                        adapter_name=item.element_name,
                        action=ResolutionAction.DISCONNECT,
                    )
                )
            else:
                report.resolutions.append(
                    Resolution(
                        message_id=item.message_id,
                        incompatibility_index=item.index,
                        adapter_name=item.element_name,
                        action=ResolutionAction.CONNECT,
                        switch_name=target,
                    )
                )

        report.resolved = not report.unresolved_reasons
        return report

    async def resolve(
        self,
        destination_host: str,
        incompatibilities: list[Incompatibility],
        requested_switch: str | None = None,
    ) -> CompatibilityReport:
        """Build a report against the destination's current switches."""
        switches: list[VmSwitch] = []
        if any(item.code is IncompatibilityCode.SWITCH_NOT_FOUND for item in incompatibilities):
            switches = await self.hyperv.get_switches(destination_host)

        report = self.build_report(incompatibilities, switches, requested_switch)
        self.logger.info(
            "Compatibility report built",
            destination=destination_host,
            incompatibilities=len(report.incompatibilities),
            resolutions=[
                f"{resolution.adapter_name}:{resolution.action.value}:{resolution.switch_name or '-'}"
                for resolution in report.resolutions
            ],
            resolved=report.resolved,
        )
        return report
