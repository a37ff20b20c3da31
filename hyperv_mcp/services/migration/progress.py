"""Progress reporting and operator approval for running migrations."""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from structlog.stdlib import BoundLogger

from ...core.logging_config import get_migration_logger
from ...models.enums import EventLevel, MigrationPhase
from ...models.migration import ProgressEvent
from ...models.vm import VmIdentity

EventListener = Callable[[ProgressEvent], None | Awaitable[None]]
ApprovalCallback = Callable[[str], bool | Awaitable[bool]]


@dataclass
class ApprovalPolicy:
    """Decides whether a disruptive step (stopping a running VM) may proceed.

    ``auto_approve`` covers unattended runs; ``callback`` lets an interactive
    caller ask a human. With neither, disruptive steps are declined.
    """

    auto_approve: bool = False
    callback: ApprovalCallback | None = None

    async def approve(self, prompt: str) -> bool:
        if self.auto_approve:
            return True
        if self.callback is None:
            return False
        answer = self.callback(prompt)
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)


class MigrationProgress:
    """Collects phase-by-phase events for one migration and logs them as they happen."""

    def __init__(self, vm: VmIdentity, listener: EventListener | None = None):
        self.vm = vm
        self.listener = listener
        self.events: list[ProgressEvent] = []
        self.authoritative_host: str = vm.source_host
        self.logger: BoundLogger = get_migration_logger().bind(vm_id=vm.id, vm_name=vm.name)

    async def emit(
        self,
        phase: MigrationPhase,
        message: str,
        level: EventLevel = EventLevel.INFO,
        host: str | None = None,
    ) -> ProgressEvent:
        event = ProgressEvent(phase=phase, level=level, message=message, host=host)
        self.events.append(event)

        log_method = {
            EventLevel.INFO: self.logger.info,
            EventLevel.WARNING: self.logger.warning,
            EventLevel.ERROR: self.logger.error,
        }[level]
        log_method(message, phase=phase.value, host=host, authoritative_host=self.authoritative_host)

        if self.listener is not None:
            result = self.listener(event)
            if inspect.isawaitable(result):
                await result
        return event

    async def info(self, phase: MigrationPhase, message: str, host: str | None = None) -> ProgressEvent:
        return await self.emit(phase, message, EventLevel.INFO, host)

    async def warning(self, phase: MigrationPhase, message: str, host: str | None = None) -> ProgressEvent:
        return await self.emit(phase, message, EventLevel.WARNING, host)

    async def error(self, phase: MigrationPhase, message: str, host: str | None = None) -> ProgressEvent:
        return await self.emit(phase, message, EventLevel.ERROR, host)

    async def set_authoritative(self, phase: MigrationPhase, host: str) -> None:
        """Record which host currently holds the realized VM."""
        if host != self.authoritative_host:
            self.authoritative_host = host
            await self.info(phase, f"Authoritative host is now {host}", host=host)

    @property
    def warnings(self) -> list[str]:
        return [event.message for event in self.events if event.level is EventLevel.WARNING]
