"""VM-related data models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import EXTERNAL_SWITCH_TYPE, VM_STATE_OFF, VM_STATE_RUNNING
from ..utils import unique_paths, windows_parent
from .enums import LookupStatus


class MCPModel(BaseModel):
    """Base model with common MCP settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)


class VmIdentity(MCPModel):
    """Cross-host correlation key for a VM; names may collide, ids must not."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    source_host: str

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        value = value.strip().strip("{}").lower()
        if not value:
            raise ValueError("VM id must not be empty")
        return value


class VmRecord(MCPModel):
    """A VM as reported by one host."""

    id: str
    name: str
    host: str
    state: str = VM_STATE_OFF
    automatic_start_action: str | None = None
    configuration_location: str | None = None
    is_clustered: bool = False
    planned: bool = False

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        return value.strip().strip("{}").lower()

    @property
    def is_running(self) -> bool:
        return self.state.lower() == VM_STATE_RUNNING.lower()

    @property
    def is_off(self) -> bool:
        return self.state.lower() == VM_STATE_OFF.lower()

    def identity(self) -> VmIdentity:
        return VmIdentity(id=self.id, name=self.name, source_host=self.host)


class VmLookup(MCPModel):
    """Found / NotFound / Error answer for a VM lookup.

    "Not found" is an ordinary answer, not an exception; only genuine
    faults (connectivity, permission) end up as ``ERROR``.
    """

    status: LookupStatus
    vm: VmRecord | None = None
    error: str | None = None

    @classmethod
    def found(cls, vm: VmRecord) -> "VmLookup":
        return cls(status=LookupStatus.FOUND, vm=vm)

    @classmethod
    def not_found(cls) -> "VmLookup":
        return cls(status=LookupStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: str) -> "VmLookup":
        return cls(status=LookupStatus.ERROR, error=error)

    @property
    def is_found(self) -> bool:
        return self.status is LookupStatus.FOUND

    @property
    def is_missing(self) -> bool:
        return self.status is LookupStatus.NOT_FOUND


class VmPathSet(MCPModel):
    """Every filesystem location a VM touches on one host."""

    configuration_location: str | None = None
    checkpoint_location: str | None = None
    smart_paging_path: str | None = None
    snapshot_location: str | None = None
    disk_paths: list[str] = Field(default_factory=list)

    def directories(self) -> list[str]:
        """VM folders, including each disk's parent directory."""
        return unique_paths(
            [
                self.configuration_location,
                self.checkpoint_location,
                self.smart_paging_path,
                self.snapshot_location,
                *(windows_parent(path) for path in self.disk_paths),
            ]
        )

    def all_paths(self) -> list[str]:
        """Disk files first, then folders."""
        return unique_paths([*self.disk_paths, *self.directories()])


class VmSwitch(MCPModel):
    """A virtual switch on a host."""

    name: str
    switch_type: str = EXTERNAL_SWITCH_TYPE

    @property
    def is_external(self) -> bool:
        return self.switch_type.lower() == EXTERNAL_SWITCH_TYPE.lower()


class SmbShare(MCPModel):
    """An SMB share published by a host."""

    name: str
    path: str
