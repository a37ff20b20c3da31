"""Utility functions for Hyper-V MCP.

Helpers shared by the remote execution broker and the Hyper-V/cluster
adapters: PowerShell script assembly, host name comparison and Windows
path arithmetic.
"""

import base64
import json
from collections.abc import Iterable
from pathlib import PureWindowsPath
from typing import Any

from .constants import JSON_DEPTH, LOCAL_HOST_ALIASES


def ps_quote(value: str) -> str:
    """Quote a string as a PowerShell single-quoted literal.

    Example:
        >>> ps_quote("it's")
        "'it''s'"
    """
    return "'" + value.replace("'", "''") + "'"


def build_powershell_script(command: str, params: dict[str, Any] | None = None) -> str:
    """Wrap a script block so it receives ``$params`` and emits JSON.

    Every value the command needs must travel inside ``params``; the block
    never reaches for variables defined outside of it.

    Args:
        command: PowerShell statements; the value of the last pipeline is returned
        params: JSON-serializable arguments bound to ``$params``

    Returns:
        Complete script text ready for encoding
    """
    payload = json.dumps(params or {}, separators=(",", ":"))
    return "\n".join(
        [
            "$ErrorActionPreference = 'Stop'",
            "$ProgressPreference = 'SilentlyContinue'",
            f"$params = ConvertFrom-Json -InputObject {ps_quote(payload)}",
            "$result = & {",
            command,
            "}",
            "if ($null -ne $result) {",
            f"    ConvertTo-Json -InputObject $result -Depth {JSON_DEPTH} -Compress",
            "}",
        ]
    )


def encode_powershell_command(script: str) -> str:
    """Encode a script for ``powershell.exe -EncodedCommand`` (base64 of UTF-16LE)."""
    return base64.b64encode(script.encode("utf-16-le")).decode("ascii")


def parse_json_output(stdout: str) -> Any:
    """Parse JSON emitted by a wrapped script; empty output means ``None``."""
    text = stdout.strip().lstrip("\ufeff")
    if not text:
        return None
    return json.loads(text)


def as_list(value: Any) -> list[Any]:
    """Normalize ConvertTo-Json output, which collapses single-item arrays."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def short_hostname(host: str) -> str:
    """Return the lower-cased first DNS label of a host name."""
    return host.strip().split(".", 1)[0].lower()


def same_host(first: str | None, second: str | None) -> bool:
    """Compare host names by short name, case-insensitively."""
    if not first or not second:
        return False
    return short_hostname(first) == short_hostname(second)


def is_local_host(host: str, local_hostname: str) -> bool:
    """Check whether ``host`` designates the machine we run on."""
    return host.strip().lower() in LOCAL_HOST_ALIASES or same_host(host, local_hostname)


def normalize_path(path: str) -> str:
    """Normalize a Windows path for comparison."""
    return str(PureWindowsPath(path)).rstrip("\\").lower()


def windows_join(base: str, *parts: str) -> str:
    """Join Windows path segments."""
    return str(PureWindowsPath(base, *parts))


def windows_parent(path: str) -> str:
    """Return the parent directory of a Windows path."""
    return str(PureWindowsPath(path).parent)


def windows_basename(path: str) -> str:
    """Return the final component of a Windows path."""
    return PureWindowsPath(path).name


def is_under(path: str, root: str) -> bool:
    """Check whether ``path`` equals ``root`` or lies below it."""
    candidate = normalize_path(path)
    base = normalize_path(root)
    return candidate == base or candidate.startswith(base + "\\")


def unique_paths(paths: Iterable[str | None]) -> list[str]:
    """Drop empty and duplicate (case-insensitive) paths, preserving order."""
    seen: set[str] = set()
    result: list[str] = []
    for path in paths:
        if not path:
            continue
        key = normalize_path(path)
        if key in seen:
            continue
        seen.add(key)
        result.append(path)
    return result


def to_unc_path(host: str, path: str, shares: Iterable[tuple[str, str]] = ()) -> str:
    """Translate a host-local path into a UNC path reachable from other hosts.

    The longest SMB share whose local path contains ``path`` wins. Without a
    matching share the administrative drive share (``C$``) is used.

    Args:
        host: Host that owns ``path``
        path: Local path on that host, e.g. ``D:\\VMs\\web01``
        shares: (share_name, share_local_path) pairs published by the host

    Returns:
        UNC path such as ``\\\\host\\VMs\\web01``
    """
    if path.startswith("\\\\"):
        return path

    best: tuple[str, str] | None = None
    for share_name, share_path in shares:
        # IPC$/ADMIN$ style shares are skipped; drive shares like C$ are fine
        if not share_path or (share_name.endswith("$") and len(share_name) > 2):
            continue
        if is_under(path, share_path):
            if best is None or len(normalize_path(share_path)) > len(normalize_path(best[1])):
                best = (share_name, share_path)

    windows_path = PureWindowsPath(path)
    if best is not None:
        relative = windows_path.relative_to(PureWindowsPath(best[1]))
        suffix = "" if str(relative) == "." else "\\" + str(relative)
        return f"\\\\{host}\\{best[0]}{suffix}"

    drive = windows_path.drive.rstrip(":")
    remainder = str(windows_path)[len(windows_path.anchor):]
    unc = f"\\\\{host}\\{drive}$"
    return f"{unc}\\{remainder}" if remainder else unc


def format_duration(seconds: float) -> str:
    """Format a duration in seconds as a short human string.

    Examples:
        >>> format_duration(42)
        '42s'
        >>> format_duration(3725)
        '1h 2m 5s'
    """
    seconds = int(seconds)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
