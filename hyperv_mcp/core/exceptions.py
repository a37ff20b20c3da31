"""Core exceptions for Hyper-V MCP operations."""


class HyperVMCPError(Exception):
    """Base exception for Hyper-V MCP operations."""


class ConfigurationError(HyperVMCPError):
    """Configuration validation or loading failed."""


class ConnectivityError(HyperVMCPError):
    """A remote session to a required host could not be established."""

    def __init__(self, host: str, message: str):
        super().__init__(f"Cannot reach {host}: {message}")
        self.host = host


class RemoteCommandError(HyperVMCPError):
    """A remote command ran but reported failure."""

    def __init__(self, host: str, operation: str, stderr: str = "", exit_code: int | None = None):
        detail = stderr.strip() or "no error output"
        super().__init__(f"{operation} failed on {host}: {detail}")
        self.host = host
        self.operation = operation
        self.stderr = stderr
        self.exit_code = exit_code


class PreconditionError(HyperVMCPError):
    """A migration precondition does not hold."""

    def __init__(self, condition: str, message: str):
        super().__init__(message)
        self.condition = condition


class IncompatibilityError(HyperVMCPError):
    """The destination cannot host the VM and no automatic fix applies."""

    def __init__(self, reasons: list[str]):
        super().__init__("; ".join(reasons) or "unresolved incompatibility")
        self.reasons = reasons


class TransferError(HyperVMCPError):
    """An export, import or move primitive failed."""

    def __init__(self, phase: str, message: str):
        super().__init__(message)
        self.phase = phase
