"""Remote session pool: one persistent PowerShell channel per Hyper-V host."""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from paramiko import AutoAddPolicy, SSHClient

from ..constants import POWERSHELL_EXECUTABLE, POWERSHELL_FLAGS
from ..utils import (
    build_powershell_script,
    encode_powershell_command,
    is_local_host,
    parse_json_output,
    short_hostname,
)
from .config_loader import HyperVHost, HyperVMCPConfig
from .exceptions import ConnectivityError
from .settings import REMOTE_COMMAND_TIMEOUT, REMOTE_CONNECT_TIMEOUT

logger = structlog.get_logger()


@dataclass
class RemoteResult:
    """Outcome of one remote command."""

    host: str
    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def json(self) -> Any:
        """Decode the JSON the wrapped script emitted (``None`` when silent)."""
        return parse_json_output(self.stdout)


@dataclass
class RemoteSession:
    """Wrapper for a cached SSH session."""

    client: SSHClient
    host: HyperVHost
    created_at: datetime = field(default_factory=datetime.now)
    last_used_at: datetime = field(default_factory=datetime.now)
    use_count: int = 0

    def is_alive(self) -> bool:
        """Check if the session transport is still active."""
        try:
            transport = self.client.get_transport()
            if transport and transport.is_active():
                transport.send_ignore()
                return True
        except Exception:
            pass
        return False

    def touch(self):
        """Update last used timestamp."""
        self.last_used_at = datetime.now()
        self.use_count += 1


class RemoteSessionPool:
    """Opens and caches one remote-execution session per host.

    Sessions open lazily on first use and are reused for the rest of the
    pool's lifetime. Commands for the local host run in a local PowerShell
    process instead. A host whose session could not be established stays
    failed: later calls raise ``ConnectivityError`` immediately rather than
    reconnecting behind the caller's back.

    Use as an async context manager so sessions are released on every exit
    path::

        async with RemoteSessionPool(config) as pool:
            result = await pool.execute("hv01", "Get-VM | Select-Object Name")
    """

    def __init__(
        self,
        config: HyperVMCPConfig,
        connect_timeout: int = REMOTE_CONNECT_TIMEOUT,
        command_timeout: int = REMOTE_COMMAND_TIMEOUT,
    ):
        self.config = config
        self.local_hostname = config.migration.local_hostname
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

        self._sessions: dict[str, RemoteSession] = {}
        self._failed: dict[str, str] = {}
        self._host_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._closed = False
        self._stats = {
            "sessions_opened": 0,
            "sessions_closed": 0,
            "commands_executed": 0,
            "local_commands": 0,
            "connection_errors": 0,
        }

        logger.debug(
            "Remote session pool initialized",
            local_hostname=self.local_hostname,
            connect_timeout=connect_timeout,
        )

    async def __aenter__(self) -> "RemoteSessionPool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close_all()

    def _get_host_key(self, host: str) -> str:
        return short_hostname(host)

    def is_local(self, host: str) -> bool:
        return is_local_host(host, self.local_hostname)

    def _resolve_host(self, host: str) -> HyperVHost:
        host_config = self.config.find_host(host)
        if host_config is None:
            raise ConnectivityError(host, "no connection settings configured for this host")
        if not host_config.enabled:
            raise ConnectivityError(host, "host is disabled in configuration")
        return host_config

    async def _open_session(self, host: str) -> RemoteSession:
        """Open a new SSH session; failures are final for this host."""
        host_config = self._resolve_host(host)
        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs: dict[str, Any] = {
            "hostname": host_config.hostname,
            "port": host_config.port,
            "username": host_config.user,
            "timeout": self.connect_timeout,
            "banner_timeout": self.connect_timeout,
            "auth_timeout": self.connect_timeout,
        }
        if host_config.identity_file:
            connect_kwargs["key_filename"] = host_config.identity_file
        elif host_config.password:
            connect_kwargs["password"] = host_config.password

        try:
            await asyncio.to_thread(client.connect, **connect_kwargs)
        except Exception as e:
            self._stats["connection_errors"] += 1
            client.close()
            raise ConnectivityError(host, str(e)) from e

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(30)

        self._stats["sessions_opened"] += 1
        logger.info(
            "Opened remote session",
            host=host_config.hostname,
            port=host_config.port,
            user=host_config.user,
        )
        return RemoteSession(client=client, host=host_config)

    async def _get_session(self, host: str) -> RemoteSession:
        host_key = self._get_host_key(host)
        if host_key in self._failed:
            raise ConnectivityError(host, self._failed[host_key])

        session = self._sessions.get(host_key)
        if session is not None:
            if session.is_alive():
                return session
            # A dropped session is not silently replaced: the host's view may have changed
            del self._sessions[host_key]
            self._failed[host_key] = "session dropped"
            await self._close_session(session)
            raise ConnectivityError(host, "session dropped")

        try:
            session = await self._open_session(host)
        except ConnectivityError as e:
            self._failed[host_key] = str(e)
            logger.error("Failed to open remote session", host=host, error=str(e))
            raise
        self._sessions[host_key] = session
        return session

    async def execute(
        self,
        host: str,
        command: str,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
    ) -> RemoteResult:
        """Execute a PowerShell script block on ``host``.

        Args:
            host: Target host name or configured host id
            command: PowerShell statements; ``$params`` holds ``params``
            params: Explicit arguments for the script block
            timeout: Command timeout in seconds

        Returns:
            RemoteResult with exit code and captured output

        Raises:
            ConnectivityError: Session could not be established (never retried)
        """
        if self._closed:
            raise ConnectivityError(host, "session pool already closed")

        encoded = encode_powershell_command(build_powershell_script(command, params))
        timeout = timeout or self.command_timeout
        host_key = self._get_host_key(host)

        async with self._host_locks[host_key]:
            if self.is_local(host):
                result = await self._execute_local(host, encoded, timeout)
                self._stats["local_commands"] += 1
            else:
                session = await self._get_session(host)
                result = await self._execute_remote(session, host, encoded, timeout)
                session.touch()

        self._stats["commands_executed"] += 1
        logger.debug(
            "Executed remote command",
            host=host,
            command=command.strip().splitlines()[0][:100] if command.strip() else "",
            exit_code=result.exit_code,
        )
        return result

    async def _execute_local(self, host: str, encoded: str, timeout: int) -> RemoteResult:
        """Run the script in a local PowerShell process (no network hop)."""
        process = await asyncio.create_subprocess_exec(
            POWERSHELL_EXECUTABLE,
            *POWERSHELL_FLAGS,
            encoded,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            return RemoteResult(host, -1, "", f"Local command timed out after {timeout} seconds")
        return RemoteResult(
            host,
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="ignore"),
            stderr.decode("utf-8", errors="ignore"),
        )

    async def _execute_remote(
        self, session: RemoteSession, host: str, encoded: str, timeout: int
    ) -> RemoteResult:
        command_line = " ".join([POWERSHELL_EXECUTABLE, *POWERSHELL_FLAGS, encoded])

        def _execute() -> RemoteResult:
            _, stdout, stderr = session.client.exec_command(command_line, timeout=timeout)
            exit_code = stdout.channel.recv_exit_status()
            stdout_data = stdout.read().decode("utf-8", errors="ignore")
            stderr_data = stderr.read().decode("utf-8", errors="ignore")
            return RemoteResult(host, exit_code, stdout_data, stderr_data)

        try:
            return await asyncio.to_thread(_execute)
        except Exception as e:
            logger.error("Remote command transport failed", host=host, error=str(e))
            raise ConnectivityError(host, f"command transport failed: {e}") from e

    async def _close_session(self, session: RemoteSession):
        try:
            session.client.close()
            self._stats["sessions_closed"] += 1
            logger.debug(
                "Closed remote session",
                host=session.host.hostname,
                use_count=session.use_count,
                lifetime=(datetime.now() - session.created_at).total_seconds(),
            )
        except Exception as e:
            logger.warning(
                "Error closing remote session", host=session.host.hostname, error=str(e)
            )

    async def close_all(self):
        """Release every cached session; safe to call more than once."""
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await self._close_session(session)
        if not self._closed:
            self._closed = True
            logger.info("Remote session pool closed", stats=self._stats)

    def get_stats(self) -> dict[str, Any]:
        """Get session pool statistics."""
        return {
            **self._stats,
            "open_sessions": len(self._sessions),
            "failed_hosts": sorted(self._failed),
        }
