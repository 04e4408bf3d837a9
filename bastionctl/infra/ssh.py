"""AsyncSSH-based remote execution.

Service class pattern: host, user and key are bound at construction,
not passed on every call. ``SSHExecutor`` and ``LocalExecutor`` implement
the ``RemoteExecutor`` protocol on top of it.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import asyncssh
from loguru import logger

from bastionctl.exceptions import RemoteCommandError, TransientError
from bastionctl.protocols import RemoteResult
from bastionctl.retry import PROBE, Deadline, retry_until

DEFAULT_KNOWN_HOSTS = Path("~/.ssh/known_hosts").expanduser()
MISSING_EXIT_STATUS = -1


# =============================================================================
# SSH Transport
# =============================================================================


@dataclass
class SSHTransport:
    """Async SSH transport using asyncssh.

    Connection attempts are retried with the probe backoff until
    ``retry_window`` seconds have passed.

    Example:
        >>> async with SSHTransport(host="10.0.0.1", user="cloud-user",
        ...                         key_path="~/.ssh/id_installer_rsa") as t:
        ...     code, out, err = await t.run("rpm", "-q", "haproxy")
    """

    host: str
    user: str
    key_path: str
    port: int = 22
    known_hosts: str | None = None
    connect_timeout: float = 30.0
    retry_window: float = 300.0

    _conn: asyncssh.SSHClientConnection | None = field(default=None, repr=False)

    async def connect(self) -> None:
        if self._conn is not None:
            return

        async def do_connect() -> asyncssh.SSHClientConnection:
            try:
                return await asyncssh.connect(
                    self.host,
                    port=self.port,
                    username=self.user,
                    client_keys=[str(Path(self.key_path).expanduser())],
                    known_hosts=self.known_hosts,
                    connect_timeout=self.connect_timeout,
                )
            except (OSError, asyncssh.DisconnectError) as e:
                raise TransientError(f"SSH connect to {self.host} failed: {e}") from e

        self._conn = await retry_until(
            Deadline.after(self.retry_window), do_connect, policy=PROBE,
        )

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._conn.wait_closed(), timeout=5.0)
            self._conn = None

    async def __aenter__(self) -> SSHTransport:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    def _require_connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._conn

    async def run(self, *command: str, timeout: float | None = None) -> tuple[int, str, str]:
        """Execute command and return (exit_code, stdout, stderr)."""
        conn = self._require_connection()
        result = await conn.run(shlex.join(command), timeout=timeout, check=False)
        # No exit status means the session ended before the command did.
        code = result.exit_status if result.exit_status is not None else MISSING_EXIT_STATUS
        return code, str(result.stdout or ""), str(result.stderr or "")

    async def upload(self, local: str, remote: str) -> None:
        conn = self._require_connection()
        await asyncssh.scp(local, (conn, remote))


# =============================================================================
# Executors
# =============================================================================


@dataclass(frozen=True, slots=True)
class SSHExecutor:
    """Runs commands on a remote host as ``username`` over a fresh SSH session.

    Host keys are checked against ``known_hosts`` once that file exists.
    """

    username: str
    known_hosts: Path = DEFAULT_KNOWN_HOSTS
    retry_window: float = 300.0

    def _transport(self, host: str, key_path: str) -> SSHTransport:
        return SSHTransport(
            host=host,
            user=self.username,
            key_path=key_path,
            known_hosts=str(self.known_hosts) if self.known_hosts.is_file() else None,
            retry_window=self.retry_window,
        )

    async def run(self, host: str, key_path: str, argv: Sequence[str]) -> RemoteResult:
        logger.bind(component="ssh").debug(
            "{host}$ {cmd}", host=host, cmd=shlex.join(argv),
        )
        async with self._transport(host, key_path) as t:
            code, out, err = await t.run(*argv)
        return RemoteResult(output=out + err, exit_code=code)

    async def copy(self, host: str, key_path: str, local: str, remote: str) -> None:
        logger.bind(component="ssh").debug(
            "scp {local} {user}@{host}:{remote}",
            local=local, user=self.username, host=host, remote=remote,
        )
        async with self._transport(host, key_path) as t:
            await t.upload(local, remote)


class LocalExecutor:
    """Runs commands on this machine; ``host`` and ``key_path`` are ignored."""

    async def run(self, host: str, key_path: str, argv: Sequence[str]) -> RemoteResult:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await proc.communicate()
        return RemoteResult(output=stdout.decode(), exit_code=proc.returncode or 0)

    async def copy(self, host: str, key_path: str, local: str, remote: str) -> None:
        argv = ("sudo", "cp", local, remote)
        result = await self.run(host, key_path, argv)
        if not result.ok:
            raise RemoteCommandError(argv, result.exit_code, result.output)


# =============================================================================
# Known hosts
# =============================================================================


@dataclass(frozen=True, slots=True)
class KnownHosts:
    """Keeps ``~/.ssh/known_hosts`` aware of freshly booted bastions."""

    path: Path = DEFAULT_KNOWN_HOSTS
    port: int = 22

    def contains(self, host: str) -> bool:
        if not self.path.is_file():
            return False
        known = asyncssh.read_known_hosts(str(self.path))
        host_keys, *_ = known.match(host, host, self.port)
        return bool(host_keys)

    async def _scan(self, host: str) -> str:
        try:
            key = await asyncssh.get_server_host_key(host, self.port)
        except (OSError, asyncssh.Error) as e:
            raise TransientError(f"Host key scan of {host} failed: {e}") from e
        if key is None:
            raise TransientError(f"Host {host} offered no host key")
        return f"{host} {key.export_public_key('openssh').decode().strip()}"

    async def ensure(self, host: str, deadline: Deadline) -> bool:
        """Append ``host``'s key unless already known. Returns True if appended."""
        if self.contains(host):
            return False
        line = await retry_until(deadline, lambda: self._scan(host), policy=PROBE)
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with self.path.open("a") as f:
            f.write(line + "\n")
        logger.bind(component="ssh").info("Added {host} to {path}", host=host, path=self.path)
        return True
