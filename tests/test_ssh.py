from __future__ import annotations

from types import SimpleNamespace

import pytest

from bastionctl.infra.ssh import MISSING_EXIT_STATUS, SSHTransport

pytestmark = [pytest.mark.unit]


class FakeConnection:
    def __init__(self, exit_status: int | None, stdout: str = "", stderr: str = "") -> None:
        self.result = SimpleNamespace(exit_status=exit_status, stdout=stdout, stderr=stderr)
        self.commands: list[str] = []

    async def run(self, command: str, *, timeout: float | None, check: bool) -> SimpleNamespace:
        self.commands.append(command)
        return self.result


def transport(conn: FakeConnection) -> SSHTransport:
    return SSHTransport(host="10.0.0.2", user="cloud-user", key_path="/keys/installer",
                        _conn=conn)  # type: ignore[arg-type]


class TestSSHTransportRun:
    @pytest.mark.asyncio
    async def test_exit_status_is_returned(self):
        conn = FakeConnection(0, stdout="haproxy-2.4\n")
        code, out, err = await transport(conn).run("rpm", "-q", "haproxy")
        assert (code, out, err) == (0, "haproxy-2.4\n", "")
        assert conn.commands == ["rpm -q haproxy"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_status(self):
        code, _, err = await transport(FakeConnection(3, stderr="denied")).run("false")
        assert code == 3
        assert err == "denied"

    @pytest.mark.asyncio
    async def test_dropped_session_is_a_failure(self):
        code, out, _ = await transport(FakeConnection(None, stdout="partial")).run(
            "sudo", "systemctl", "restart", "haproxy.service",
        )
        assert code == MISSING_EXIT_STATUS
        assert code != 0
        assert out == "partial"

    @pytest.mark.asyncio
    async def test_arguments_are_quoted(self):
        conn = FakeConnection(0)
        await transport(conn).run("echo", "a b")
        assert conn.commands == ["echo 'a b'"]

    @pytest.mark.asyncio
    async def test_run_requires_connection(self):
        with pytest.raises(RuntimeError):
            await SSHTransport(host="h", user="u", key_path="k").run("true")
