from __future__ import annotations

from pathlib import Path

import pytest

from bastionctl.bastion import BastionRecord
from bastionctl.exceptions import RemoteCommandError
from bastionctl.protocols import RemoteResult
from bastionctl.providers.types import Machine
from bastionctl.synth.dhcp import DhcpSettings
from bastionctl.synth.push import (
    DHCPD_CONF_PATH,
    HAPROXY_CFG_PATH,
    ConfigPusher,
    DhcpTarget,
)

from .fakes import FakeExecutor

pytestmark = [pytest.mark.unit]

SETTINGS = DhcpSettings("env2", "10.0.0.0", "255.255.255.0", "10.0.0.1", "10.0.0.1", "10.0.0.2")
MACHINES = [
    Machine(id="1", name="infra1-master-0", mac_address="m1", ip_address="10.0.0.5"),
    Machine(id="2", name="infra1-worker-0", mac_address="m2", ip_address="10.0.0.6"),
]


def record(valid: bool = True, infra_id: str = "infra1", ip: str = "10.0.0.2") -> BastionRecord:
    return BastionRecord(
        metadata_path=Path(f"/{infra_id}/metadata.json"),
        username="cloud-user",
        installer_key_path="/keys/installer",
        valid=valid,
        cluster_name=f"{infra_id}-bastion",
        infra_id=infra_id,
        ip_address=ip,
    )


class TestPushHaproxy:
    @pytest.mark.asyncio
    async def test_pushes_to_each_valid_bastion(self, tmp_path: Path, executor: FakeExecutor):
        pusher = ConfigPusher(executor, tmp_path)
        pushed = await pusher.push_haproxy(
            MACHINES, [record(), record(valid=False, infra_id="infra2", ip="10.0.0.3")],
        )
        assert pushed == 1
        assert executor.copies == [
            ("10.0.0.2", str(tmp_path / "haproxy-infra1.cfg"), HAPROXY_CFG_PATH),
        ]
        assert executor.commands("10.0.0.2") == ["sudo systemctl restart haproxy.service"]
        text = executor.copied_text[f"10.0.0.2:{HAPROXY_CFG_PATH}"]
        assert "server infra1-worker-0 10.0.0.6:80 check" in text

    @pytest.mark.asyncio
    async def test_no_valid_bastion_pushes_nothing(self, tmp_path: Path, executor: FakeExecutor):
        pusher = ConfigPusher(executor, tmp_path)
        assert await pusher.push_haproxy(MACHINES, [record(valid=False)]) == 0
        assert executor.copies == []

    @pytest.mark.asyncio
    async def test_restart_failure_raises(self, tmp_path: Path):
        executor = FakeExecutor(responses={"sudo systemctl": RemoteResult("failed", 1)})
        pusher = ConfigPusher(executor, tmp_path)
        with pytest.raises(RemoteCommandError) as exc_info:
            await pusher.push_haproxy(MACHINES, [record()])
        assert exc_info.value.exit_code == 1


class TestPushDhcp:
    @pytest.mark.asyncio
    async def test_unmanaged_dhcp_is_skipped(self, tmp_path: Path, executor: FakeExecutor):
        pusher = ConfigPusher(executor, tmp_path)
        assert not await pusher.push_dhcp(MACHINES)
        assert executor.runs == []

    @pytest.mark.asyncio
    async def test_local_target_uses_local_executor(self, tmp_path: Path, executor: FakeExecutor):
        local = FakeExecutor()
        pusher = ConfigPusher(
            executor, tmp_path, local_executor=local,
            dhcp=DhcpTarget(SETTINGS, "example.com"),
        )
        assert await pusher.push_dhcp(MACHINES)
        assert executor.copies == []
        assert local.copies == [("", str(tmp_path / "dhcpd.conf"), DHCPD_CONF_PATH)]
        assert local.commands() == ["sudo systemctl restart dhcpd.service"]
        assert "fixed-address        10.0.0.6;" in local.copied_text[f":{DHCPD_CONF_PATH}"]

    @pytest.mark.asyncio
    async def test_remote_target(self, tmp_path: Path, executor: FakeExecutor):
        pusher = ConfigPusher(
            executor, tmp_path,
            dhcp=DhcpTarget(SETTINGS, "example.com", host="10.0.0.9", key_path="/k"),
        )
        await pusher.push_dhcp(MACHINES)
        assert executor.copies[0][0] == "10.0.0.9"

    @pytest.mark.asyncio
    async def test_scratch_file_is_replaced(self, tmp_path: Path, executor: FakeExecutor):
        pusher = ConfigPusher(
            executor, tmp_path / "scratch", dhcp=DhcpTarget(SETTINGS, "example.com"),
        )
        await pusher.push_dhcp(MACHINES)
        await pusher.push_dhcp(MACHINES[:1])
        text = (tmp_path / "scratch" / "dhcpd.conf").read_text()
        assert "infra1-worker-0" not in text
        assert not (tmp_path / "scratch" / "dhcpd.conf.tmp").exists()
