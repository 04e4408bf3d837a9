"""Writing rendered configuration and activating it on its target host."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from bastionctl.bastion import BastionRecord
from bastionctl.exceptions import RemoteCommandError
from bastionctl.protocols import RemoteExecutor
from bastionctl.providers.types import Machine
from bastionctl.synth.dhcp import DhcpSettings, render_dhcpd_conf
from bastionctl.synth.haproxy import render_haproxy_cfg

DHCPD_CONF_PATH = "/etc/dhcp/dhcpd.conf"
DHCPD_SERVICE = "dhcpd.service"
HAPROXY_CFG_PATH = "/etc/haproxy/haproxy.cfg"
HAPROXY_SERVICE = "haproxy.service"


@dataclass(frozen=True, slots=True)
class DhcpTarget:
    """Where dhcpd runs. An empty ``host`` means this machine."""

    settings: DhcpSettings
    domain_name: str
    host: str = ""
    key_path: str = ""


class ConfigPusher:
    """Renders, copies and activates dhcpd and HAProxy configuration.

    ``executor`` reaches the bastions; ``local_executor`` is used for a
    dhcpd target without a host.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        scratch_dir: Path,
        *,
        local_executor: RemoteExecutor | None = None,
        dhcp: DhcpTarget | None = None,
    ) -> None:
        self._executor = executor
        self._local = local_executor or executor
        self._scratch = scratch_dir
        self._dhcp = dhcp
        self._log = logger.bind(component="synth")

    def _write_scratch(self, filename: str, text: str) -> Path:
        self._scratch.mkdir(parents=True, exist_ok=True)
        path = self._scratch / filename
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(text)
        tmp.replace(path)
        return path

    async def _run_checked(
        self, executor: RemoteExecutor, host: str, key_path: str, argv: Sequence[str],
    ) -> None:
        result = await executor.run(host, key_path, argv)
        if not result.ok:
            raise RemoteCommandError(argv, result.exit_code, result.output)

    async def _push(
        self,
        executor: RemoteExecutor,
        host: str,
        key_path: str,
        *,
        text: str,
        filename: str,
        remote_path: str,
        service: str,
    ) -> None:
        local = self._write_scratch(filename, text)
        self._log.info(
            "Pushing {file} to {host}:{remote}",
            file=local, host=host or "localhost", remote=remote_path,
        )
        await executor.copy(host, key_path, str(local), remote_path)
        await self._run_checked(executor, host, key_path, ("sudo", "systemctl", "restart", service))

    async def push_dhcp(self, machines: Sequence[Machine]) -> bool:
        """Returns False when dhcpd is not managed."""
        if self._dhcp is None:
            return False
        target = self._dhcp
        text = render_dhcpd_conf(machines, target.settings, target.domain_name)
        executor = self._executor if target.host else self._local
        await self._push(
            executor, target.host, target.key_path,
            text=text, filename="dhcpd.conf",
            remote_path=DHCPD_CONF_PATH, service=DHCPD_SERVICE,
        )
        return True

    async def push_haproxy(
        self, machines: Sequence[Machine], records: Sequence[BastionRecord],
    ) -> int:
        """Push one rendering per valid bastion; returns how many were pushed."""
        valid = [r for r in records if r.valid]
        if not valid:
            self._log.warning("No valid bastion found, skipping HAProxy configuration")
            return 0

        for record in valid:
            await self._push(
                self._executor, record.ip_address, record.installer_key_path,
                text=render_haproxy_cfg(machines, record),
                filename=f"haproxy-{record.infra_id}.cfg",
                remote_path=HAPROXY_CFG_PATH, service=HAPROXY_SERVICE,
            )
        return len(valid)

    async def push_all(
        self, machines: Sequence[Machine], records: Sequence[BastionRecord],
    ) -> None:
        await self.push_dhcp(machines)
        await self.push_haproxy(machines, records)
