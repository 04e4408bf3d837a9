"""Bastion provisioning.

Shared by the command server's ``create-bastion`` handler and the
standalone ``create-bastion`` CLI path.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from bastionctl.dns.reconciler import DnsReconciler, cluster_intents
from bastionctl.exceptions import BastionSetupError, NotFoundError, RemoteCommandError
from bastionctl.infra.ssh import KnownHosts
from bastionctl.protocols import DnsProvider, RemoteExecutor, RemoteResult
from bastionctl.providers.adapter import ProviderQueryAdapter
from bastionctl.providers.types import Machine
from bastionctl.retry import Deadline
from bastionctl.server.client import CommandClient
from bastionctl.synth.push import HAPROXY_CFG_PATH, HAPROXY_SERVICE

BASTION_IP_FILE = Path("/tmp/bastionIp")
DEFAULT_AVAILABILITY_ZONE = "s1022"

HAPROXY_NOT_INSTALLED = "package haproxy is not installed"
HAPROXY_CFG_MODE = "646"
SEBOOL_ON = "haproxy_connect_any --> on"

type DnsFactory = Callable[[str], DnsProvider]


class BastionProvisioner:
    """Prepares an existing server to act as a cluster's bastion.

    Steps: resolve the server's IP, trust its host key, install and enable
    HAProxy (when enabled), then publish the cluster DNS records (when a
    DNS provider is available).
    """

    def __init__(
        self,
        adapter: ProviderQueryAdapter,
        executor: RemoteExecutor,
        known_hosts: KnownHosts,
        *,
        key_path: str,
        enable_haproxy: bool = True,
        dns_factory: DnsFactory | None = None,
    ) -> None:
        self._adapter = adapter
        self._executor = executor
        self._known_hosts = known_hosts
        self._key_path = key_path
        self._enable_haproxy = enable_haproxy
        self._dns_factory = dns_factory
        self._log = logger.bind(component="provisioning")

    async def _run(self, host: str, *argv: str) -> RemoteResult:
        return await self._executor.run(host, self._key_path, argv)

    async def _check(self, host: str, *argv: str) -> RemoteResult:
        result = await self._run(host, *argv)
        if not result.ok:
            raise RemoteCommandError(argv, result.exit_code, result.output)
        return result

    async def setup_haproxy(self, host: str) -> None:
        installed = await self._run(host, "rpm", "-q", "haproxy")
        if HAPROXY_NOT_INSTALLED in installed.output:
            self._log.info("Installing haproxy on {host}", host=host)
            await self._check(host, "sudo", "dnf", "install", "-y", "haproxy")

        mode = await self._run(host, "stat", "-c", "%a", HAPROXY_CFG_PATH)
        if mode.output.strip() != HAPROXY_CFG_MODE:
            await self._check(host, "sudo", "chmod", HAPROXY_CFG_MODE, HAPROXY_CFG_PATH)

        sebool = await self._run(host, "getsebool", "haproxy_connect_any")
        if sebool.output.strip() != SEBOOL_ON:
            await self._check(host, "sudo", "setsebool", "-P", "haproxy_connect_any=1")

        await self._check(host, "sudo", "systemctl", "enable", HAPROXY_SERVICE)
        await self._check(host, "sudo", "systemctl", "start", HAPROXY_SERVICE)

    async def publish_dns(
        self, server_name: str, ip_address: str, domain_name: str, deadline: Deadline,
    ) -> None:
        if self._dns_factory is None:
            self._log.warning("No IBM Cloud API key, skipping DNS for {name}", name=server_name)
            return
        reconciler = DnsReconciler(self._dns_factory(domain_name))
        await reconciler.apply_all(cluster_intents(server_name, ip_address, domain_name), deadline)

    async def setup(
        self, cloud: str, server_name: str, domain_name: str, deadline: Deadline,
    ) -> str:
        """Returns the bastion's IP address."""
        machine = await self._adapter.find_machine(cloud, server_name, deadline)
        if not machine.ip_address:
            raise BastionSetupError(f"Server {server_name} has no IP address")
        ip = machine.ip_address

        await self._known_hosts.ensure(ip, deadline)
        if self._enable_haproxy:
            await self.setup_haproxy(ip)
        await self.publish_dns(server_name, ip, domain_name, deadline)

        self._log.info("Bastion {name} ready at {ip}", name=server_name, ip=ip)
        return ip


@dataclass(frozen=True, slots=True)
class BastionRequest:
    cloud: str
    name: str
    flavor: str
    image: str
    network: str
    keypair: str | None = None
    domain_name: str = ""
    availability_zone: str | None = DEFAULT_AVAILABILITY_ZONE


def write_bastion_ip(ip_address: str, path: Path = BASTION_IP_FILE) -> None:
    path.write_text(ip_address)


async def ensure_machine(
    adapter: ProviderQueryAdapter, request: BastionRequest, deadline: Deadline,
) -> Machine:
    try:
        machine = await adapter.find_machine(request.cloud, request.name, deadline)
    except NotFoundError:
        logger.bind(component="provisioning").info("Creating server {name}", name=request.name)
        return await adapter.create_machine(
            request.cloud,
            name=request.name,
            flavor=request.flavor,
            image=request.image,
            network=request.network,
            keypair=request.keypair,
            availability_zone=request.availability_zone,
            deadline=deadline,
        )
    if not machine.is_running:
        machine = await adapter.wait_for_machine(request.cloud, request.name, deadline)
    return machine


async def create_bastion(
    request: BastionRequest,
    adapter: ProviderQueryAdapter,
    deadline: Deadline,
    *,
    provisioner: BastionProvisioner | None = None,
    remote: CommandClient | None = None,
    pointer: Path = BASTION_IP_FILE,
) -> str:
    """Find or create the bastion server, set it up and record its IP.

    Set-up runs on ``remote`` when given, otherwise through ``provisioner``.
    """
    if (provisioner is None) == (remote is None):
        raise ValueError("Exactly one of provisioner or remote is required")

    pointer.unlink(missing_ok=True)
    machine = await ensure_machine(adapter, request, deadline)
    if not machine.ip_address:
        raise BastionSetupError(f"Server {request.name} has no IP address")

    if remote is not None:
        await remote.request_bastion(
            request.cloud, request.name, request.domain_name, timeout=deadline.remaining(),
        )
    else:
        assert provisioner is not None
        await provisioner.setup(request.cloud, request.name, request.domain_name, deadline)

    write_bastion_ip(machine.ip_address, pointer)
    return machine.ip_address
