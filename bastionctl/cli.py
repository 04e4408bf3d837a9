"""Command-line entry points.

    bastionctl watch            run the reconciliation loop and the command server
    bastionctl send-metadata    create or delete a cluster's metadata on a server
    bastionctl create-bastion   create (if needed) and set up a bastion server
    bastionctl check-alive      ask whether a command server answers
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from bastionctl.config import (
    API_KEY_ENV,
    RawConfig,
    WatchConfig,
    load_config,
    resolve_log_config,
    resolve_watch_config,
)
from bastionctl.controller import Controller
from bastionctl.dns.cis import CisDnsProvider
from bastionctl.dns.reconciler import DnsPolicy, DnsReconciler
from bastionctl.exceptions import BastionCtlError, ConfigurationError
from bastionctl.infra.http import HttpError
from bastionctl.infra.ssh import KnownHosts, LocalExecutor, SSHExecutor
from bastionctl.observability.logging import setup_logging, teardown_logging
from bastionctl.provisioning import (
    DEFAULT_AVAILABILITY_ZONE,
    BastionProvisioner,
    BastionRequest,
    create_bastion,
)
from bastionctl.providers.adapter import ProviderQueryAdapter
from bastionctl.providers.openstack import OpenStackDirectory
from bastionctl.retry import Deadline
from bastionctl.server.client import CommandClient
from bastionctl.server.protocol import DEFAULT_PORT
from bastionctl.server.server import CommandServer
from bastionctl.synth.push import ConfigPusher, DhcpTarget

CREATE_BASTION_TIMEOUT = 15 * 60
DEFAULT_INSTALLER_KEY = "~/.ssh/id_installer_rsa"
DEFAULT_BASTION_USER = "cloud-user"

EXIT_ERROR = 1
EXIT_CONFIG = 2


class DnsProviders:
    """One CIS client per domain, closed together."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key
        self._providers: dict[str, CisDnsProvider] = {}

    def __call__(self, domain_name: str) -> CisDnsProvider:
        if domain_name not in self._providers:
            self._providers[domain_name] = CisDnsProvider(self._api_key, domain_name)
        return self._providers[domain_name]

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


# ─── watch ───────────────────────────────────────────────────────────


def _leading_error(group: ExceptionGroup) -> Exception:
    """The error that decides the exit status, preferring a ConfigurationError."""
    config_errors, _ = group.split(ConfigurationError)
    leaf: Exception = config_errors or group
    while isinstance(leaf, ExceptionGroup):
        leaf = leaf.exceptions[0]
    return leaf


async def watch(config: WatchConfig) -> None:
    """Run the reconciliation loop and the command server until either fails.

    The first failure is re-raised on its own, unwrapped from the task group.
    """
    directory = OpenStackDirectory()
    adapter = ProviderQueryAdapter(directory)
    executor = SSHExecutor(config.bastion_username)
    dns_providers = DnsProviders(config.api_key) if config.api_key else None

    dhcp = None
    if config.dhcp is not None:
        dhcp = DhcpTarget(
            settings=config.dhcp.settings,
            domain_name=config.domain_name,
            host=config.dhcp.host,
            key_path=config.installer_key,
        )
    pusher = ConfigPusher(
        executor, config.scratch_dir, local_executor=LocalExecutor(), dhcp=dhcp,
    )
    policy = None
    if dns_providers is not None:
        policy = DnsPolicy(DnsReconciler(dns_providers(config.domain_name)), config.domain_name)

    controller = Controller(config, adapter, pusher, policy)
    provisioner = BastionProvisioner(
        adapter,
        executor,
        KnownHosts(),
        key_path=config.installer_key,
        dns_factory=dns_providers,
    )
    server = CommandServer(
        config.metadata_root, provisioner, host=config.server_host, port=config.server_port,
    )

    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(server.serve_forever())
            tg.create_task(controller.run())
    except ExceptionGroup as group:
        raise _leading_error(group) from group
    finally:
        await server.close()
        await directory.close()
        if dns_providers is not None:
            await dns_providers.close()


# ─── create-bastion ──────────────────────────────────────────────────


async def run_create_bastion(args: argparse.Namespace, api_key: str) -> str:
    request = BastionRequest(
        cloud=args.cloud,
        name=args.bastion_name,
        flavor=args.flavor_name,
        image=args.image_name,
        network=args.network_name,
        keypair=args.ssh_key_name,
        domain_name=args.domain_name,
        availability_zone=args.availability_zone or None,
    )
    deadline = Deadline.after(CREATE_BASTION_TIMEOUT)
    dns_providers = DnsProviders(api_key) if api_key else None

    async with OpenStackDirectory() as directory:
        adapter = ProviderQueryAdapter(directory)
        try:
            if args.server_ip:
                remote = CommandClient(args.server_ip, args.port)
                return await create_bastion(request, adapter, deadline, remote=remote)
            provisioner = BastionProvisioner(
                adapter,
                SSHExecutor(args.bastion_username),
                KnownHosts(),
                key_path=str(Path(args.installer_key).expanduser()),
                enable_haproxy=args.enable_haproxy,
                dns_factory=dns_providers,
            )
            return await create_bastion(request, adapter, deadline, provisioner=provisioner)
        finally:
            if dns_providers is not None:
                await dns_providers.close()


# ─── Parser ──────────────────────────────────────────────────────────


def _add_watch(sub: argparse._SubParsersAction) -> None:
    p = sub.add_parser("watch", help="Reconcile DHCP, HAProxy and DNS from provider state")
    p.add_argument("--cloud", help="clouds.yaml profile to watch")
    p.add_argument("--domain-name", help="Public DNS domain")
    p.add_argument("--metadata-root", help="Directory holding <infraID>/metadata.json files")
    p.add_argument("--bastion-username", help="SSH user on the bastions")
    p.add_argument("--installer-key", help="SSH private key for the bastions")
    p.add_argument("--enable-dhcpd", action="store_true", default=None)
    p.add_argument("--dhcp-host", help="Host running dhcpd (default: this machine)")
    p.add_argument("--dhcp-interface")
    p.add_argument("--dhcp-subnet")
    p.add_argument("--dhcp-netmask")
    p.add_argument("--dhcp-router")
    p.add_argument("--dhcp-dns-servers")
    p.add_argument("--dhcp-server-id")
    p.add_argument("--port", type=int, help=f"Command server port (default {DEFAULT_PORT})")


def _add_send_metadata(sub: argparse._SubParsersAction) -> None:
    p = sub.add_parser("send-metadata", help="Send a metadata.json to a command server")
    action = p.add_mutually_exclusive_group(required=True)
    action.add_argument("--create", metavar="FILE", type=Path)
    action.add_argument("--delete", metavar="FILE", type=Path)
    p.add_argument("--server-ip", required=True)
    p.add_argument("--port", type=int, default=DEFAULT_PORT)


def _add_create_bastion(sub: argparse._SubParsersAction) -> None:
    p = sub.add_parser("create-bastion", help="Create and set up a bastion server")
    p.add_argument("--cloud", required=True)
    p.add_argument("--bastion-name", required=True)
    p.add_argument("--flavor-name", required=True)
    p.add_argument("--image-name", required=True)
    p.add_argument("--network-name", required=True)
    p.add_argument("--ssh-key-name")
    p.add_argument("--domain-name", default="")
    p.add_argument("--availability-zone", default=DEFAULT_AVAILABILITY_ZONE)
    p.add_argument("--enable-haproxy", action=argparse.BooleanOptionalAction, default=True)
    p.add_argument("--server-ip", help="Delegate set-up to the command server at this address")
    p.add_argument("--port", type=int, default=DEFAULT_PORT)
    p.add_argument("--bastion-username", default=DEFAULT_BASTION_USER)
    p.add_argument("--installer-key", default=DEFAULT_INSTALLER_KEY)


def _add_check_alive(sub: argparse._SubParsersAction) -> None:
    p = sub.add_parser("check-alive", help="Check that a command server answers")
    p.add_argument("--server-ip", required=True)
    p.add_argument("--port", type=int, default=DEFAULT_PORT)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bastionctl", description=__doc__.split("\n\n")[0])
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--config", type=Path, help="TOML file replacing ./bastionctl.toml")
    sub = parser.add_subparsers(dest="command", required=True)
    _add_watch(sub)
    _add_send_metadata(sub)
    _add_create_bastion(sub)
    _add_check_alive(sub)
    return parser


def watch_overrides(args: argparse.Namespace) -> dict[str, dict[str, object]]:
    return {
        "watch": {
            "cloud": args.cloud,
            "domain_name": args.domain_name,
            "metadata_root": args.metadata_root,
            "bastion_username": args.bastion_username,
            "installer_key": args.installer_key,
        },
        "dhcp": {
            "enabled": args.enable_dhcpd,
            "host": args.dhcp_host,
            "interface": args.dhcp_interface,
            "subnet": args.dhcp_subnet,
            "netmask": args.dhcp_netmask,
            "router": args.dhcp_router,
            "dns_servers": args.dhcp_dns_servers,
            "server_id": args.dhcp_server_id,
        },
        "server": {"port": args.port},
    }


async def _dispatch(args: argparse.Namespace, raw: RawConfig) -> int:
    match args.command:
        case "watch":
            config = resolve_watch_config(raw, overrides=watch_overrides(args), debug=args.debug)
            await watch(config)
        case "send-metadata":
            client = CommandClient(args.server_ip, args.port)
            path = args.create or args.delete
            await client.send_metadata(path, create=args.create is not None)
        case "create-bastion":
            ip = await run_create_bastion(args, os.environ.get(API_KEY_ENV, ""))
            print(ip)
        case "check-alive":
            alive = await CommandClient(args.server_ip, args.port).check_alive()
            print("alive" if alive else "not responding")
            return 0 if alive else EXIT_ERROR
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        raw = load_config(config_file=args.config)
        log_config = resolve_log_config(raw["logging"], args.debug)
    except ConfigurationError as e:
        print(f"bastionctl: {e}", file=sys.stderr)
        return EXIT_CONFIG

    handler_ids = setup_logging(log_config)
    try:
        return asyncio.run(_dispatch(args, raw))
    except ConfigurationError as e:
        logger.error("Configuration error: {error}", error=e)
        return EXIT_CONFIG
    except (BastionCtlError, HttpError, OSError) as e:
        logger.error("{command} failed: {error}", command=args.command, error=e)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return 130
    finally:
        teardown_logging(handler_ids)
