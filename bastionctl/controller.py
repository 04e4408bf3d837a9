"""The watch-and-reconcile loop.

Poll the provider, diff cluster membership and, when it changed, regenerate
dhcpd/HAProxy configuration and reconcile public DNS. The two sub-pipelines
fail independently. Each keeps the member snapshot it last applied, so a
failed one is retried with its own diff on the next tick while the other
stays idle.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace

import aiohttp
from loguru import logger

from bastionctl.bastion import BastionRecord, refresh_records, scan_metadata
from bastionctl.config import WatchConfig
from bastionctl.dns.reconciler import DnsPolicy, DnsState
from bastionctl.exceptions import BastionCtlError, ConfigurationError
from bastionctl.infra.http import HttpError
from bastionctl.membership import MemberSet, MembershipDiff, diff, member_set
from bastionctl.providers.adapter import ProviderQueryAdapter
from bastionctl.retry import Deadline
from bastionctl.synth.push import ConfigPusher

# Failures that abort a cycle or one of its sub-pipelines but not the loop.
CYCLE_ERRORS = (BastionCtlError, HttpError, aiohttp.ClientError, OSError)


@dataclass(frozen=True, slots=True)
class ControllerState:
    """Member snapshots each sub-pipeline has applied, and the DNS lifecycle."""

    config_members: MemberSet = frozenset()
    dns_members: MemberSet = frozenset()
    dns: DnsState = DnsState()

    @property
    def known_members(self) -> MemberSet:
        """Members both sub-pipelines have applied."""
        return self.config_members & self.dns_members


@dataclass(frozen=True, slots=True)
class CycleReport:
    delta: MembershipDiff
    members: MemberSet = frozenset()
    valid_bastions: int = 0
    config_error: Exception | None = None
    dns_error: Exception | None = None
    committed: bool = False

    @property
    def idle(self) -> bool:
        return self.delta.is_empty


@dataclass
class Controller:
    """Holds the in-memory controller state; nothing here is persisted.

    ``dns`` is None when no IBM Cloud API key is configured, in which case
    the DNS pass is skipped.
    """

    config: WatchConfig
    adapter: ProviderQueryAdapter
    pusher: ConfigPusher
    dns: DnsPolicy | None = None
    state: ControllerState = field(default_factory=ControllerState)
    records: list[BastionRecord] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._log = logger.bind(component="controller", cloud=self.config.cloud)
        if self.dns is None:
            self._log.warning("No IBM Cloud API key configured, DNS records will not be managed")

    def rescan(self) -> list[BastionRecord]:
        self.records = scan_metadata(
            self.config.metadata_root,
            self.config.bastion_username,
            self.config.installer_key,
            known=self.records,
        )
        return self.records

    async def run_cycle(self) -> CycleReport:
        """One poll. Provider listing failures propagate; the rest is reported.

        Config push and DNS each diff against the members they last applied,
        so a failure in one retries only that one on the next tick.
        """
        self.rescan()
        deadline = Deadline.after(self.config.cycle_timeout)
        machines = await self.adapter.list_machines(self.config.cloud, deadline)

        members = member_set(machines)
        config_delta = diff(self.state.config_members, members)
        dns_delta = diff(self.state.dns_members, members)
        if self.dns is None:
            dns_delta = MembershipDiff()
        delta = MembershipDiff(
            added=config_delta.added | dns_delta.added,
            removed=config_delta.removed | dns_delta.removed,
        )
        if delta.is_empty:
            return CycleReport(delta=delta, members=members)

        self._log.info(
            "Membership changed: added={added} removed={removed}",
            added=sorted(delta.added), removed=sorted(delta.removed),
        )
        valid = refresh_records(self.records, machines)
        state = self.state

        config_error: Exception | None = None
        if not config_delta.is_empty:
            try:
                await self.pusher.push_all(machines, self.records)
            except CYCLE_ERRORS as e:
                self._log.error("Configuration push failed: {error}", error=e)
                config_error = e
            else:
                state = replace(state, config_members=members)

        dns_error: Exception | None = None
        if self.dns is None:
            state = replace(state, dns_members=members)
        elif not dns_delta.is_empty:
            try:
                dns_state = await self.dns.apply(
                    state.dns, self.records, machines, dns_delta, members, deadline,
                )
            except CYCLE_ERRORS as e:
                self._log.error("DNS reconciliation failed: {error}", error=e)
                dns_error = e
            else:
                state = replace(state, dns_members=members, dns=dns_state)

        self.state = state
        return CycleReport(
            delta=delta,
            members=members,
            valid_bastions=valid,
            config_error=config_error,
            dns_error=dns_error,
            committed=config_error is None and dns_error is None,
        )

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Reconcile every ``poll_interval`` seconds until ``stop`` is set."""
        stop = stop or asyncio.Event()
        self._log.info(
            "Watching cloud {cloud} every {interval:.0f}s",
            cloud=self.config.cloud, interval=self.config.poll_interval,
        )
        while not stop.is_set():
            try:
                await self.run_cycle()
            except ConfigurationError:
                raise
            except CYCLE_ERRORS as e:
                self._log.error("Reconciliation cycle aborted: {error}", error=e)
            try:
                await asyncio.wait_for(stop.wait(), self.config.poll_interval)
            except TimeoutError:
                pass
