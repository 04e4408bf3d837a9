"""Idempotent public DNS reconciliation.

``DnsReconciler`` drives a single record toward its intended state with
delete-then-create semantics; ``DnsPolicy`` decides which records a cycle
should touch.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from enum import StrEnum

from loguru import logger

from bastionctl.bastion import BastionRecord
from bastionctl.exceptions import DnsProviderError
from bastionctl.membership import MemberSet, MembershipDiff, has_role
from bastionctl.protocols import DnsProvider, DnsRecord, RecordType
from bastionctl.providers.types import Machine
from bastionctl.retry import API, Deadline, retry_until

RECORD_TTL = 60

log = logger.bind(component="dns")


class ReconcileOutcome(StrEnum):
    CREATED = "created"
    REPLACED = "replaced"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    ABSENT = "absent"


@dataclass(frozen=True, slots=True)
class DnsRecordIntent:
    type: RecordType
    name: str
    content: str
    should_exist: bool = True


def cluster_intents(
    cluster_name: str, ip_address: str, domain_name: str, *, should_exist: bool = True,
) -> tuple[DnsRecordIntent, ...]:
    """The three records that front a cluster through its bastion."""
    api = f"api.{cluster_name}.{domain_name}"
    return (
        DnsRecordIntent("A", api, ip_address, should_exist),
        DnsRecordIntent("A", f"api-int.{cluster_name}.{domain_name}", ip_address, should_exist),
        DnsRecordIntent("CNAME", f"*.apps.{cluster_name}.{domain_name}", api, should_exist),
    )


class DnsReconciler:
    def __init__(self, provider: DnsProvider) -> None:
        self._provider = provider

    async def _find(self, name: str, deadline: Deadline) -> DnsRecord | None:
        records = await retry_until(deadline, lambda: self._provider.list_records(name), policy=API)
        return next((r for r in records if r.name == name), None)

    async def _delete(self, record: DnsRecord, deadline: Deadline) -> None:
        ok = await retry_until(
            deadline, lambda: self._provider.delete_record(record.id), policy=API,
        )
        if not ok:
            raise DnsProviderError(f"Provider refused to delete {record.type} {record.name}")
        log.info("Deleted {type} {name} -> {content}",
                 type=record.type, name=record.name, content=record.content)

    async def reconcile(
        self,
        type: RecordType,
        name: str,
        content: str,
        should_exist: bool,
        deadline: Deadline,
    ) -> ReconcileOutcome:
        existing = await self._find(name, deadline)

        if existing is not None:
            if should_exist and existing.content == content:
                return ReconcileOutcome.UNCHANGED
            await self._delete(existing, deadline)
            if not should_exist:
                return ReconcileOutcome.DELETED
        elif not should_exist:
            return ReconcileOutcome.ABSENT

        await retry_until(
            deadline,
            lambda: self._provider.create_record(type, name, content, RECORD_TTL),
            policy=API,
        )
        log.info("Created {type} {name} -> {content}", type=type, name=name, content=content)
        return ReconcileOutcome.CREATED if existing is None else ReconcileOutcome.REPLACED

    async def apply(self, intent: DnsRecordIntent, deadline: Deadline) -> ReconcileOutcome:
        return await self.reconcile(
            intent.type, intent.name, intent.content, intent.should_exist, deadline,
        )

    async def apply_all(
        self, intents: Iterable[DnsRecordIntent], deadline: Deadline,
    ) -> list[ReconcileOutcome]:
        return [await self.apply(intent, deadline) for intent in intents]


@dataclass(frozen=True, slots=True)
class DnsState:
    """Whether the cluster-level records have been ensured in this process."""

    initialized: bool = False


class DnsPolicy:
    """Which records one changed reconciliation cycle touches."""

    def __init__(self, reconciler: DnsReconciler, domain_name: str) -> None:
        self._reconciler = reconciler
        self._domain = domain_name

    def host_intent(self, name: str, ip_address: str = "", *, should_exist: bool) -> DnsRecordIntent:
        return DnsRecordIntent("A", f"{name}.{self._domain}", ip_address, should_exist)

    async def ensure_cluster(self, record: BastionRecord, deadline: Deadline) -> None:
        await self._reconciler.apply_all(
            cluster_intents(record.cluster_name, record.ip_address, self._domain), deadline,
        )

    async def apply(
        self,
        state: DnsState,
        records: Sequence[BastionRecord],
        machines: Sequence[Machine],
        delta: MembershipDiff,
        members: MemberSet,
        deadline: Deadline,
    ) -> DnsState:
        """Run the cycle's DNS steps; the first failure propagates and stops the rest."""
        valid = [r for r in records if r.valid]
        was_initialized = state.initialized

        # Stays uninitialized until some bastion is valid, so a late bastion still gets its records.
        if not state.initialized and valid:
            for record in valid:
                await self.ensure_cluster(record, deadline)
            state = replace(state, initialized=True)

        for name in sorted(delta.removed):
            if has_role(name):
                await self._reconciler.apply(self.host_intent(name, should_exist=False), deadline)

        by_name = {m.name: m for m in machines}
        for name in sorted(delta.added):
            machine = by_name.get(name)
            if has_role(name) and machine is not None and machine.ip_address:
                await self._reconciler.apply(
                    self.host_intent(name, machine.ip_address, should_exist=True), deadline,
                )

        if not members and was_initialized:
            log.info("No cluster members left, removing cluster records")
            for record in valid:
                await self._reconciler.apply_all(
                    cluster_intents(
                        record.cluster_name, record.ip_address, self._domain, should_exist=False,
                    ),
                    deadline,
                )

        return state
