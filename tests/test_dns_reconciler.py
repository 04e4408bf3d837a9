from __future__ import annotations

import pytest

from bastionctl.dns.reconciler import (
    DnsReconciler,
    DnsRecordIntent,
    ReconcileOutcome,
    cluster_intents,
)
from bastionctl.exceptions import DnsProviderError
from bastionctl.infra.http import HttpError
from bastionctl.retry import Deadline

from .fakes import FakeDns

pytestmark = [pytest.mark.unit]

NAME = "api.mycluster.example.com"


@pytest.fixture
def reconciler(dns: FakeDns) -> DnsReconciler:
    return DnsReconciler(dns)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_creates_missing_record(self, dns: FakeDns, reconciler: DnsReconciler):
        outcome = await reconciler.reconcile("A", NAME, "10.0.0.2", True, Deadline.after(10))
        assert outcome is ReconcileOutcome.CREATED
        assert [r.content for r in dns.by_name(NAME)] == ["10.0.0.2"]

    @pytest.mark.asyncio
    async def test_matching_record_is_left_alone(self, dns: FakeDns, reconciler: DnsReconciler):
        dns.seed("A", NAME, "10.0.0.2")
        outcome = await reconciler.reconcile("A", NAME, "10.0.0.2", True, Deadline.after(10))
        assert outcome is ReconcileOutcome.UNCHANGED
        assert not any(op == "create" or op == "delete" for op, _ in dns.log)

    @pytest.mark.asyncio
    async def test_stale_content_is_replaced(self, dns: FakeDns, reconciler: DnsReconciler):
        old = dns.seed("A", NAME, "10.0.0.1")
        outcome = await reconciler.reconcile("A", NAME, "10.0.0.2", True, Deadline.after(10))
        assert outcome is ReconcileOutcome.REPLACED
        assert [op for op, _ in dns.log] == ["list", "delete", "create"]
        assert old.id not in dns.records
        assert [r.content for r in dns.by_name(NAME)] == ["10.0.0.2"]

    @pytest.mark.asyncio
    async def test_unwanted_record_is_deleted(self, dns: FakeDns, reconciler: DnsReconciler):
        dns.seed("A", NAME, "10.0.0.2")
        outcome = await reconciler.reconcile("A", NAME, "", False, Deadline.after(10))
        assert outcome is ReconcileOutcome.DELETED
        assert dns.by_name(NAME) == []

    @pytest.mark.asyncio
    async def test_absent_and_unwanted_is_noop(self, dns: FakeDns, reconciler: DnsReconciler):
        outcome = await reconciler.reconcile("A", NAME, "", False, Deadline.after(10))
        assert outcome is ReconcileOutcome.ABSENT
        assert dns.log == [("list", NAME)]

    @pytest.mark.asyncio
    async def test_only_exact_name_matches(self, dns: FakeDns, reconciler: DnsReconciler):
        dns.seed("A", f"x{NAME}", "10.9.9.9")
        outcome = await reconciler.reconcile("A", NAME, "10.0.0.2", True, Deadline.after(10))
        assert outcome is ReconcileOutcome.CREATED
        assert len(dns.by_name(f"x{NAME}")) == 1

    @pytest.mark.asyncio
    async def test_refused_delete_raises(self, dns: FakeDns, reconciler: DnsReconciler):
        dns.seed("A", NAME, "10.0.0.1")
        dns.refuse_delete = True
        with pytest.raises(DnsProviderError):
            await reconciler.reconcile("A", NAME, "10.0.0.2", True, Deadline.after(10))
        assert not any(op == "create" for op, _ in dns.log)

    @pytest.mark.asyncio
    async def test_transient_provider_error_is_retried(
        self, dns: FakeDns, reconciler: DnsReconciler, fast_retry,
    ):
        dns.fail_next = [HttpError(status=502, body="bad gateway")]
        outcome = await reconciler.reconcile("A", NAME, "10.0.0.2", True, Deadline.after(10))
        assert outcome is ReconcileOutcome.CREATED

    @pytest.mark.asyncio
    async def test_converges_when_applied_twice(self, dns: FakeDns, reconciler: DnsReconciler):
        intent = DnsRecordIntent("CNAME", "*.apps.mycluster.example.com", NAME)
        await reconciler.apply(intent, Deadline.after(10))
        again = await reconciler.apply(intent, Deadline.after(10))
        assert again is ReconcileOutcome.UNCHANGED


class TestClusterIntents:
    def test_three_records(self):
        intents = cluster_intents("mycluster", "10.0.0.2", "example.com")
        assert [(i.type, i.name, i.content) for i in intents] == [
            ("A", "api.mycluster.example.com", "10.0.0.2"),
            ("A", "api-int.mycluster.example.com", "10.0.0.2"),
            ("CNAME", "*.apps.mycluster.example.com", "api.mycluster.example.com"),
        ]
        assert all(i.should_exist for i in intents)

    def test_removal(self):
        intents = cluster_intents("c", "ip", "d", should_exist=False)
        assert not any(i.should_exist for i in intents)
