from bastionctl.dns.reconciler import (
    DnsPolicy,
    DnsReconciler,
    DnsRecordIntent,
    DnsState,
    ReconcileOutcome,
    cluster_intents,
)

__all__ = [
    "DnsPolicy",
    "DnsReconciler",
    "DnsRecordIntent",
    "DnsState",
    "ReconcileOutcome",
    "cluster_intents",
]
