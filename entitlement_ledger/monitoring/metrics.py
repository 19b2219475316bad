"""
Prometheus metrics for ledger monitoring.

Tracks:
- Settlements by status and currency, and their net amounts
- Entitlement grant retries and fatal payment/entitlement divergence
- Payout decisions
- Optimistic-concurrency conflicts
- Authorization denials
- Batch groups committed and failed
- Entitlements repaired by reconciliation
"""
from prometheus_client import Counter, Histogram

# Settlement metrics
settlements_total = Counter(
    "ledger_settlements_total",
    "Total settlement status changes",
    ["status", "currency"],
)

settlement_net_amount = Histogram(
    "ledger_settlement_net_amount",
    "Net settlement amounts in the currency's smallest unit",
    buckets=(500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 250000, 1000000),
)

entitlement_grant_retries_total = Counter(
    "ledger_entitlement_grant_retries_total",
    "Retried entitlement grants after a completed payment",
)

fatal_reconciliations_total = Counter(
    "ledger_fatal_reconciliations_total",
    "Payments collected without the entitlement being granted",
)

entitlements_repaired_total = Counter(
    "ledger_entitlements_repaired_total",
    "Purchase entitlements granted by reconciliation",
)

# Payout metrics
payout_decisions_total = Counter(
    "ledger_payout_decisions_total",
    "Total payout decisions",
    ["decision"],
)

# Concurrency and access metrics
optimistic_conflicts_total = Counter(
    "ledger_optimistic_conflicts_total",
    "Transitions rejected because another caller changed the record first",
    ["operation"],
)

authorization_denials_total = Counter(
    "ledger_authorization_denials_total",
    "Privileged calls denied by the authorization guard",
    ["required_role", "reason"],
)

# Batch metrics
batch_groups_total = Counter(
    "ledger_batch_groups_total",
    "Write groups by outcome",
    ["outcome"],  # committed, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_settlement(status: str, currency: str, net_amount: int = 0) -> None:
        """Record a settlement status change."""
        settlements_total.labels(status=status, currency=currency).inc()
        if status == "completed":
            settlement_net_amount.observe(net_amount)

    @staticmethod
    def record_grant_retry() -> None:
        entitlement_grant_retries_total.inc()

    @staticmethod
    def record_fatal_reconciliation() -> None:
        fatal_reconciliations_total.inc()

    @staticmethod
    def record_entitlements_repaired(count: int) -> None:
        entitlements_repaired_total.inc(count)

    @staticmethod
    def record_payout_decision(decision: str) -> None:
        payout_decisions_total.labels(decision=decision).inc()

    @staticmethod
    def record_conflict(operation: str) -> None:
        optimistic_conflicts_total.labels(operation=operation).inc()

    @staticmethod
    def record_authorization_denial(required_role: str, reason: str) -> None:
        authorization_denials_total.labels(required_role=required_role, reason=reason).inc()

    @staticmethod
    def record_batch_group(outcome: str) -> None:
        batch_groups_total.labels(outcome=outcome).inc()


# Export singleton instance
metrics = MetricsCollector()
