"""Wiring of the ledger components around one session factory."""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from entitlement_ledger.config import Settings, get_settings
from entitlement_ledger.core.accounts import AccountDirectory
from entitlement_ledger.core.audit import AuditLog
from entitlement_ledger.core.authorization import AuthorizationGuard, RoleSource
from entitlement_ledger.core.batch import BatchCoordinator
from entitlement_ledger.core.entitlements import EntitlementStore
from entitlement_ledger.core.payouts import BalanceSource, PayoutProcessor
from entitlement_ledger.core.promotions import PromotionEngine
from entitlement_ledger.core.reconciliation import EntitlementReconciler
from entitlement_ledger.core.settlements import SettlementLedger


@dataclass
class LedgerServices:
    settings: Settings
    batches: BatchCoordinator
    audit_log: AuditLog
    accounts: AccountDirectory
    guard: AuthorizationGuard
    entitlements: EntitlementStore
    promotions: PromotionEngine
    settlements: SettlementLedger
    payouts: PayoutProcessor
    reconciler: EntitlementReconciler


def build_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    settings: Optional[Settings] = None,
    role_source: Optional[RoleSource] = None,
    balance_source: Optional[BalanceSource] = None,
) -> LedgerServices:
    """
    Build every component against one storage backend.

    Args:
        session_factory: Optional session factory (defaults to the global one)
        settings: Optional settings (defaults to the cached settings)
        role_source: Optional role lookup replacing the account directory
        balance_source: Optional instructor balance lookup for payouts

    Returns:
        LedgerServices: The wired components
    """
    settings = settings or get_settings()
    batches = BatchCoordinator(session_factory, settings)
    audit_log = AuditLog(batches)
    if role_source is None:
        accounts = AccountDirectory(batches, audit_log)
        guard = accounts.guard
    else:
        guard = AuthorizationGuard(role_source)
        accounts = AccountDirectory(batches, audit_log, guard)

    entitlements = EntitlementStore(batches, audit_log, guard)
    promotions = PromotionEngine(batches, guard, audit_log, settings)
    settlements = SettlementLedger(
        batches, audit_log, guard, entitlements, promotions, settings
    )
    payouts = PayoutProcessor(batches, audit_log, guard, balance_source, settings)
    reconciler = EntitlementReconciler(batches, audit_log, guard, entitlements)

    return LedgerServices(
        settings=settings,
        batches=batches,
        audit_log=audit_log,
        accounts=accounts,
        guard=guard,
        entitlements=entitlements,
        promotions=promotions,
        settlements=settlements,
        payouts=payouts,
        reconciler=reconciler,
    )
