"""
Repair of payments that completed without granting access.

A ``FatalReconciliationError`` leaves a completed settlement with no
``entitlement_granted_at``. An admin runs the reconciler to grant those
purchase entitlements in batched groups. Each settlement's grant and its
marker land in the same group, so a rerun after a partial failure only
picks up what is still missing. The run as a whole is the audited action:
it writes one ``payment.reconciled`` record and no per-grant records.
"""
from typing import List

import structlog
from sqlalchemy import select, update

from entitlement_ledger.core.audit import AuditEventType, AuditLog
from entitlement_ledger.core.authorization import AuthorizationGuard
from entitlement_ledger.core.batch import BatchCoordinator, WriteGroup
from entitlement_ledger.core.entitlements import EntitlementStore
from entitlement_ledger.core.errors import BatchCommitError
from entitlement_ledger.database.models import (
    EntitlementSource,
    Role,
    Settlement,
    SettlementStatus,
)
from entitlement_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Superseded record, new generation and settlement marker.
OPS_PER_SETTLEMENT = 3


class EntitlementReconciler:
    def __init__(
        self,
        batches: BatchCoordinator,
        audit_log: AuditLog,
        guard: AuthorizationGuard,
        entitlements: EntitlementStore,
    ):
        self.batches = batches
        self.audit_log = audit_log
        self.guard = guard
        self.entitlements = entitlements

    async def pending(self) -> List[Settlement]:
        """Completed settlements whose purchase entitlement never landed."""
        stmt = (
            select(Settlement)
            .where(
                Settlement.status == SettlementStatus.COMPLETED.value,
                Settlement.entitlement_granted_at.is_(None),
            )
            .order_by(Settlement.completed_at)
        )
        async with self.batches.reading() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def reconcile(self, admin_id: str) -> int:
        """
        Grant every missing purchase entitlement.

        Returns:
            int: Number of settlements repaired

        Raises:
            UnauthorizedError: If ``admin_id`` is not an admin
            BatchCommitError: If a group failed; earlier groups stay applied
        """
        await self.guard.require(admin_id, Role.ADMIN)
        settlements = await self.pending()
        if not settlements:
            logger.info("reconciliation_nothing_to_do", admin_id=admin_id)
            return 0

        async def write_chunk(group: WriteGroup, chunk: List[Settlement]) -> None:
            now = self.entitlements.clock()
            for settlement in chunk:
                await self.entitlements.stage_grant(
                    group,
                    settlement.learner_id,
                    settlement.course_id,
                    EntitlementSource.PURCHASE,
                    granted_by=None,
                    settlement_id=settlement.id,
                    now=now,
                )
                await group.execute(
                    update(Settlement)
                    .where(
                        Settlement.id == settlement.id,
                        Settlement.entitlement_granted_at.is_(None),
                    )
                    .values(entitlement_granted_at=now)
                    .execution_options(synchronize_session=False)
                )

        failure = None
        try:
            repaired = await self.batches.run_batched(
                settlements, write_chunk, ops_per_item=OPS_PER_SETTLEMENT
            )
        except BatchCommitError as e:
            repaired = e.committed_items
            failure = e

        if repaired:
            metrics.record_entitlements_repaired(repaired)
        details = (
            f"Admin {admin_id} reconciled {repaired} of {len(settlements)} "
            f"completed payments missing course access"
        )
        if failure is not None:
            details += f"; stopped at group {failure.failed_group}"
        await self.audit_log.append(
            actor_id=admin_id,
            event_type=AuditEventType.PAYMENT_RECONCILED,
            target_type="settlement",
            target_id="*",
            details=details + ".",
        )
        logger.info(
            "reconciliation_finished",
            admin_id=admin_id,
            repaired=repaired,
            outstanding=len(settlements) - repaired,
        )

        if failure is not None:
            raise failure
        return repaired
