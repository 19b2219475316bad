"""
Append-only administrative audit trail.

One record per logical caller action, written inside the same write group
as the mutation it describes, so the record exists if and only if the
mutation committed.
"""
import enum
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import select

from entitlement_ledger.core.batch import BatchCoordinator, WriteGroup
from entitlement_ledger.database.models import AuditRecord, utcnow

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"


class AuditEventType(str, enum.Enum):
    """Closed taxonomy of audited events."""

    USER_STATUS_UPDATE = "user.status.update"
    USER_ROLE_UPDATE = "user.role.update"
    COURSE_GRANT = "course.grant"
    COURSE_BULK_GRANT = "course.bulk_grant"
    COURSE_REVOKE = "course.revoke"
    PAYMENT_REFUND = "payment.refund"
    PAYMENT_RECONCILIATION_REQUIRED = "payment.reconciliation_required"
    PAYMENT_RECONCILED = "payment.reconciled"
    PAYOUT_PROCESS = "payout.process"
    SECURITY_RESOLVE = "security.resolve"
    # Reserved: promo toggles are not audited unless promo_toggle_audited is set.
    PROMO_TOGGLE = "promo.toggle"


class AuditLog:
    """Writes and reads audit records."""

    def __init__(self, batches: BatchCoordinator):
        self.batches = batches

    def record(
        self,
        group: WriteGroup,
        actor_id: str,
        event_type: AuditEventType,
        target_type: str,
        target_id: str,
        details: str,
    ) -> AuditRecord:
        """
        Stage one audit record in an open write group.

        Args:
            group: Write group carrying the audited mutation
            actor_id: Who performed the action
            event_type: Event from the closed taxonomy
            target_type: Kind of entity acted upon
            target_id: Identity of that entity
            details: Human-readable description

        Returns:
            AuditRecord: The staged record
        """
        entry = AuditRecord(
            actor_id=actor_id,
            event_type=AuditEventType(event_type).value,
            target_type=target_type,
            target_id=target_id,
            details=details,
            timestamp=utcnow(),
        )
        group.add(entry)
        logger.info(
            "audit_record_staged",
            actor_id=actor_id,
            event_type=entry.event_type,
            target_type=target_type,
            target_id=target_id,
        )
        return entry

    async def append(
        self,
        actor_id: str,
        event_type: AuditEventType,
        target_type: str,
        target_id: str,
        details: str,
    ) -> AuditRecord:
        """Write a standalone audit record in its own group."""
        async with self.batches.atomic() as group:
            return self.record(group, actor_id, event_type, target_type, target_id, details)

    async def list(
        self,
        actor_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """Audit records matching the filters, newest first."""
        stmt = select(AuditRecord)
        if actor_id is not None:
            stmt = stmt.where(AuditRecord.actor_id == actor_id)
        if event_type is not None:
            stmt = stmt.where(AuditRecord.event_type == AuditEventType(event_type).value)
        if target_type is not None:
            stmt = stmt.where(AuditRecord.target_type == target_type)
        if target_id is not None:
            stmt = stmt.where(AuditRecord.target_id == target_id)
        stmt = stmt.order_by(AuditRecord.timestamp.desc()).limit(limit)

        async with self.batches.reading() as session:
            result = await session.execute(stmt)
            records: Sequence[AuditRecord] = result.scalars().all()
        return list(records)
