"""
Learner access rights to courses.

Every read applies lazy expiry: a record whose ``expires_at`` has passed is
reported as expired regardless of its stored status. No background sweep
exists.

Records are never deleted. Re-granting an active entitlement refreshes it in
place; re-granting an expired or revoked one inserts the next generation.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entitlement_ledger.core.audit import SYSTEM_ACTOR, AuditEventType, AuditLog
from entitlement_ledger.core.authorization import AuthorizationGuard
from entitlement_ledger.core.batch import BatchCoordinator, WriteGroup
from entitlement_ledger.core.errors import (
    BatchCommitError,
    ConflictError,
    LedgerValidationError,
    NotFoundError,
)
from entitlement_ledger.database.models import (
    Entitlement,
    EntitlementSource,
    EntitlementStatus,
    Role,
    utcnow,
)

logger = structlog.get_logger(__name__)


def entitlement_key(learner_id: str, course_id: str) -> str:
    """Composite identity used as the audit target for an entitlement."""
    return f"{learner_id}:{course_id}"


@dataclass(frozen=True)
class EntitlementView:
    """An entitlement as readers see it, with lazy expiry applied."""

    learner_id: str
    course_id: str
    status: EntitlementStatus
    source: EntitlementSource
    generation: int
    granted_at: datetime
    expires_at: Optional[datetime]
    granted_by: Optional[str]
    revoked_at: Optional[datetime]
    revoked_by: Optional[str]
    progress_percent: int
    settlement_id: Optional[uuid.UUID] = None

    @property
    def is_active(self) -> bool:
        return self.status is EntitlementStatus.ACTIVE

    @classmethod
    def from_record(cls, record: Entitlement, now: datetime) -> "EntitlementView":
        return cls(
            learner_id=record.learner_id,
            course_id=record.course_id,
            status=record.effective_status(now),
            source=EntitlementSource(record.source),
            generation=record.generation,
            granted_at=record.granted_at,
            expires_at=record.expires_at,
            granted_by=record.granted_by,
            revoked_at=record.revoked_at,
            revoked_by=record.revoked_by,
            progress_percent=record.progress_percent,
            settlement_id=record.settlement_id,
        )


class EntitlementStore:
    """Grants, revokes and reads learner entitlements."""

    def __init__(
        self,
        batches: BatchCoordinator,
        audit_log: AuditLog,
        guard: AuthorizationGuard,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.batches = batches
        self.audit_log = audit_log
        self.guard = guard
        self.clock = clock

    @staticmethod
    async def _current(
        session: AsyncSession, learner_id: str, course_id: str
    ) -> Optional[Entitlement]:
        stmt = (
            select(Entitlement)
            .where(Entitlement.learner_id == learner_id, Entitlement.course_id == course_id)
            .order_by(Entitlement.generation.desc())
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _validate_grant(
        self,
        learner_id: str,
        course_id: str,
        source: EntitlementSource,
        expires_at: Optional[datetime],
        now: datetime,
    ) -> None:
        if not learner_id or not course_id:
            raise LedgerValidationError("Learner id and course id are required")
        if source is EntitlementSource.TRIAL and expires_at is None:
            raise LedgerValidationError("A trial entitlement requires an expiry")
        if expires_at is not None:
            if expires_at.tzinfo is None:
                raise LedgerValidationError("Expiry must be timezone-aware")
            if expires_at <= now:
                raise LedgerValidationError("Expiry must be in the future")

    async def stage_grant(
        self,
        group: WriteGroup,
        learner_id: str,
        course_id: str,
        source: EntitlementSource,
        granted_by: Optional[str],
        expires_at: Optional[datetime] = None,
        settlement_id=None,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """
        Stage an idempotent grant in an open write group.

        An active record is refreshed in place. A non-purchase grant never
        shortens or replaces an active purchased entitlement. An expired or
        revoked record is superseded by the next generation.
        """
        now = now or self.clock()
        source = EntitlementSource(source)
        current = await self._current(group.session, learner_id, course_id)

        if current is not None and current.effective_status(now) is EntitlementStatus.ACTIVE:
            if (
                current.source == EntitlementSource.PURCHASE.value
                and source is not EntitlementSource.PURCHASE
            ):
                logger.info(
                    "entitlement_grant_kept_purchase",
                    learner_id=learner_id,
                    course_id=course_id,
                )
                return current

            current.granted_at = now
            current.expires_at = expires_at
            current.source = source.value
            current.granted_by = granted_by
            if settlement_id is not None:
                current.settlement_id = settlement_id
            group.add(current)
            logger.info(
                "entitlement_refreshed",
                learner_id=learner_id,
                course_id=course_id,
                generation=current.generation,
                source=source.value,
            )
            return current

        generation = 1
        if current is not None:
            generation = current.generation + 1
            if current.status == EntitlementStatus.ACTIVE.value:
                # Materialize the lazily derived expiry on the superseded record.
                current.status = EntitlementStatus.EXPIRED.value
                group.add(current)

        record = Entitlement(
            learner_id=learner_id,
            course_id=course_id,
            generation=generation,
            status=EntitlementStatus.ACTIVE.value,
            source=source.value,
            granted_at=now,
            expires_at=expires_at,
            granted_by=granted_by,
            settlement_id=settlement_id,
            progress_percent=0,
        )
        group.add(record)
        await group.flush()
        logger.info(
            "entitlement_created",
            learner_id=learner_id,
            course_id=course_id,
            generation=generation,
            source=source.value,
        )
        return record

    async def stage_purchase_grant(
        self,
        group: WriteGroup,
        learner_id: str,
        course_id: str,
        settlement_id,
        now: Optional[datetime] = None,
    ) -> Entitlement:
        """Stage the entitlement a completed settlement pays for, with its audit record."""
        record = await self.stage_grant(
            group,
            learner_id,
            course_id,
            source=EntitlementSource.PURCHASE,
            granted_by=None,
            expires_at=None,
            settlement_id=settlement_id,
            now=now,
        )
        self.audit_log.record(
            group,
            actor_id=SYSTEM_ACTOR,
            event_type=AuditEventType.COURSE_GRANT,
            target_type="entitlement",
            target_id=entitlement_key(learner_id, course_id),
            details=f"Access granted by purchase (settlement {settlement_id}).",
        )
        return record

    async def grant(
        self,
        learner_id: str,
        course_id: str,
        granted_by: str,
        source: EntitlementSource = EntitlementSource.ADMIN_GRANT,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> EntitlementView:
        """
        Grant a learner access to a course on an admin's authority.

        Writes the entitlement and one ``course.grant`` audit record in a
        single atomic group.

        Args:
            learner_id: Learner receiving access
            course_id: Course being granted
            granted_by: Admin performing the grant
            source: ``admin_grant`` or ``trial``
            expires_at: Optional aware expiry (required for trials)
            reason: Optional free-text reason for the audit trail

        Returns:
            EntitlementView: The resulting entitlement

        Raises:
            UnauthorizedError: If ``granted_by`` is not an admin
            LedgerValidationError: On malformed input or ``source=purchase``
            ConflictError: If a concurrent grant created the same generation
        """
        source = EntitlementSource(source)
        if source is EntitlementSource.PURCHASE:
            raise LedgerValidationError("Purchase entitlements are issued by settlement only")
        await self.guard.require(granted_by, Role.ADMIN)

        now = self.clock()
        self._validate_grant(learner_id, course_id, source, expires_at, now)

        details = f"Access to course {course_id} granted to {learner_id} ({source.value}) by admin {granted_by}"
        if expires_at is not None:
            details += f", expires {expires_at.isoformat()}"
        if reason:
            details += f". Reason: {reason}"

        try:
            async with self.batches.atomic() as group:
                record = await self.stage_grant(
                    group, learner_id, course_id, source, granted_by, expires_at, now=now
                )
                self.audit_log.record(
                    group,
                    actor_id=granted_by,
                    event_type=AuditEventType.COURSE_GRANT,
                    target_type="entitlement",
                    target_id=entitlement_key(learner_id, course_id),
                    details=details + ".",
                )
                view = EntitlementView.from_record(record, now)
        except IntegrityError as e:
            raise ConflictError(
                f"Concurrent grant for {entitlement_key(learner_id, course_id)}: {e}",
                learner_id=learner_id,
                course_id=course_id,
            ) from e

        return view

    async def stage_revoke(
        self,
        group: WriteGroup,
        learner_id: str,
        course_id: str,
        revoked_by: str,
        now: Optional[datetime] = None,
        missing_ok: bool = False,
        settlement_id=None,
    ) -> bool:
        """
        Stage a revocation in an open write group.

        With ``settlement_id`` only a purchase made by that settlement is
        revoked; access backed by another payment or grant is left alone.

        Returns:
            bool: False if there was nothing to change

        Raises:
            NotFoundError: If no entitlement exists and ``missing_ok`` is False
        """
        now = now or self.clock()
        current = await self._current(group.session, learner_id, course_id)
        if current is None:
            if missing_ok:
                return False
            raise NotFoundError(
                f"No entitlement for {entitlement_key(learner_id, course_id)}",
                learner_id=learner_id,
                course_id=course_id,
            )
        if current.status == EntitlementStatus.REVOKED.value:
            return False
        if settlement_id is not None and (
            current.source != EntitlementSource.PURCHASE.value
            or current.settlement_id != settlement_id
        ):
            logger.info(
                "entitlement_revoke_skipped",
                learner_id=learner_id,
                course_id=course_id,
                generation=current.generation,
                source=current.source,
                settlement_id=str(settlement_id),
            )
            return False

        current.status = EntitlementStatus.REVOKED.value
        current.revoked_at = now
        current.revoked_by = revoked_by
        group.add(current)
        logger.info(
            "entitlement_revoked",
            learner_id=learner_id,
            course_id=course_id,
            generation=current.generation,
            revoked_by=revoked_by,
        )
        return True

    async def revoke(
        self,
        learner_id: str,
        course_id: str,
        revoked_by: str,
        reason: Optional[str] = None,
    ) -> None:
        """
        Revoke a learner's access. Revoking a revoked entitlement is a no-op.

        Raises:
            UnauthorizedError: If ``revoked_by`` is not an admin
            NotFoundError: If the learner never had the course
        """
        await self.guard.require(revoked_by, Role.ADMIN)
        now = self.clock()

        details = f"Access to course {course_id} revoked for {learner_id} by admin {revoked_by}"
        if reason:
            details += f". Reason: {reason}"

        async with self.batches.atomic() as group:
            changed = await self.stage_revoke(group, learner_id, course_id, revoked_by, now=now)
            if changed:
                self.audit_log.record(
                    group,
                    actor_id=revoked_by,
                    event_type=AuditEventType.COURSE_REVOKE,
                    target_type="entitlement",
                    target_id=entitlement_key(learner_id, course_id),
                    details=details + ".",
                )

        if not changed:
            logger.info("entitlement_revoke_noop", learner_id=learner_id, course_id=course_id)

    async def bulk_grant(
        self,
        learner_ids: Sequence[str],
        course_id: str,
        granted_by: str,
        source: EntitlementSource = EntitlementSource.ADMIN_GRANT,
        expires_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Grant one course to many learners through sequential write groups.

        Per-learner grants are idempotent, so re-running after a partial
        failure converges. One ``course.bulk_grant`` audit record is written
        per call, after the groups, stating how many learners were committed.

        Returns:
            int: Number of learners committed

        Raises:
            BatchCommitError: If a group failed; earlier groups stay applied
        """
        source = EntitlementSource(source)
        if source is EntitlementSource.PURCHASE:
            raise LedgerValidationError("Purchase entitlements are issued by settlement only")
        await self.guard.require(granted_by, Role.ADMIN)

        now = self.clock()
        learners = list(dict.fromkeys(learner_ids))
        if not learners:
            raise LedgerValidationError("At least one learner is required")
        for learner_id in learners:
            self._validate_grant(learner_id, course_id, source, expires_at, now)

        async def write_chunk(group: WriteGroup, chunk: List[str]) -> None:
            for learner_id in chunk:
                await self.stage_grant(
                    group, learner_id, course_id, source, granted_by, expires_at, now=now
                )

        failure: Optional[BatchCommitError] = None
        try:
            # Superseding an expired record and inserting its successor is two writes.
            committed = await self.batches.run_batched(learners, write_chunk, ops_per_item=2)
        except BatchCommitError as e:
            committed = e.committed_items
            failure = e

        details = (
            f"{committed} of {len(learners)} learners granted access to course {course_id} "
            f"({source.value}) by admin {granted_by}"
        )
        if failure is not None:
            details += f"; stopped at group {failure.failed_group}"
        if reason:
            details += f". Reason: {reason}"
        await self.audit_log.append(
            actor_id=granted_by,
            event_type=AuditEventType.COURSE_BULK_GRANT,
            target_type="course",
            target_id=course_id,
            details=details + ".",
        )

        if failure is not None:
            raise failure
        return committed

    async def is_active(self, learner_id: str, course_id: str) -> bool:
        """Whether the learner can access the course right now. Not audited."""
        now = self.clock()
        async with self.batches.reading() as session:
            current = await self._current(session, learner_id, course_id)
            if current is None:
                return False
            return current.effective_status(now) is EntitlementStatus.ACTIVE

    async def get(self, learner_id: str, course_id: str) -> EntitlementView:
        now = self.clock()
        async with self.batches.reading() as session:
            current = await self._current(session, learner_id, course_id)
            if current is None:
                raise NotFoundError(
                    f"No entitlement for {entitlement_key(learner_id, course_id)}",
                    learner_id=learner_id,
                    course_id=course_id,
                )
            return EntitlementView.from_record(current, now)

    async def list_for_learner(self, learner_id: str) -> List[EntitlementView]:
        """Current entitlement per course for one learner."""
        now = self.clock()
        stmt = (
            select(Entitlement)
            .where(Entitlement.learner_id == learner_id)
            .order_by(Entitlement.course_id, Entitlement.generation.desc())
        )
        async with self.batches.reading() as session:
            result = await session.execute(stmt)
            records = result.scalars().all()

        views: List[EntitlementView] = []
        seen = set()
        for record in records:
            if record.course_id in seen:
                continue
            seen.add(record.course_id)
            views.append(EntitlementView.from_record(record, now))
        return views

    async def history(self, learner_id: str, course_id: str) -> List[EntitlementView]:
        """Every generation for one (learner, course), newest first."""
        now = self.clock()
        stmt = (
            select(Entitlement)
            .where(Entitlement.learner_id == learner_id, Entitlement.course_id == course_id)
            .order_by(Entitlement.generation.desc())
        )
        async with self.batches.reading() as session:
            result = await session.execute(stmt)
            return [EntitlementView.from_record(r, now) for r in result.scalars().all()]
