"""
Settlement ledger: payment attempts, their outcomes, refunds and fraud review.

Status moves forward only::

    pending -> completed | failed
    completed -> refunded

Each transition is a conditional ``UPDATE ... WHERE status = <from>``. The
row count decides the winner, so a duplicate provider callback can never
complete a settlement twice.

Confirming a successful payment grants the purchased entitlement. That
grant is the one step retried internally: a learner who has paid must not
stay locked out. When the retries are exhausted the settlement stays
completed, a ``payment.reconciliation_required`` audit record is written,
and ``FatalReconciliationError`` is raised for the operator.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from entitlement_ledger.config import Settings, get_settings
from entitlement_ledger.core.audit import SYSTEM_ACTOR, AuditEventType, AuditLog
from entitlement_ledger.core.authorization import AuthorizationGuard
from entitlement_ledger.core.batch import BatchCoordinator, WriteGroup
from entitlement_ledger.core.entitlements import EntitlementStore
from entitlement_ledger.core.errors import (
    ConflictError,
    FatalReconciliationError,
    InvalidTransitionError,
    LedgerValidationError,
    NotFoundError,
)
from entitlement_ledger.core.money import validate_amount, validate_currency
from entitlement_ledger.core.promotions import PromotionEngine
from entitlement_ledger.database.models import (
    Role,
    Settlement,
    SettlementStatus,
    parse_record_id,
    utcnow,
)
from entitlement_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Failures worth another attempt at the purchase grant.
RETRYABLE_GRANT_ERRORS = (SQLAlchemyError, ConflictError, OSError)


@dataclass(frozen=True)
class ProviderResult:
    """Outcome reported by the payment provider's callback."""

    success: bool
    provider_transaction_id: str
    failure_reason: Optional[str] = None


class SettlementLedger:
    """Records payment attempts and drives their status machine."""

    def __init__(
        self,
        batches: BatchCoordinator,
        audit_log: AuditLog,
        guard: AuthorizationGuard,
        entitlements: EntitlementStore,
        promotions: PromotionEngine,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.batches = batches
        self.audit_log = audit_log
        self.guard = guard
        self.entitlements = entitlements
        self.promotions = promotions
        self.settings = settings or get_settings()
        self.clock = clock

    async def initiate(
        self,
        learner_id: str,
        course_id: str,
        instructor_id: str,
        gross_amount: int,
        promo_code: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Settlement:
        """
        Record a new pending payment attempt.

        An invalid, inactive or expired promo code does not fail the
        purchase: the settlement proceeds at full price.

        Args:
            learner_id: Paying learner
            course_id: Course being bought
            instructor_id: Instructor credited with the sale
            gross_amount: Price in the currency's smallest unit
            promo_code: Optional promo code
            currency: Optional currency (defaults to the configured one)

        Returns:
            Settlement: The pending settlement

        Raises:
            LedgerValidationError: On malformed input
        """
        if not learner_id or not course_id or not instructor_id:
            raise LedgerValidationError("Learner, course and instructor ids are required")
        validate_amount(gross_amount, "Gross amount")
        currency = validate_currency(currency or self.settings.default_currency)

        discount_percent = 0
        applied_code: Optional[str] = None
        if promo_code:
            resolution = await self.promotions.resolve(promo_code)
            if resolution.is_valid:
                discount_percent = resolution.discount_percent
                applied_code = resolution.code
            else:
                logger.info(
                    "promo_code_ignored",
                    code=resolution.code,
                    reason=resolution.reason,
                    learner_id=learner_id,
                )

        now = self.clock()
        async with self.batches.atomic() as group:
            settlement = Settlement(
                id=uuid.uuid4(),
                learner_id=learner_id,
                course_id=course_id,
                instructor_id=instructor_id,
                gross_amount=gross_amount,
                discount_percent=discount_percent,
                promo_code=applied_code,
                currency=currency,
                status=SettlementStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            group.add(settlement)

        metrics.record_settlement(SettlementStatus.PENDING.value, currency)
        logger.info(
            "settlement_initiated",
            settlement_id=str(settlement.id),
            learner_id=learner_id,
            course_id=course_id,
            gross_amount=gross_amount,
            discount_percent=discount_percent,
            net_amount=settlement.net_amount,
        )
        return settlement

    async def get(self, settlement_id: Any) -> Settlement:
        sid = parse_record_id(settlement_id, "Settlement")
        async with self.batches.reading() as session:
            settlement = await session.get(Settlement, sid)
        if settlement is None:
            raise NotFoundError(f"Settlement {sid} not found", settlement_id=str(sid))
        return settlement

    async def _transition(
        self,
        group: WriteGroup,
        sid: uuid.UUID,
        from_status: SettlementStatus,
        to_status: SettlementStatus,
        values: Dict[str, Any],
    ) -> Settlement:
        """
        Move a settlement from ``from_status`` to ``to_status`` or raise.

        Raises:
            NotFoundError: If the settlement does not exist
            InvalidTransitionError: If it is not in ``from_status``
        """
        stmt = (
            update(Settlement)
            .where(Settlement.id == sid, Settlement.status == from_status.value)
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        result = await group.execute(stmt)
        settlement = await self._load(group.session, sid)
        if result.rowcount != 1:
            raise InvalidTransitionError(
                f"Settlement {sid} is {settlement.status}; cannot move to {to_status.value}",
                settlement_id=str(sid),
                current_status=settlement.status,
            )
        return settlement

    @staticmethod
    async def _load(session: AsyncSession, sid: uuid.UUID) -> Settlement:
        settlement = await session.get(Settlement, sid, populate_existing=True)
        if settlement is None:
            raise NotFoundError(f"Settlement {sid} not found", settlement_id=str(sid))
        return settlement

    async def confirm(self, settlement_id: Any, provider_result: ProviderResult) -> Settlement:
        """
        Apply the payment provider's outcome to a pending settlement.

        On success the purchased entitlement is granted, retrying with
        bounded backoff. No audit record is written for a routine purchase
        beyond the entitlement's own ``course.grant``.

        Raises:
            NotFoundError: If the settlement does not exist
            InvalidTransitionError: If it is no longer pending
            FatalReconciliationError: If the payment completed but the
                entitlement could not be granted
        """
        sid = parse_record_id(settlement_id, "Settlement")
        if not provider_result.provider_transaction_id:
            raise LedgerValidationError("Provider transaction id is required")

        now = self.clock()
        if provider_result.success:
            target = SettlementStatus.COMPLETED
            values: Dict[str, Any] = {"completed_at": now}
        else:
            target = SettlementStatus.FAILED
            values = {"failure_reason": provider_result.failure_reason}
        values.update(
            provider_transaction_id=provider_result.provider_transaction_id,
            updated_at=now,
        )

        async with self.batches.atomic() as group:
            settlement = await self._transition(
                group, sid, SettlementStatus.PENDING, target, values
            )

        metrics.record_settlement(target.value, settlement.currency, settlement.net_amount)
        logger.info(
            "settlement_confirmed",
            settlement_id=str(sid),
            status=target.value,
            provider_transaction_id=provider_result.provider_transaction_id,
        )

        if target is SettlementStatus.COMPLETED:
            await self._grant_purchased_access(settlement)

        return await self.get(sid)

    async def _apply_purchase_grant(self, settlement: Settlement) -> None:
        now = self.clock()
        async with self.batches.atomic() as group:
            await self.entitlements.stage_purchase_grant(
                group,
                settlement.learner_id,
                settlement.course_id,
                settlement.id,
                now=now,
            )
            await group.execute(
                update(Settlement)
                .where(Settlement.id == settlement.id)
                .values(entitlement_granted_at=now)
                .execution_options(synchronize_session=False)
            )

    @staticmethod
    def _log_grant_retry(retry_state: RetryCallState) -> None:
        metrics.record_grant_retry()
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "purchase_grant_retry",
            attempt=retry_state.attempt_number,
            error=str(error),
        )

    async def _grant_purchased_access(self, settlement: Settlement) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.grant_retry_max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.grant_retry_base_delay,
                max=self.settings.grant_retry_max_delay,
            ),
            retry=retry_if_exception_type(RETRYABLE_GRANT_ERRORS),
            before_sleep=self._log_grant_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._apply_purchase_grant(settlement)
        except Exception as e:
            await self._escalate_unfulfilled_payment(settlement, e)

        logger.info(
            "purchase_entitlement_granted",
            settlement_id=str(settlement.id),
            learner_id=settlement.learner_id,
            course_id=settlement.course_id,
        )

    async def _escalate_unfulfilled_payment(self, settlement: Settlement, error: Exception) -> None:
        metrics.record_fatal_reconciliation()
        logger.error(
            "purchase_entitlement_grant_failed",
            settlement_id=str(settlement.id),
            learner_id=settlement.learner_id,
            course_id=settlement.course_id,
            attempts=self.settings.grant_retry_max_attempts,
            error=str(error),
        )
        try:
            await self.audit_log.append(
                actor_id=SYSTEM_ACTOR,
                event_type=AuditEventType.PAYMENT_RECONCILIATION_REQUIRED,
                target_type="settlement",
                target_id=str(settlement.id),
                details=(
                    f"Payment {settlement.id} completed but access to course "
                    f"{settlement.course_id} could not be granted to {settlement.learner_id} "
                    f"after {self.settings.grant_retry_max_attempts} attempts: {error}"
                ),
            )
        except Exception as audit_error:
            logger.critical(
                "reconciliation_audit_write_failed",
                settlement_id=str(settlement.id),
                error=str(audit_error),
            )
        raise FatalReconciliationError(
            f"Settlement {settlement.id} completed without entitlement: {error}",
            settlement_id=str(settlement.id),
        ) from error

    async def flag_fraud(
        self, settlement_id: Any, risk_score: int, reason: Optional[str] = None
    ) -> Settlement:
        """
        Record a fraud score from the scoring collaborator.

        Machine-originated, so no role check. A fresh score resets the
        review state.
        """
        sid = parse_record_id(settlement_id, "Settlement")
        if isinstance(risk_score, bool) or not isinstance(risk_score, int):
            raise LedgerValidationError("Risk score must be an integer")
        if not 0 <= risk_score <= 100:
            raise LedgerValidationError("Risk score must be between 0 and 100")

        is_suspicious = risk_score >= self.settings.fraud_suspicion_threshold
        now = self.clock()
        async with self.batches.atomic() as group:
            settlement = await self._load(group.session, sid)
            settlement.risk_score = risk_score
            settlement.risk_reason = reason
            settlement.risk_checked_at = now
            settlement.is_suspicious = is_suspicious
            settlement.reviewed = False
            settlement.reviewed_by = None
            settlement.reviewed_at = None
            group.add(settlement)

        log = logger.warning if is_suspicious else logger.info
        log(
            "settlement_fraud_scored",
            settlement_id=str(sid),
            risk_score=risk_score,
            is_suspicious=is_suspicious,
        )
        return settlement

    async def resolve_fraud(self, settlement_id: Any, admin_id: str) -> None:
        """
        Mark a suspicious settlement as reviewed.

        Resolving an already reviewed flag is a no-op.

        Raises:
            UnauthorizedError: If ``admin_id`` is not an admin
            NotFoundError: If the settlement does not exist
            InvalidTransitionError: If the settlement was never flagged
        """
        await self.guard.require(admin_id, Role.ADMIN)
        sid = parse_record_id(settlement_id, "Settlement")
        now = self.clock()

        async with self.batches.atomic() as group:
            settlement = await self._load(group.session, sid)
            if not settlement.is_suspicious:
                raise InvalidTransitionError(
                    f"Settlement {sid} is not flagged for review", settlement_id=str(sid)
                )
            if settlement.reviewed:
                logger.info("fraud_resolve_noop", settlement_id=str(sid), admin_id=admin_id)
                return

            result = await group.execute(
                update(Settlement)
                .where(Settlement.id == sid, Settlement.reviewed.is_(False))
                .values(reviewed=True, reviewed_by=admin_id, reviewed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info("fraud_resolve_noop", settlement_id=str(sid), admin_id=admin_id)
                return

            self.audit_log.record(
                group,
                actor_id=admin_id,
                event_type=AuditEventType.SECURITY_RESOLVE,
                target_type="settlement",
                target_id=str(sid),
                details=(
                    f"Admin {admin_id} resolved fraud alert on payment {sid} "
                    f"(risk score {settlement.risk_score})."
                ),
            )

        logger.info("fraud_resolved", settlement_id=str(sid), admin_id=admin_id)

    async def refund(self, settlement_id: Any, admin_id: str, reason: Optional[str] = None) -> None:
        """
        Refund a completed settlement and revoke the access it bought.

        Access granted by a later payment or by an admin is kept. The status
        change, the revocation and one ``payment.refund`` audit
        record commit together.

        Raises:
            UnauthorizedError: If ``admin_id`` is not an admin
            NotFoundError: If the settlement does not exist
            InvalidTransitionError: If the settlement is not completed
        """
        await self.guard.require(admin_id, Role.ADMIN)
        sid = parse_record_id(settlement_id, "Settlement")
        now = self.clock()

        async with self.batches.atomic() as group:
            settlement = await self._transition(
                group,
                sid,
                SettlementStatus.COMPLETED,
                SettlementStatus.REFUNDED,
                {"refunded_at": now, "updated_at": now},
            )
            revoked = await self.entitlements.stage_revoke(
                group,
                settlement.learner_id,
                settlement.course_id,
                revoked_by=admin_id,
                now=now,
                missing_ok=True,
                settlement_id=sid,
            )
            access = (
                "revoked"
                if revoked
                else "left unchanged (no active access bought by this payment)"
            )
            details = (
                f"Payment {sid} of {settlement.net_amount} {settlement.currency} refunded by "
                f"admin {admin_id}; access to course {settlement.course_id} "
                f"{access} for {settlement.learner_id}"
            )
            if reason:
                details += f". Reason: {reason}"
            self.audit_log.record(
                group,
                actor_id=admin_id,
                event_type=AuditEventType.PAYMENT_REFUND,
                target_type="settlement",
                target_id=str(sid),
                details=details + ".",
            )

        metrics.record_settlement(SettlementStatus.REFUNDED.value, settlement.currency)
        logger.info(
            "settlement_refunded",
            settlement_id=str(sid),
            admin_id=admin_id,
            entitlement_revoked=revoked,
        )
