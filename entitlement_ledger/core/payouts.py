"""
Instructor payout requests.

Instructors request withdrawals for themselves; admins approve or reject
them. A decision re-reads the request and transitions it with a
conditional update, so two admins deciding the same request concurrently
get exactly one success and one ``ConflictError``.
"""
import enum
import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol

import structlog
from sqlalchemy import select, update

from entitlement_ledger.config import Settings, get_settings
from entitlement_ledger.core.audit import AuditEventType, AuditLog
from entitlement_ledger.core.authorization import AuthorizationGuard
from entitlement_ledger.core.batch import BatchCoordinator
from entitlement_ledger.core.errors import ConflictError, LedgerValidationError, NotFoundError
from entitlement_ledger.core.money import validate_amount, validate_currency
from entitlement_ledger.database.models import (
    PayoutRequest,
    PayoutStatus,
    Role,
    parse_record_id,
    utcnow,
)
from entitlement_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_PAYOUT_METHOD = "mobile_money"


class PayoutDecision(str, enum.Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class BalanceSource(Protocol):
    """Earnings collaborator that knows an instructor's available balance."""

    async def available_balance(self, instructor_id: str, currency: str) -> int:
        ...


class PayoutProcessor:
    """Accepts payout requests and records admin decisions on them."""

    def __init__(
        self,
        batches: BatchCoordinator,
        audit_log: AuditLog,
        guard: AuthorizationGuard,
        balance_source: Optional[BalanceSource] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.batches = batches
        self.audit_log = audit_log
        self.guard = guard
        self.balance_source = balance_source
        self.settings = settings or get_settings()
        self.clock = clock

    async def request(
        self,
        caller_id: str,
        instructor_id: str,
        amount: int,
        method: str = DEFAULT_PAYOUT_METHOD,
        currency: Optional[str] = None,
    ) -> PayoutRequest:
        """
        File a pending payout request.

        Args:
            caller_id: Authenticated subject; must be the instructor
            instructor_id: Instructor withdrawing earnings
            amount: Amount in the currency's smallest unit
            method: Payout channel
            currency: Optional currency (defaults to the configured one)

        Returns:
            PayoutRequest: The pending request

        Raises:
            UnauthorizedError: If the caller is not that instructor
            LedgerValidationError: On a bad amount or insufficient balance
        """
        await self.guard.require_self(caller_id, instructor_id, Role.INSTRUCTOR)
        validate_amount(amount)
        currency = validate_currency(currency or self.settings.default_currency)
        method = (method or "").strip()
        if not method:
            raise LedgerValidationError("Payout method is required")

        if self.balance_source is not None:
            available = await self.balance_source.available_balance(instructor_id, currency)
            if amount > available:
                raise LedgerValidationError(
                    f"Requested {amount} {currency} exceeds available balance of {available}",
                    instructor_id=instructor_id,
                )

        async with self.batches.atomic() as group:
            payout = PayoutRequest(
                id=uuid.uuid4(),
                instructor_id=instructor_id,
                amount=amount,
                currency=currency,
                method=method,
                status=PayoutStatus.PENDING.value,
                requested_at=self.clock(),
            )
            group.add(payout)

        logger.info(
            "payout_requested",
            payout_id=str(payout.id),
            instructor_id=instructor_id,
            amount=amount,
            currency=currency,
            method=method,
        )
        return payout

    async def get(self, payout_id: Any) -> PayoutRequest:
        pid = parse_record_id(payout_id, "Payout request")
        async with self.batches.reading() as session:
            payout = await session.get(PayoutRequest, pid)
        if payout is None:
            raise NotFoundError(f"Payout request {pid} not found", payout_id=str(pid))
        return payout

    async def list(
        self, instructor_id: Optional[str] = None, status: Optional[PayoutStatus] = None
    ) -> List[PayoutRequest]:
        stmt = select(PayoutRequest)
        if instructor_id is not None:
            stmt = stmt.where(PayoutRequest.instructor_id == instructor_id)
        if status is not None:
            stmt = stmt.where(PayoutRequest.status == PayoutStatus(status).value)
        stmt = stmt.order_by(PayoutRequest.requested_at.desc())
        async with self.batches.reading() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def decide(
        self,
        payout_id: Any,
        decision: PayoutDecision,
        admin_id: str,
        note: Optional[str] = None,
    ) -> PayoutRequest:
        """
        Approve or reject a pending payout request.

        Raises:
            UnauthorizedError: If ``admin_id`` is not an admin
            LedgerValidationError: On an unknown decision
            NotFoundError: If the request does not exist
            ConflictError: If the request is no longer pending
        """
        await self.guard.require(admin_id, Role.ADMIN)
        try:
            decision = PayoutDecision(decision)
        except ValueError as e:
            raise LedgerValidationError(f"Unknown payout decision: {decision!r}") from e
        pid = parse_record_id(payout_id, "Payout request")
        now = self.clock()

        async with self.batches.atomic() as group:
            payout = await group.session.get(PayoutRequest, pid)
            if payout is None:
                raise NotFoundError(f"Payout request {pid} not found", payout_id=str(pid))
            if payout.status != PayoutStatus.PENDING.value:
                metrics.record_conflict("payout_decide")
                raise ConflictError(
                    f"Payout request {pid} was already {payout.status}",
                    payout_id=str(pid),
                    current_status=payout.status,
                )

            result = await group.execute(
                update(PayoutRequest)
                .where(
                    PayoutRequest.id == pid,
                    PayoutRequest.status == PayoutStatus.PENDING.value,
                )
                .values(
                    status=decision.value,
                    decided_by=admin_id,
                    decided_at=now,
                    decision_note=note,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                metrics.record_conflict("payout_decide")
                raise ConflictError(
                    f"Payout request {pid} was decided concurrently", payout_id=str(pid)
                )

            details = (
                f"Payout {pid} of {payout.amount} {payout.currency} via {payout.method} "
                f"for instructor {payout.instructor_id} {decision.value} by admin {admin_id}"
            )
            if note:
                details += f". Note: {note}"
            self.audit_log.record(
                group,
                actor_id=admin_id,
                event_type=AuditEventType.PAYOUT_PROCESS,
                target_type="payout_request",
                target_id=str(pid),
                details=details + ".",
            )

        payout.status = decision.value
        payout.decided_by = admin_id
        payout.decided_at = now
        payout.decision_note = note
        metrics.record_payout_decision(decision.value)
        logger.info(
            "payout_decided",
            payout_id=str(pid),
            decision=decision.value,
            admin_id=admin_id,
        )
        return payout
