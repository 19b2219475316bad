"""
Tests for instructor payout requests and admin decisions.
"""
import uuid
from typing import Any

import pytest

from entitlement_ledger.core.audit import AuditEventType
from entitlement_ledger.core.errors import (
    ConflictError,
    LedgerValidationError,
    NotFoundError,
    UnauthorizedError,
)
from entitlement_ledger.core.payouts import PayoutDecision, PayoutProcessor
from entitlement_ledger.database.models import PayoutStatus

from tests.conftest import ADMIN, INSTRUCTOR, LEARNER, SECOND_ADMIN


class FixedBalance:
    def __init__(self, available: int):
        self.available = available

    async def available_balance(self, instructor_id: str, currency: str) -> int:
        return self.available


class TestRequest:
    """Test suite for self-service payout requests."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_instructor_requests_payout(self, services: Any) -> None:
        payout = await services.payouts.request(INSTRUCTOR, INSTRUCTOR, 25000)

        assert payout.status == PayoutStatus.PENDING.value
        assert payout.method == "mobile_money"
        assert payout.currency == "XOF"
        assert await services.audit_log.list() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_request_for_someone_else(self, services: Any) -> None:
        with pytest.raises(UnauthorizedError):
            await services.payouts.request(ADMIN, INSTRUCTOR, 25000)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_students_cannot_request_payouts(self, services: Any) -> None:
        with pytest.raises(UnauthorizedError):
            await services.payouts.request(LEARNER, LEARNER, 25000)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -500])
    async def test_amount_must_be_positive(self, services: Any, amount: int) -> None:
        with pytest.raises(LedgerValidationError):
            await services.payouts.request(INSTRUCTOR, INSTRUCTOR, amount)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_balance_source_caps_amount(self, services: Any) -> None:
        processor = PayoutProcessor(
            services.batches,
            services.audit_log,
            services.guard,
            balance_source=FixedBalance(10000),
            settings=services.settings,
        )

        with pytest.raises(LedgerValidationError):
            await processor.request(INSTRUCTOR, INSTRUCTOR, 10001)

        payout = await processor.request(INSTRUCTOR, INSTRUCTOR, 10000, method="bank_transfer")
        assert payout.method == "bank_transfer"


class TestDecide:
    """Test suite for admin decisions."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approve_is_audited(self, services: Any) -> None:
        payout = await services.payouts.request(INSTRUCTOR, INSTRUCTOR, 25000)

        decided = await services.payouts.decide(payout.id, PayoutDecision.APPROVED, ADMIN, note="Paid via Orange Money")

        assert decided.status == PayoutStatus.APPROVED.value
        assert decided.decided_by == ADMIN
        stored = await services.payouts.get(payout.id)
        assert stored.status == PayoutStatus.APPROVED.value
        [record] = await services.audit_log.list(event_type=AuditEventType.PAYOUT_PROCESS)
        assert record.actor_id == ADMIN
        assert record.target_id == str(payout.id)
        assert "approved" in record.details

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_decision_conflicts(self, services: Any) -> None:
        payout = await services.payouts.request(INSTRUCTOR, INSTRUCTOR, 25000)
        await services.payouts.decide(payout.id, PayoutDecision.REJECTED, ADMIN)

        with pytest.raises(ConflictError):
            await services.payouts.decide(payout.id, PayoutDecision.APPROVED, SECOND_ADMIN)

        stored = await services.payouts.get(payout.id)
        assert stored.status == PayoutStatus.REJECTED.value
        assert stored.decided_by == ADMIN
        assert len(await services.audit_log.list(event_type=AuditEventType.PAYOUT_PROCESS)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_instructor_cannot_approve_own_payout(self, services: Any) -> None:
        payout = await services.payouts.request(INSTRUCTOR, INSTRUCTOR, 25000)

        with pytest.raises(UnauthorizedError):
            await services.payouts.decide(payout.id, PayoutDecision.APPROVED, INSTRUCTOR)

        assert (await services.payouts.get(payout.id)).status == PayoutStatus.PENDING.value

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_payout(self, services: Any) -> None:
        with pytest.raises(NotFoundError):
            await services.payouts.decide(uuid.uuid4(), PayoutDecision.APPROVED, ADMIN)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_decision(self, services: Any) -> None:
        payout = await services.payouts.request(INSTRUCTOR, INSTRUCTOR, 25000)

        with pytest.raises(LedgerValidationError):
            await services.payouts.decide(payout.id, "maybe", ADMIN)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_filters(self, services: Any) -> None:
        first = await services.payouts.request(INSTRUCTOR, INSTRUCTOR, 1000)
        await services.payouts.request(INSTRUCTOR, INSTRUCTOR, 2000)
        await services.payouts.decide(first.id, PayoutDecision.APPROVED, ADMIN)

        pending = await services.payouts.list(instructor_id=INSTRUCTOR, status=PayoutStatus.PENDING)

        assert [p.amount for p in pending] == [2000]
