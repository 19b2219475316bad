"""
Tests for the settlement status machine and the payment -> entitlement linkage.
"""
import uuid
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from entitlement_ledger.core.audit import AuditEventType
from entitlement_ledger.core.errors import (
    FatalReconciliationError,
    InvalidTransitionError,
    LedgerValidationError,
    NotFoundError,
    UnauthorizedError,
)
from entitlement_ledger.core.money import compute_net_amount
from entitlement_ledger.core.settlements import ProviderResult
from entitlement_ledger.database.models import (
    EntitlementSource,
    EntitlementStatus,
    SettlementStatus,
)

from tests.conftest import ADMIN, INSTRUCTOR, LEARNER

COURSE = "course_data_science"
PAID = ProviderResult(success=True, provider_transaction_id="cinetpay_tx_001")
DECLINED = ProviderResult(
    success=False, provider_transaction_id="cinetpay_tx_002", failure_reason="insufficient_funds"
)


def locked_database() -> OperationalError:
    return OperationalError("INSERT INTO entitlements", {}, Exception("database is locked"))


async def start_purchase(services: Any, promo_code: Any = None, amount: int = 10000) -> Any:
    return await services.settlements.initiate(
        LEARNER, COURSE, INSTRUCTOR, amount, promo_code=promo_code
    )


class TestNetAmount:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "gross,discount,expected",
        [(10000, 50, 5000), (999, 15, 849), (1, 50, 1), (10000, 0, 10000), (10000, 100, 0)],
    )
    def test_rounds_half_up(self, gross: int, discount: int, expected: int) -> None:
        assert compute_net_amount(gross, discount) == expected


class TestInitiateAndConfirm:
    """Test suite for the purchase flow."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_promo_purchase_scenario(self, services: Any) -> None:
        """10,000 with AFRIQUE50 nets 5,000; confirming grants purchased access."""
        await services.promotions.create("AFRIQUE50", 50, ADMIN)

        settlement = await start_purchase(services, promo_code="AFRIQUE50")
        assert settlement.status == SettlementStatus.PENDING.value
        assert settlement.net_amount == 5000
        assert settlement.currency == "XOF"

        confirmed = await services.settlements.confirm(settlement.id, PAID)

        assert confirmed.status == SettlementStatus.COMPLETED.value
        assert confirmed.entitlement_granted_at is not None
        view = await services.entitlements.get(LEARNER, COURSE)
        assert view.is_active
        assert view.source is EntitlementSource.PURCHASE

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_promo_falls_back_to_full_price(self, services: Any) -> None:
        settlement = await start_purchase(services, promo_code="NOT-A-CODE")

        assert settlement.discount_percent == 0
        assert settlement.promo_code is None
        assert settlement.net_amount == 10000

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_routine_purchase_writes_no_admin_audit(self, services: Any) -> None:
        settlement = await start_purchase(services)
        await services.settlements.confirm(settlement.id, PAID)

        records = await services.audit_log.list()
        assert [(r.event_type, r.actor_id) for r in records] == [("course.grant", "system")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_payment_grants_nothing(self, services: Any) -> None:
        settlement = await start_purchase(services)

        failed = await services.settlements.confirm(settlement.id, DECLINED)

        assert failed.status == SettlementStatus.FAILED.value
        assert failed.failure_reason == "insufficient_funds"
        assert not await services.entitlements.is_active(LEARNER, COURSE)
        assert await services.audit_log.list() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_non_pending_mutates_nothing(self, services: Any) -> None:
        settlement = await start_purchase(services)
        first = await services.settlements.confirm(settlement.id, PAID)

        with pytest.raises(InvalidTransitionError):
            await services.settlements.confirm(
                settlement.id, ProviderResult(success=False, provider_transaction_id="dup")
            )

        after = await services.settlements.get(settlement.id)
        assert after.status == SettlementStatus.COMPLETED.value
        assert after.provider_transaction_id == first.provider_transaction_id
        history = await services.entitlements.history(LEARNER, COURSE)
        assert len(history) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_unknown_settlement(self, services: Any) -> None:
        with pytest.raises(NotFoundError):
            await services.settlements.confirm(uuid.uuid4(), PAID)
        with pytest.raises(NotFoundError):
            await services.settlements.confirm("not-a-uuid", PAID)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initiate_rejects_non_positive_amount(self, services: Any) -> None:
        with pytest.raises(LedgerValidationError):
            await start_purchase(services, amount=0)


class TestGrantRetry:
    """The one internally retried step: access after a completed payment."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, services: Any, monkeypatch: Any) -> None:
        real_grant = services.entitlements.stage_purchase_grant
        calls = {"n": 0}

        async def flaky_grant(*args: Any, **kwargs: Any) -> Any:
            calls["n"] += 1
            if calls["n"] == 1:
                raise locked_database()
            return await real_grant(*args, **kwargs)

        monkeypatch.setattr(services.entitlements, "stage_purchase_grant", flaky_grant)
        retries_before = REGISTRY.get_sample_value("ledger_entitlement_grant_retries_total") or 0
        settlement = await start_purchase(services)

        confirmed = await services.settlements.confirm(settlement.id, PAID)

        assert calls["n"] == 2
        assert confirmed.entitlement_granted_at is not None
        assert await services.entitlements.is_active(LEARNER, COURSE)
        retries_after = REGISTRY.get_sample_value("ledger_entitlement_grant_retries_total")
        assert retries_after == retries_before + 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_exhausted_retries_escalate(self, services: Any, monkeypatch: Any) -> None:
        """Payment stays completed; the operator is told through the audit log."""
        calls = {"n": 0}

        async def broken_grant(*args: Any, **kwargs: Any) -> Any:
            calls["n"] += 1
            raise locked_database()

        monkeypatch.setattr(services.entitlements, "stage_purchase_grant", broken_grant)
        settlement = await start_purchase(services)

        with pytest.raises(FatalReconciliationError) as exc_info:
            await services.settlements.confirm(settlement.id, PAID)

        assert calls["n"] == services.settings.grant_retry_max_attempts
        assert exc_info.value.error_code == "fatal"
        stored = await services.settlements.get(settlement.id)
        assert stored.status == SettlementStatus.COMPLETED.value
        assert stored.entitlement_granted_at is None
        assert not await services.entitlements.is_active(LEARNER, COURSE)
        [record] = await services.audit_log.list(
            event_type=AuditEventType.PAYMENT_RECONCILIATION_REQUIRED
        )
        assert record.actor_id == "system"
        assert record.target_id == str(settlement.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, services: Any, monkeypatch: Any) -> None:
        calls = {"n": 0}

        async def buggy_grant(*args: Any, **kwargs: Any) -> Any:
            calls["n"] += 1
            raise KeyError("bug")

        monkeypatch.setattr(services.entitlements, "stage_purchase_grant", buggy_grant)
        settlement = await start_purchase(services)

        with pytest.raises(FatalReconciliationError):
            await services.settlements.confirm(settlement.id, PAID)

        assert calls["n"] == 1


class TestRefund:
    """Test suite for refunds."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_revokes_access_with_one_audit_record(self, services: Any) -> None:
        settlement = await start_purchase(services)
        await services.settlements.confirm(settlement.id, PAID)

        await services.settlements.refund(settlement.id, ADMIN, reason="Duplicate charge")

        stored = await services.settlements.get(settlement.id)
        assert stored.status == SettlementStatus.REFUNDED.value
        assert stored.refunded_at is not None
        view = await services.entitlements.get(LEARNER, COURSE)
        assert view.status is EntitlementStatus.REVOKED
        assert view.revoked_by == ADMIN
        refunds = await services.audit_log.list(event_type=AuditEventType.PAYMENT_REFUND)
        assert len(refunds) == 1
        assert "Duplicate charge" in refunds[0].details
        assert await services.audit_log.list(event_type=AuditEventType.COURSE_REVOKE) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refunding_earlier_payment_keeps_later_purchase(self, services: Any) -> None:
        first = await start_purchase(services)
        await services.settlements.confirm(first.id, PAID)
        second = await start_purchase(services)
        await services.settlements.confirm(
            second.id, ProviderResult(success=True, provider_transaction_id="cinetpay_tx_003")
        )

        await services.settlements.refund(first.id, ADMIN)

        assert (await services.settlements.get(second.id)).status == SettlementStatus.COMPLETED.value
        view = await services.entitlements.get(LEARNER, COURSE)
        assert view.is_active
        assert view.settlement_id == second.id
        [refund] = await services.audit_log.list(event_type=AuditEventType.PAYMENT_REFUND)
        assert "left unchanged" in refund.details

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_keeps_later_admin_grant(self, services: Any) -> None:
        settlement = await start_purchase(services)
        await services.settlements.confirm(settlement.id, PAID)
        await services.entitlements.revoke(LEARNER, COURSE, ADMIN)
        await services.entitlements.grant(LEARNER, COURSE, ADMIN, reason="Scholarship")

        await services.settlements.refund(settlement.id, ADMIN)

        view = await services.entitlements.get(LEARNER, COURSE)
        assert view.is_active
        assert view.source is EntitlementSource.ADMIN_GRANT
        assert len(await services.entitlements.history(LEARNER, COURSE)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_requires_completed(self, services: Any) -> None:
        settlement = await start_purchase(services)

        with pytest.raises(InvalidTransitionError):
            await services.settlements.refund(settlement.id, ADMIN)

        assert (await services.settlements.get(settlement.id)).status == SettlementStatus.PENDING.value
        assert await services.audit_log.list() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_requires_admin(self, services: Any) -> None:
        settlement = await start_purchase(services)
        await services.settlements.confirm(settlement.id, PAID)

        with pytest.raises(UnauthorizedError):
            await services.settlements.refund(settlement.id, LEARNER)

        assert await services.entitlements.is_active(LEARNER, COURSE)


class TestFraudReview:
    """Test suite for flagging and resolving suspicious settlements."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("score,suspicious", [(39, False), (40, True), (85, True)])
    async def test_threshold(self, services: Any, score: int, suspicious: bool) -> None:
        settlement = await start_purchase(services)

        flagged = await services.settlements.flag_fraud(settlement.id, score, reason="velocity")

        assert flagged.is_suspicious is suspicious
        assert flagged.risk_score == score
        assert flagged.risk_checked_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_score_out_of_range(self, services: Any) -> None:
        settlement = await start_purchase(services)

        with pytest.raises(LedgerValidationError):
            await services.settlements.flag_fraud(settlement.id, 101)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolve_is_audited_once(self, services: Any) -> None:
        settlement = await start_purchase(services)
        await services.settlements.flag_fraud(settlement.id, 90)

        await services.settlements.resolve_fraud(settlement.id, ADMIN)
        await services.settlements.resolve_fraud(settlement.id, ADMIN)

        stored = await services.settlements.get(settlement.id)
        assert stored.reviewed
        assert stored.reviewed_by == ADMIN
        records = await services.audit_log.list(event_type=AuditEventType.SECURITY_RESOLVE)
        assert len(records) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_score_reopens_review(self, services: Any) -> None:
        settlement = await start_purchase(services)
        await services.settlements.flag_fraud(settlement.id, 90)
        await services.settlements.resolve_fraud(settlement.id, ADMIN)

        rescored = await services.settlements.flag_fraud(settlement.id, 95)

        assert rescored.is_suspicious
        assert not rescored.reviewed
        assert rescored.reviewed_by is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolve_unflagged_settlement(self, services: Any) -> None:
        settlement = await start_purchase(services)

        with pytest.raises(InvalidTransitionError):
            await services.settlements.resolve_fraud(settlement.id, ADMIN)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolve_requires_admin(self, services: Any) -> None:
        settlement = await start_purchase(services)
        await services.settlements.flag_fraud(settlement.id, 90)

        with pytest.raises(UnauthorizedError):
            await services.settlements.resolve_fraud(settlement.id, INSTRUCTOR)

        assert not (await services.settlements.get(settlement.id)).reviewed
