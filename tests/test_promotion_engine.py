"""
Tests for promo code resolution and administration.
"""
from datetime import datetime, timedelta
from typing import Any

import pytest

from entitlement_ledger.core.audit import AuditEventType
from entitlement_ledger.core.errors import (
    ConflictError,
    LedgerValidationError,
    NotFoundError,
    UnauthorizedError,
)
from entitlement_ledger.core.promotions import PromotionEngine
from entitlement_ledger.database.models import utcnow

from tests.conftest import ADMIN, LEARNER


class TestResolve:
    """Test suite for code lookup."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_code_is_normalized(self, services: Any) -> None:
        await services.promotions.create("afrique50", 50, ADMIN)

        resolution = await services.promotions.resolve("  Afrique50 ")

        assert resolution.is_valid
        assert resolution.code == "AFRIQUE50"
        assert resolution.discount_percent == 50

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_and_blank_codes_are_invalid(self, services: Any) -> None:
        assert (await services.promotions.resolve("NOPE")).reason == "not_found"
        assert (await services.promotions.resolve("   ")).reason == "blank"
        assert not (await services.promotions.resolve(None)).is_valid

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_code_is_invalid(self, services: Any) -> None:
        await services.promotions.create("SUMMER", 20, ADMIN)
        await services.promotions.set_active("summer", False, ADMIN)

        resolution = await services.promotions.resolve("SUMMER")

        assert not resolution.is_valid
        assert resolution.reason == "inactive"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_code_is_invalid(self, services: Any) -> None:
        await services.promotions.create("FLASH", 30, ADMIN, expires_at=utcnow() + timedelta(hours=1))
        services.promotions.clock = lambda: utcnow() + timedelta(hours=2)

        resolution = await services.promotions.resolve("FLASH")

        assert resolution.reason == "expired"


class TestAdministration:
    """Test suite for creating and toggling codes."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_code_conflicts(self, services: Any) -> None:
        await services.promotions.create("WELCOME", 10, ADMIN)

        with pytest.raises(ConflictError):
            await services.promotions.create("welcome", 15, ADMIN)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("discount", [-1, 101])
    async def test_discount_out_of_range(self, services: Any, discount: int) -> None:
        with pytest.raises(LedgerValidationError):
            await services.promotions.create("BAD", discount, ADMIN)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_naive_expiry_is_rejected(self, services: Any) -> None:
        with pytest.raises(LedgerValidationError):
            await services.promotions.create("NAIVE", 10, ADMIN, expires_at=datetime(2099, 1, 1))

        assert (await services.promotions.resolve("NAIVE")).reason == "not_found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_student_cannot_create_codes(self, services: Any) -> None:
        with pytest.raises(UnauthorizedError):
            await services.promotions.create("FREE", 100, LEARNER)

        assert (await services.promotions.resolve("FREE")).reason == "not_found"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_toggle_unknown_code(self, services: Any) -> None:
        with pytest.raises(NotFoundError):
            await services.promotions.set_active("GHOST", True, ADMIN)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_toggle_not_audited_by_default(self, services: Any) -> None:
        await services.promotions.create("QUIET", 10, ADMIN)
        await services.promotions.set_active("QUIET", False, ADMIN)

        assert await services.audit_log.list(event_type=AuditEventType.PROMO_TOGGLE) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_toggle_audited_when_enabled(self, services: Any, test_settings: Any) -> None:
        engine = PromotionEngine(
            services.batches,
            services.guard,
            services.audit_log,
            test_settings.model_copy(update={"promo_toggle_audited": True}),
        )
        await engine.create("LOUD", 10, ADMIN)

        await engine.set_active("LOUD", False, ADMIN)

        [record] = await services.audit_log.list(event_type=AuditEventType.PROMO_TOGGLE)
        assert record.target_id == "LOUD"
        assert "disabled" in record.details
