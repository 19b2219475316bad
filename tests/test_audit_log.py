"""
Tests for the append-only audit trail.
"""
from typing import Any

import pytest

from entitlement_ledger.core.audit import AuditEventType
from entitlement_ledger.core.errors import AuditLogImmutableError
from entitlement_ledger.database.models import AuditRecord

from tests.conftest import ADMIN, LEARNER, SECOND_ADMIN


class TestAuditLog:
    """Test suite for audit records."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_append_and_filter(self, services: Any) -> None:
        await services.audit_log.append(
            ADMIN, AuditEventType.COURSE_GRANT, "entitlement", f"{LEARNER}:c1", "granted"
        )
        await services.audit_log.append(
            SECOND_ADMIN, AuditEventType.PAYOUT_PROCESS, "payout_request", "p1", "approved"
        )

        by_actor = await services.audit_log.list(actor_id=ADMIN)
        by_event = await services.audit_log.list(event_type=AuditEventType.PAYOUT_PROCESS)

        assert [r.target_id for r in by_actor] == [f"{LEARNER}:c1"]
        assert [r.actor_id for r in by_event] == [SECOND_ADMIN]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_newest_first(self, services: Any) -> None:
        for n in range(3):
            await services.audit_log.append(
                ADMIN, AuditEventType.COURSE_REVOKE, "entitlement", f"t{n}", "revoked"
            )

        records = await services.audit_log.list(limit=2)

        assert [r.target_id for r in records] == ["t2", "t1"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_cannot_be_modified(self, services: Any) -> None:
        record = await services.audit_log.append(
            ADMIN, AuditEventType.SECURITY_RESOLVE, "settlement", "s1", "resolved"
        )

        with pytest.raises(AuditLogImmutableError):
            async with services.batches.atomic() as group:
                stored = await group.session.get(AuditRecord, record.id)
                stored.details = "tampered"

        [unchanged] = await services.audit_log.list(target_id="s1")
        assert unchanged.details == "resolved"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_cannot_be_deleted(self, services: Any) -> None:
        record = await services.audit_log.append(
            ADMIN, AuditEventType.SECURITY_RESOLVE, "settlement", "s2", "resolved"
        )

        with pytest.raises(AuditLogImmutableError):
            async with services.batches.atomic() as group:
                stored = await group.session.get(AuditRecord, record.id)
                await group.session.delete(stored)

        assert len(await services.audit_log.list(target_id="s2")) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_type_rejected(self, services: Any) -> None:
        with pytest.raises(ValueError):
            await services.audit_log.append(ADMIN, "course.delete", "course", "c1", "nope")
