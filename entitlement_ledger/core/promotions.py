"""
Promo code resolution and administration.

Resolving a code is a pure read. Creating and toggling codes require an
admin. Toggles are not audited: promo codes are marketing data with a small
blast radius. Setting ``promo_toggle_audited`` turns on a ``promo.toggle``
record per toggle without any other change.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from entitlement_ledger.config import Settings, get_settings
from entitlement_ledger.core.audit import AuditEventType, AuditLog
from entitlement_ledger.core.authorization import AuthorizationGuard
from entitlement_ledger.core.batch import BatchCoordinator
from entitlement_ledger.core.errors import ConflictError, LedgerValidationError, NotFoundError
from entitlement_ledger.core.money import validate_discount_percent
from entitlement_ledger.database.models import PromoCode, Role, utcnow

logger = structlog.get_logger(__name__)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


@dataclass(frozen=True)
class PromoResolution:
    """Outcome of resolving a promo code: a discount, or the reason there is none."""

    code: str
    discount_percent: Optional[int]
    reason: str = "ok"

    @property
    def is_valid(self) -> bool:
        return self.discount_percent is not None

    @classmethod
    def invalid(cls, code: str, reason: str) -> "PromoResolution":
        return cls(code=code, discount_percent=None, reason=reason)


class PromotionEngine:
    """Looks up promo codes for the settlement ledger and lets admins manage them."""

    def __init__(
        self,
        batches: BatchCoordinator,
        guard: AuthorizationGuard,
        audit_log: Optional[AuditLog] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.batches = batches
        self.guard = guard
        self.audit_log = audit_log
        self.settings = settings or get_settings()
        self.clock = clock

    async def resolve(self, code: Optional[str]) -> PromoResolution:
        """
        Resolve a code to its discount.

        Invalid when blank, unknown, inactive or past its expiry. Never
        raises for a bad code.
        """
        normalized = normalize_code(code)
        if not normalized:
            return PromoResolution.invalid(normalized, "blank")

        async with self.batches.reading() as session:
            promo = await session.get(PromoCode, normalized)

        if promo is None:
            return PromoResolution.invalid(normalized, "not_found")
        if not promo.is_active:
            return PromoResolution.invalid(normalized, "inactive")
        if promo.expires_at is not None and promo.expires_at <= self.clock():
            return PromoResolution.invalid(normalized, "expired")
        return PromoResolution(code=normalized, discount_percent=promo.discount_percent)

    async def create(
        self,
        code: str,
        discount_percent: int,
        admin_id: str,
        expires_at: Optional[datetime] = None,
    ) -> PromoCode:
        """
        Create a new active promo code.

        Raises:
            UnauthorizedError: If ``admin_id`` is not an admin
            LedgerValidationError: On a blank code or out-of-range discount
            ConflictError: If the code already exists
        """
        await self.guard.require(admin_id, Role.ADMIN)
        normalized = normalize_code(code)
        if not normalized:
            raise LedgerValidationError("Promo code is required")
        validate_discount_percent(discount_percent)
        if expires_at is not None:
            if expires_at.tzinfo is None:
                raise LedgerValidationError("Expiry must be timezone-aware")
            if expires_at <= self.clock():
                raise LedgerValidationError("Expiry must be in the future")

        try:
            async with self.batches.atomic() as group:
                if await group.session.get(PromoCode, normalized) is not None:
                    raise ConflictError(f"Promo code {normalized} already exists", code=normalized)
                promo = PromoCode(
                    code=normalized,
                    discount_percent=discount_percent,
                    is_active=True,
                    expires_at=expires_at,
                    created_by=admin_id,
                )
                group.add(promo)
        except IntegrityError as e:
            raise ConflictError(f"Promo code {normalized} already exists", code=normalized) from e

        logger.info(
            "promo_code_created",
            code=normalized,
            discount_percent=discount_percent,
            admin_id=admin_id,
        )
        return promo

    async def set_active(self, code: str, is_active: bool, admin_id: str) -> None:
        """
        Enable or disable a promo code.

        Raises:
            UnauthorizedError: If ``admin_id`` is not an admin
            NotFoundError: If the code does not exist
        """
        await self.guard.require(admin_id, Role.ADMIN)
        normalized = normalize_code(code)

        async with self.batches.atomic() as group:
            promo = await group.session.get(PromoCode, normalized)
            if promo is None:
                raise NotFoundError(f"Promo code {normalized} not found", code=normalized)
            promo.is_active = is_active
            group.add(promo)
            if self.settings.promo_toggle_audited and self.audit_log is not None:
                self.audit_log.record(
                    group,
                    actor_id=admin_id,
                    event_type=AuditEventType.PROMO_TOGGLE,
                    target_type="promo_code",
                    target_id=normalized,
                    details=f"Promo code {normalized} {'enabled' if is_active else 'disabled'} by admin {admin_id}.",
                )

        logger.info("promo_code_toggled", code=normalized, is_active=is_active, admin_id=admin_id)
