"""
Role checks for privileged operations.

The caller's role is looked up from the role source on every call. Role
claims carried by the client or the request payload are never consulted.
Any failure to establish the role, including an unreachable store, denies
the call.
"""
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from entitlement_ledger.core.errors import UnauthorizedError
from entitlement_ledger.database.models import AccountStatus, Role
from entitlement_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AccountSnapshot:
    subject_id: str
    role: Role
    status: AccountStatus


class RoleSource(Protocol):
    """Live identity/role lookup supplied by the identity collaborator."""

    async def lookup(self, subject_id: str) -> Optional[AccountSnapshot]:
        ...


@dataclass(frozen=True)
class AuthorizationDecision:
    subject_id: str
    required_role: Role
    allowed: bool
    reason: str = "ok"

    def __bool__(self) -> bool:
        return self.allowed


class AuthorizationGuard:
    """Fail-closed role check run before any privileged mutation."""

    def __init__(self, role_source: RoleSource):
        self.role_source = role_source

    async def check(self, caller_id: Optional[str], required_role: Role) -> AuthorizationDecision:
        """
        Decide whether ``caller_id`` currently holds ``required_role``.

        Never raises; every failure mode yields a denied decision.
        """
        required_role = Role(required_role)
        if not caller_id:
            return self._deny(caller_id or "", required_role, "missing_subject")

        try:
            account = await self.role_source.lookup(caller_id)
        except Exception as e:
            logger.error(
                "role_lookup_failed",
                subject_id=caller_id,
                required_role=required_role.value,
                error=str(e),
            )
            return self._deny(caller_id, required_role, "lookup_failed")

        if account is None:
            return self._deny(caller_id, required_role, "unknown_subject")
        if account.status is not AccountStatus.ACTIVE:
            return self._deny(caller_id, required_role, "account_suspended")
        if account.role is not required_role:
            return self._deny(caller_id, required_role, "insufficient_role")

        return AuthorizationDecision(caller_id, required_role, allowed=True)

    async def require(self, caller_id: Optional[str], required_role: Role) -> AuthorizationDecision:
        """
        Like ``check`` but raises on denial.

        Raises:
            UnauthorizedError: If the caller does not hold the role
        """
        decision = await self.check(caller_id, required_role)
        if not decision:
            raise UnauthorizedError(
                f"Subject {caller_id!r} denied {decision.required_role.value}: {decision.reason}",
                subject_id=caller_id,
                reason=decision.reason,
            )
        return decision

    async def require_self(
        self, caller_id: Optional[str], subject_id: str, required_role: Role
    ) -> AuthorizationDecision:
        """Self-service check: the caller must be ``subject_id`` and hold the role."""
        if not caller_id or caller_id != subject_id:
            decision = self._deny(caller_id or "", Role(required_role), "not_owner")
            raise UnauthorizedError(
                f"Subject {caller_id!r} cannot act on behalf of {subject_id!r}",
                subject_id=caller_id,
                reason=decision.reason,
            )
        return await self.require(caller_id, required_role)

    @staticmethod
    def _deny(subject_id: str, required_role: Role, reason: str) -> AuthorizationDecision:
        metrics.record_authorization_denial(required_role.value, reason)
        logger.warning(
            "authorization_denied",
            subject_id=subject_id,
            required_role=required_role.value,
            reason=reason,
        )
        return AuthorizationDecision(subject_id, required_role, allowed=False, reason=reason)
