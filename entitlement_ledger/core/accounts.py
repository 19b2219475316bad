"""
Account directory: the live role source behind the authorization guard.

Accounts are created from the identity provider's verified subjects. Admins
can suspend accounts and change roles; both actions are audited.
"""
from typing import Optional

import structlog

from entitlement_ledger.core.audit import AuditEventType, AuditLog
from entitlement_ledger.core.authorization import AccountSnapshot, AuthorizationGuard
from entitlement_ledger.core.batch import BatchCoordinator
from entitlement_ledger.core.errors import LedgerValidationError, NotFoundError
from entitlement_ledger.database.models import AccountStatus, Role, UserAccount

logger = structlog.get_logger(__name__)


class AccountDirectory:
    """Reads and maintains subject roles and account status."""

    def __init__(
        self,
        batches: BatchCoordinator,
        audit_log: AuditLog,
        guard: Optional[AuthorizationGuard] = None,
    ):
        """
        Args:
            batches: Write-group coordinator
            audit_log: Audit trail for status and role changes
            guard: Guard for admin actions; without one the directory
                guards itself as its own role source
        """
        self.batches = batches
        self.audit_log = audit_log
        self.guard = guard or AuthorizationGuard(self)

    async def lookup(self, subject_id: str) -> Optional[AccountSnapshot]:
        async with self.batches.reading() as session:
            account = await session.get(UserAccount, subject_id)
            if account is None:
                return None
            return AccountSnapshot(
                subject_id=account.subject_id,
                role=Role(account.role),
                status=AccountStatus(account.status),
            )

    async def upsert_account(self, subject_id: str, role: Role = Role.STUDENT) -> AccountSnapshot:
        """
        Create or refresh an account from the identity provider.

        System-internal: the identity collaborator is the only caller.
        """
        if not subject_id:
            raise LedgerValidationError("Subject id is required")
        role = Role(role)

        async with self.batches.atomic() as group:
            account = await group.session.get(UserAccount, subject_id)
            if account is None:
                account = UserAccount(
                    subject_id=subject_id,
                    role=role.value,
                    status=AccountStatus.ACTIVE.value,
                )
                group.add(account)
            else:
                account.role = role.value
                group.add(account)
            status = AccountStatus(account.status)

        logger.info("account_upserted", subject_id=subject_id, role=role.value)
        return AccountSnapshot(subject_id=subject_id, role=role, status=status)

    async def set_status(self, user_id: str, status: AccountStatus, admin_id: str) -> None:
        """
        Suspend or reactivate an account.

        Raises:
            UnauthorizedError: If the caller is not an admin
            NotFoundError: If the account does not exist
        """
        await self.guard.require(admin_id, Role.ADMIN)
        status = AccountStatus(status)

        async with self.batches.atomic() as group:
            account = await group.session.get(UserAccount, user_id)
            if account is None:
                raise NotFoundError(f"Account {user_id} not found", user_id=user_id)
            previous = account.status
            account.status = status.value
            group.add(account)
            self.audit_log.record(
                group,
                actor_id=admin_id,
                event_type=AuditEventType.USER_STATUS_UPDATE,
                target_type="user",
                target_id=user_id,
                details=f"Account status changed from '{previous}' to '{status.value}' by admin {admin_id}.",
            )

        logger.info("account_status_updated", user_id=user_id, status=status.value, admin_id=admin_id)

    async def set_role(self, user_id: str, role: Role, admin_id: str) -> None:
        """Change an account's role."""
        await self.guard.require(admin_id, Role.ADMIN)
        role = Role(role)

        async with self.batches.atomic() as group:
            account = await group.session.get(UserAccount, user_id)
            if account is None:
                raise NotFoundError(f"Account {user_id} not found", user_id=user_id)
            previous = account.role
            account.role = role.value
            group.add(account)
            self.audit_log.record(
                group,
                actor_id=admin_id,
                event_type=AuditEventType.USER_ROLE_UPDATE,
                target_type="user",
                target_id=user_id,
                details=f"Role changed from '{previous}' to '{role.value}' by admin {admin_id}.",
            )

        logger.info("account_role_updated", user_id=user_id, role=role.value, admin_id=admin_id)

