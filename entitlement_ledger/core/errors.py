"""
Exception taxonomy for the ledger.

Every error carries a stable ``error_code``, a ``user_message`` that is safe
to show to any caller, and the HTTP status the API layer maps it to.
Keyword context passed to the constructor is kept in ``context`` for logs
and never rendered by ``to_dict``.

Only the payment -> entitlement linkage retries internally. Everything else
here is returned to the immediate caller as-is.
"""
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    error_code = "ledger_error"
    http_status = 500
    default_user_message = "An error occurred. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


class UnauthorizedError(LedgerError):
    """The caller does not hold the role the operation requires."""

    error_code = "unauthorized"
    http_status = 403
    default_user_message = "You are not allowed to perform this action."


class NotFoundError(LedgerError):
    """A referenced entity does not exist."""

    error_code = "not_found"
    http_status = 404
    default_user_message = "The requested resource was not found."


class InvalidTransitionError(LedgerError):
    """A status-machine rule forbids the requested change."""

    error_code = "invalid_transition"
    http_status = 409
    default_user_message = "This action is not allowed in the current state."


class ConflictError(LedgerError):
    """An optimistic-concurrency re-check failed; another caller got there first."""

    error_code = "conflict"
    http_status = 409
    default_user_message = "This resource was changed by someone else. Refresh and try again."


class LedgerValidationError(LedgerError):
    """Malformed input."""

    error_code = "validation_error"
    http_status = 422
    default_user_message = "The request contains invalid data."

    def __init__(self, message: str, user_message: Optional[str] = None, **context: Any):
        # Validation messages describe the caller's own input and are safe to echo.
        super().__init__(message, user_message=user_message or message, **context)


class FatalReconciliationError(LedgerError):
    """
    Payment was collected but the entitlement could not be granted.

    Needs manual reconciliation; always surfaced to the audit log.
    """

    error_code = "fatal"
    http_status = 500
    default_user_message = (
        "Your payment was received but access could not be activated yet. "
        "Our team has been notified."
    )


class BatchCommitError(LedgerError):
    """
    A write group failed after earlier groups were committed.

    Groups before ``failed_group`` stay committed; the failing group and
    everything after it were not applied.
    """

    error_code = "batch_partial_failure"
    http_status = 500
    default_user_message = "The operation was only partially applied. It is safe to retry."

    def __init__(
        self,
        message: str,
        committed_groups: int,
        committed_items: int,
        failed_group: int,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.committed_groups = committed_groups
        self.committed_items = committed_items
        self.failed_group = failed_group


class AuditLogImmutableError(LedgerError):
    """Raised when anything tries to modify or delete an audit record."""

    error_code = "audit_log_immutable"
    http_status = 500
