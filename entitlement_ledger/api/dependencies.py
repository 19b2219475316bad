"""
Request dependencies.

The upstream identity gateway verifies the credential and forwards the
subject id in a header. Only the id is taken from the request; the role is
always looked up live by the authorization guard.

Internal collaborators (identity sync, payment provider callbacks, fraud
scoring) present a shared secret instead of a subject id.
"""
import hmac
from typing import Optional

import structlog
from fastapi import Request

from entitlement_ledger.core.errors import UnauthorizedError
from entitlement_ledger.core.services import LedgerServices
from entitlement_ledger.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def get_services(request: Request) -> LedgerServices:
    return request.app.state.services


def get_caller(request: Request) -> str:
    """
    Subject id of the caller.

    Raises:
        UnauthorizedError: If the identity header is missing
    """
    services: LedgerServices = request.app.state.services
    caller: Optional[str] = request.headers.get(services.settings.subject_header)
    if not caller or not caller.strip():
        raise UnauthorizedError("Missing subject header", reason="missing_subject")
    return caller.strip()


def require_internal_caller(request: Request) -> None:
    """
    Verify the internal shared secret.

    With no secret configured every internal call is rejected.

    Raises:
        UnauthorizedError: If the secret is missing, wrong or not configured
    """
    settings = request.app.state.services.settings
    expected = settings.internal_api_secret
    presented = request.headers.get(settings.internal_auth_header, "")

    if not expected:
        reason = "internal_secret_unset"
    elif not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        reason = "internal_secret_mismatch"
    else:
        return

    metrics.record_authorization_denial("internal", reason)
    logger.warning("internal_call_rejected", path=request.url.path, reason=reason)
    raise UnauthorizedError("Internal credential rejected", reason=reason)
