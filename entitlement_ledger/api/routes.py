"""
API routes for the entitlement and settlement ledger.

Routes stay thin: they read the caller from the identity header, call one
ledger operation and shape the response. Ledger errors propagate to the
application's ``LedgerError`` handler.
"""
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from entitlement_ledger.core.audit import AuditEventType
from entitlement_ledger.core.entitlements import EntitlementView
from entitlement_ledger.core.errors import UnauthorizedError
from entitlement_ledger.core.services import LedgerServices
from entitlement_ledger.core.settlements import ProviderResult
from entitlement_ledger.database.models import PayoutStatus, Role, Settlement, utcnow

from .dependencies import get_caller, get_services, require_internal_caller
from .schemas import (
    AccessResponse,
    AccountResponse,
    AccountRoleRequest,
    AccountStatusRequest,
    AuditRecordResponse,
    BulkGrantRequest,
    BulkGrantResponse,
    ConfirmSettlementRequest,
    CreatePromoRequest,
    EntitlementResponse,
    FraudScoreRequest,
    GrantRequest,
    HealthCheckResponse,
    InitiateSettlementRequest,
    PayoutDecisionRequest,
    PayoutRequestBody,
    PayoutResponse,
    PromoResolutionResponse,
    PromoResponse,
    PromoToggleRequest,
    ReconciliationResponse,
    RefundRequest,
    RevokeRequest,
    SettlementResponse,
    UpsertAccountRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
account_router = APIRouter(prefix="/accounts", tags=["accounts"])
entitlement_router = APIRouter(prefix="/entitlements", tags=["entitlements"])
settlement_router = APIRouter(prefix="/settlements", tags=["settlements"])
promo_router = APIRouter(prefix="/promo-codes", tags=["promo codes"])
payout_router = APIRouter(prefix="/payouts", tags=["payouts"])
audit_router = APIRouter(prefix="/audit-log", tags=["audit"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
# Identity sync, payment provider and fraud scoring; shared-secret authenticated.
internal_router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_caller)],
)
monitoring_router = APIRouter(tags=["monitoring"])


async def _require_self_or_admin(
    services: LedgerServices, caller_id: str, subject_id: str
) -> None:
    if caller_id == subject_id:
        return
    await services.guard.require(caller_id, Role.ADMIN)


def _entitlement_response(view: EntitlementView) -> EntitlementResponse:
    return EntitlementResponse(
        learner_id=view.learner_id,
        course_id=view.course_id,
        status=view.status.value,
        source=view.source.value,
        generation=view.generation,
        is_active=view.is_active,
        granted_at=view.granted_at,
        expires_at=view.expires_at,
        granted_by=view.granted_by,
        revoked_at=view.revoked_at,
        revoked_by=view.revoked_by,
        progress_percent=view.progress_percent,
    )


def _settlement_response(settlement: Settlement) -> SettlementResponse:
    return SettlementResponse.model_validate(settlement)


# Accounts


@account_router.get("/me", response_model=AccountResponse, summary="Current account")
async def get_my_account(
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> AccountResponse:
    account = await services.accounts.lookup(caller)
    if account is None:
        raise UnauthorizedError(f"Unknown subject {caller!r}", reason="unknown_subject")
    return AccountResponse(subject_id=account.subject_id, role=account.role, status=account.status)


@account_router.put(
    "/{user_id}/status",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Suspend or reactivate an account",
)
async def set_account_status(
    user_id: str,
    body: AccountStatusRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> Response:
    await services.accounts.set_status(user_id, body.status, admin_id=caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@account_router.put(
    "/{user_id}/role",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Change an account's role",
)
async def set_account_role(
    user_id: str,
    body: AccountRoleRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> Response:
    await services.accounts.set_role(user_id, body.role, admin_id=caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Entitlements


@entitlement_router.post(
    "",
    response_model=EntitlementResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Grant course access",
    description="Admin grant or trial; idempotent for an already active entitlement",
)
async def grant_entitlement(
    body: GrantRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> EntitlementResponse:
    expires_at = body.expires_at
    if body.expiration_in_days is not None:
        expires_at = utcnow() + timedelta(days=body.expiration_in_days)

    view = await services.entitlements.grant(
        learner_id=body.learner_id,
        course_id=body.course_id,
        granted_by=caller,
        source=body.source,
        expires_at=expires_at,
        reason=body.reason,
    )
    logger.info(
        "api_entitlement_granted",
        learner_id=body.learner_id,
        course_id=body.course_id,
        admin_id=caller,
    )
    return _entitlement_response(view)


@entitlement_router.post(
    "/bulk",
    response_model=BulkGrantResponse,
    summary="Grant one course to many learners",
)
async def bulk_grant_entitlements(
    body: BulkGrantRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> BulkGrantResponse:
    committed = await services.entitlements.bulk_grant(
        learner_ids=body.learner_ids,
        course_id=body.course_id,
        granted_by=caller,
        source=body.source,
        expires_at=body.expires_at,
        reason=body.reason,
    )
    return BulkGrantResponse(course_id=body.course_id, committed=committed)


@entitlement_router.post(
    "/revoke",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke course access",
)
async def revoke_entitlement(
    body: RevokeRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> Response:
    await services.entitlements.revoke(
        body.learner_id, body.course_id, revoked_by=caller, reason=body.reason
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@entitlement_router.get(
    "/{learner_id}",
    response_model=List[EntitlementResponse],
    summary="List a learner's entitlements",
)
async def list_entitlements(
    learner_id: str,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> List[EntitlementResponse]:
    await _require_self_or_admin(services, caller, learner_id)
    views = await services.entitlements.list_for_learner(learner_id)
    return [_entitlement_response(view) for view in views]


@entitlement_router.get(
    "/{learner_id}/{course_id}",
    response_model=EntitlementResponse,
    summary="Get one entitlement",
)
async def get_entitlement(
    learner_id: str,
    course_id: str,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> EntitlementResponse:
    await _require_self_or_admin(services, caller, learner_id)
    return _entitlement_response(await services.entitlements.get(learner_id, course_id))


@entitlement_router.get(
    "/{learner_id}/{course_id}/access",
    response_model=AccessResponse,
    summary="Check course access",
)
async def check_access(
    learner_id: str,
    course_id: str,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> AccessResponse:
    await _require_self_or_admin(services, caller, learner_id)
    active = await services.entitlements.is_active(learner_id, course_id)
    return AccessResponse(learner_id=learner_id, course_id=course_id, is_active=active)


# Settlements


@settlement_router.post(
    "",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a purchase",
    description="An invalid or expired promo code falls back to full price",
)
async def initiate_settlement(
    body: InitiateSettlementRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> SettlementResponse:
    if caller != body.learner_id:
        raise UnauthorizedError(
            f"Subject {caller!r} cannot buy on behalf of {body.learner_id!r}",
            reason="not_owner",
        )
    settlement = await services.settlements.initiate(
        learner_id=body.learner_id,
        course_id=body.course_id,
        instructor_id=body.instructor_id,
        gross_amount=body.gross_amount,
        promo_code=body.promo_code,
        currency=body.currency,
    )
    return _settlement_response(settlement)


@settlement_router.get(
    "/{settlement_id}",
    response_model=SettlementResponse,
    summary="Get a settlement",
)
async def get_settlement(
    settlement_id: str,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> SettlementResponse:
    settlement = await services.settlements.get(settlement_id)
    await _require_self_or_admin(services, caller, settlement.learner_id)
    return _settlement_response(settlement)


@settlement_router.post(
    "/{settlement_id}/refund",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Refund a completed settlement",
)
async def refund_settlement(
    settlement_id: str,
    body: RefundRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> Response:
    await services.settlements.refund(settlement_id, admin_id=caller, reason=body.reason)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@settlement_router.post(
    "/{settlement_id}/fraud/resolve",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Resolve a fraud alert",
)
async def resolve_fraud(
    settlement_id: str,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> Response:
    await services.settlements.resolve_fraud(settlement_id, admin_id=caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Promo codes


@promo_router.post(
    "",
    response_model=PromoResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a promo code",
)
async def create_promo_code(
    body: CreatePromoRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> PromoResponse:
    promo = await services.promotions.create(
        body.code, body.discount_percent, admin_id=caller, expires_at=body.expires_at
    )
    return PromoResponse.model_validate(promo)


@promo_router.put(
    "/{code}/active",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Enable or disable a promo code",
)
async def toggle_promo_code(
    code: str,
    body: PromoToggleRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> Response:
    await services.promotions.set_active(code, body.is_active, admin_id=caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@promo_router.get(
    "/{code}",
    response_model=PromoResolutionResponse,
    summary="Resolve a promo code",
)
async def resolve_promo_code(
    code: str,
    services: LedgerServices = Depends(get_services),
) -> PromoResolutionResponse:
    resolution = await services.promotions.resolve(code)
    return PromoResolutionResponse(
        code=resolution.code,
        valid=resolution.is_valid,
        discount_percent=resolution.discount_percent,
        reason=resolution.reason,
    )


# Payouts


@payout_router.post(
    "",
    response_model=PayoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request a payout",
)
async def request_payout(
    body: PayoutRequestBody,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> PayoutResponse:
    payout = await services.payouts.request(
        caller_id=caller,
        instructor_id=body.instructor_id,
        amount=body.amount,
        method=body.method,
        currency=body.currency,
    )
    return PayoutResponse.model_validate(payout)


@payout_router.get(
    "",
    response_model=List[PayoutResponse],
    summary="List payout requests",
    description="Admins see every request; instructors see their own",
)
async def list_payouts(
    instructor_id: Optional[str] = None,
    payout_status: Optional[PayoutStatus] = None,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> List[PayoutResponse]:
    if instructor_id is None:
        await services.guard.require(caller, Role.ADMIN)
    else:
        await _require_self_or_admin(services, caller, instructor_id)
    payouts = await services.payouts.list(instructor_id=instructor_id, status=payout_status)
    return [PayoutResponse.model_validate(p) for p in payouts]


@payout_router.post(
    "/{payout_id}/decision",
    response_model=PayoutResponse,
    summary="Approve or reject a payout",
)
async def decide_payout(
    payout_id: str,
    body: PayoutDecisionRequest,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> PayoutResponse:
    payout = await services.payouts.decide(payout_id, body.decision, admin_id=caller, note=body.note)
    return PayoutResponse.model_validate(payout)


# Audit log


@audit_router.get(
    "",
    response_model=List[AuditRecordResponse],
    summary="Browse the audit log",
)
async def list_audit_records(
    actor_id: Optional[str] = None,
    event_type: Optional[AuditEventType] = None,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    limit: int = 100,
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> List[AuditRecordResponse]:
    await services.guard.require(caller, Role.ADMIN)
    if not 1 <= limit <= 1000:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="limit must be between 1 and 1000",
        )
    records = await services.audit_log.list(
        actor_id=actor_id,
        event_type=event_type,
        target_type=target_type,
        target_id=target_id,
        limit=limit,
    )
    return [AuditRecordResponse.model_validate(r) for r in records]


# Admin


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Grant access for completed payments whose entitlement never landed",
)
async def run_reconciliation(
    caller: str = Depends(get_caller),
    services: LedgerServices = Depends(get_services),
) -> ReconciliationResponse:
    logger.info("api_reconciliation_started", admin_id=caller)
    repaired = await services.reconciler.reconcile(admin_id=caller)
    return ReconciliationResponse(repaired=repaired)


# Internal collaborators


@internal_router.post(
    "/accounts",
    response_model=AccountResponse,
    summary="Sync an account from the identity provider",
)
async def upsert_account(
    body: UpsertAccountRequest,
    services: LedgerServices = Depends(get_services),
) -> AccountResponse:
    account = await services.accounts.upsert_account(body.subject_id, body.role)
    return AccountResponse(subject_id=account.subject_id, role=account.role, status=account.status)


@internal_router.post(
    "/settlements/{settlement_id}/confirm",
    response_model=SettlementResponse,
    summary="Payment provider callback",
)
async def confirm_settlement(
    settlement_id: str,
    body: ConfirmSettlementRequest,
    services: LedgerServices = Depends(get_services),
) -> SettlementResponse:
    settlement = await services.settlements.confirm(
        settlement_id,
        ProviderResult(
            success=body.success,
            provider_transaction_id=body.provider_transaction_id,
            failure_reason=body.failure_reason,
        ),
    )
    return _settlement_response(settlement)


@internal_router.post(
    "/settlements/{settlement_id}/fraud-score",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Fraud scoring callback",
)
async def flag_fraud(
    settlement_id: str,
    body: FraudScoreRequest,
    services: LedgerServices = Depends(get_services),
) -> Response:
    await services.settlements.flag_fraud(settlement_id, body.risk_score, reason=body.reason)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(request: Request) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await request.app.state.health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(request: Request) -> Dict[str, Any]:
    return await request.app.state.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(request: Request) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await request.app.state.health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
