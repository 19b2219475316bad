"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from entitlement_ledger.core.payouts import DEFAULT_PAYOUT_METHOD, PayoutDecision
from entitlement_ledger.database.models import AccountStatus, EntitlementSource, Role


class UpsertAccountRequest(BaseModel):
    """Identity-provider sync of one subject."""

    subject_id: str = Field(..., min_length=1, description="Verified subject identifier")
    role: Role = Field(default=Role.STUDENT, description="Role held by the subject")


class AccountStatusRequest(BaseModel):
    status: AccountStatus = Field(..., description="New account status")


class AccountRoleRequest(BaseModel):
    role: Role = Field(..., description="New role")


class AccountResponse(BaseModel):
    subject_id: str
    role: Role
    status: AccountStatus


class GrantRequest(BaseModel):
    """Request schema for an admin grant."""

    learner_id: str = Field(..., min_length=1, description="Learner receiving access")
    course_id: str = Field(..., min_length=1, description="Course being granted")
    source: EntitlementSource = Field(
        default=EntitlementSource.ADMIN_GRANT, description="admin_grant or trial"
    )
    expires_at: Optional[datetime] = Field(default=None, description="Expiry (ISO 8601, aware)")
    expiration_in_days: Optional[int] = Field(
        default=None, gt=0, description="Expiry relative to now, in days"
    )
    reason: Optional[str] = Field(default=None, max_length=500, description="Reason for the audit log")

    @model_validator(mode="after")
    def check_single_expiry(self) -> "GrantRequest":
        if self.expires_at is not None and self.expiration_in_days is not None:
            raise ValueError("Give either expires_at or expiration_in_days, not both")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "learner_id": "learner_123",
                    "course_id": "course_python_101",
                    "source": "trial",
                    "expiration_in_days": 14,
                    "reason": "Scholarship cohort",
                }
            ]
        }
    }


class BulkGrantRequest(BaseModel):
    learner_ids: List[str] = Field(..., min_length=1, description="Learners receiving access")
    course_id: str = Field(..., min_length=1)
    source: EntitlementSource = Field(default=EntitlementSource.ADMIN_GRANT)
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class BulkGrantResponse(BaseModel):
    course_id: str
    committed: int


class RevokeRequest(BaseModel):
    learner_id: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)


class EntitlementResponse(BaseModel):
    """An entitlement with its lazily derived status."""

    model_config = ConfigDict(from_attributes=True)

    learner_id: str
    course_id: str
    status: str
    source: str
    generation: int
    is_active: bool
    granted_at: datetime
    expires_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    progress_percent: int = 0


class AccessResponse(BaseModel):
    learner_id: str
    course_id: str
    is_active: bool


class InitiateSettlementRequest(BaseModel):
    """Request schema for starting a purchase."""

    learner_id: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)
    instructor_id: str = Field(..., min_length=1)
    gross_amount: int = Field(..., gt=0, description="Price in the currency's smallest unit")
    promo_code: Optional[str] = Field(default=None, description="Optional promo code")
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Validate currency format."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "learner_id": "learner_123",
                    "course_id": "course_python_101",
                    "instructor_id": "instructor_42",
                    "gross_amount": 10000,
                    "promo_code": "AFRIQUE50",
                    "currency": "XOF",
                }
            ]
        }
    }


class ConfirmSettlementRequest(BaseModel):
    """Outcome reported by the payment provider callback."""

    success: bool
    provider_transaction_id: str = Field(..., min_length=1)
    failure_reason: Optional[str] = None


class FraudScoreRequest(BaseModel):
    risk_score: int = Field(..., ge=0, le=100)
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class SettlementResponse(BaseModel):
    """Response schema for a settlement."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    learner_id: str
    course_id: str
    instructor_id: str
    gross_amount: int
    discount_percent: int
    net_amount: int
    promo_code: Optional[str] = None
    currency: str
    status: str
    provider_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    is_suspicious: bool = False
    risk_score: Optional[int] = None
    reviewed: bool = False
    reviewed_by: Optional[str] = None


class CreatePromoRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    discount_percent: int = Field(..., ge=0, le=100)
    expires_at: Optional[datetime] = None


class PromoToggleRequest(BaseModel):
    is_active: bool


class PromoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    discount_percent: int
    is_active: bool
    expires_at: Optional[datetime] = None


class PromoResolutionResponse(BaseModel):
    code: str
    valid: bool
    discount_percent: Optional[int] = None
    reason: str


class PayoutRequestBody(BaseModel):
    """Request schema for an instructor withdrawal."""

    instructor_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0, description="Amount in the currency's smallest unit")
    method: str = Field(default=DEFAULT_PAYOUT_METHOD, min_length=1, max_length=50)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class PayoutDecisionRequest(BaseModel):
    decision: PayoutDecision
    note: Optional[str] = Field(default=None, max_length=500)


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    instructor_id: str
    amount: int
    currency: str
    method: str
    status: str
    requested_at: datetime
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    decision_note: Optional[str] = None


class AuditRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_id: str
    event_type: str
    target_type: str
    target_id: str
    details: str
    timestamp: datetime


class ReconciliationResponse(BaseModel):
    """Response schema for reconciliation."""

    repaired: int = Field(..., description="Settlements whose entitlement was granted")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
