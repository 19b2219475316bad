"""SQLAlchemy database models for the entitlement & settlement ledger."""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from entitlement_ledger.core.errors import AuditLogImmutableError, NotFoundError
from entitlement_ledger.core.money import compute_net_amount


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    DateTime that always round-trips as an aware UTC value.

    SQLite drops the offset on the way in; values read back are naive and
    are re-tagged as UTC here so comparisons against ``utcnow()`` work on
    every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Role(str, enum.Enum):
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class EntitlementStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class EntitlementSource(str, enum.Enum):
    PURCHASE = "purchase"
    ADMIN_GRANT = "admin_grant"
    TRIAL = "trial"


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class UserAccount(Base):
    """
    Live role and status for a subject issued by the identity provider.

    Read on every privileged call; never cached by callers.
    """

    __tablename__ = "user_accounts"

    subject_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=Role.STUDENT.value)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountStatus.ACTIVE.value
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("role IN ('student', 'instructor', 'admin')", name="valid_role"),
        CheckConstraint("status IN ('active', 'suspended')", name="valid_account_status"),
    )

    def __repr__(self) -> str:
        return f"<UserAccount(subject_id={self.subject_id}, role={self.role}, status={self.status})>"


class Entitlement(Base):
    """
    A learner's access right to one course.

    Rows are never deleted. Each (learner, course) pair has numbered
    generations and the highest one is current; re-granting after expiry or
    revocation inserts the next generation so the history is preserved.
    """

    __tablename__ = "entitlements"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    learner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    granted_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    settlement_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    # Owned by the progress tracker; read-only here.
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("learner_id", "course_id", "generation", name="uq_entitlement_generation"),
        CheckConstraint("status IN ('active', 'expired', 'revoked')", name="valid_entitlement_status"),
        CheckConstraint(
            "source IN ('purchase', 'admin_grant', 'trial')", name="valid_entitlement_source"
        ),
        CheckConstraint(
            "progress_percent >= 0 AND progress_percent <= 100", name="valid_progress_percent"
        ),
        Index("idx_entitlements_learner_course", "learner_id", "course_id"),
    )

    def effective_status(self, now: Optional[datetime] = None) -> EntitlementStatus:
        """
        Status as every reader must see it.

        A record whose expiry has passed reads as expired even when the
        stored status still says active.
        """
        stored = EntitlementStatus(self.status)
        if stored is EntitlementStatus.REVOKED:
            return stored
        now = now or utcnow()
        if self.expires_at is not None and self.expires_at <= now:
            return EntitlementStatus.EXPIRED
        return stored

    def __repr__(self) -> str:
        return (
            f"<Entitlement(learner_id={self.learner_id}, course_id={self.course_id}, "
            f"generation={self.generation}, status={self.status})>"
        )


class Settlement(Base):
    """
    One payment attempt and its outcome.

    ``net_amount`` is derived from ``gross_amount`` and ``discount_percent``
    on every read and has no column of its own.
    """

    __tablename__ = "settlements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    learner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    instructor_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    gross_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    promo_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    entitlement_granted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Fraud review
    is_suspicious: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    risk_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    risk_checked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("gross_amount > 0", name="positive_gross_amount"),
        CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100", name="valid_discount_percent"
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="valid_settlement_status",
        ),
        CheckConstraint(
            "risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)",
            name="valid_risk_score",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_settlements_status_granted", "status", "entitlement_granted_at"),
    )

    @property
    def net_amount(self) -> int:
        return compute_net_amount(self.gross_amount, self.discount_percent)

    def __repr__(self) -> str:
        return (
            f"<Settlement(id={self.id}, learner_id={self.learner_id}, "
            f"gross={self.gross_amount}, status={self.status})>"
        )


class PromoCode(Base):
    """Promotional code keyed by its normalized (uppercased) form."""

    __tablename__ = "promo_codes"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "discount_percent >= 0 AND discount_percent <= 100", name="valid_promo_discount"
        ),
    )

    def __repr__(self) -> str:
        return f"<PromoCode(code={self.code}, discount={self.discount_percent}, active={self.is_active})>"


class PayoutRequest(Base):
    """Instructor withdrawal request."""

    __tablename__ = "payout_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    instructor_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    decided_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    decision_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_payout_amount"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')", name="valid_payout_status"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PayoutRequest(id={self.id}, instructor_id={self.instructor_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class AuditRecord(Base):
    """
    Administrative audit trail.

    Append-only: the ORM refuses updates and deletes (see the listeners
    below).
    """

    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str] = mapped_column(String(64), nullable=False)
    target_id: Mapped[str] = mapped_column(String(300), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_audit_log_actor", "actor_id"),
        Index("idx_audit_log_target", "target_type", "target_id"),
        Index("idx_audit_log_event_type", "event_type"),
        Index("idx_audit_log_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditRecord(id={self.id}, actor_id={self.actor_id}, "
            f"event_type={self.event_type}, target_id={self.target_id})>"
        )


@event.listens_for(AuditRecord, "before_update")
def _refuse_audit_update(mapper, connection, target: AuditRecord) -> None:
    raise AuditLogImmutableError(f"Audit record {target.id} cannot be modified")


@event.listens_for(AuditRecord, "before_delete")
def _refuse_audit_delete(mapper, connection, target: AuditRecord) -> None:
    raise AuditLogImmutableError(f"Audit record {target.id} cannot be deleted")


def parse_record_id(value, entity: str) -> uuid.UUID:
    """Coerce a caller-supplied id; an unparsable id cannot name an existing record."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{entity} {value!r} not found")
