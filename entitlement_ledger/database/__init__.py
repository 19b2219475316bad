"""Database package for the entitlement ledger."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_db,
    get_session_factory,
    init_db,
)
from .models import (
    AuditRecord,
    Base,
    Entitlement,
    PayoutRequest,
    PromoCode,
    Settlement,
    UserAccount,
)

__all__ = [
    "Base",
    "AuditRecord",
    "Entitlement",
    "PayoutRequest",
    "PromoCode",
    "Settlement",
    "UserAccount",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "get_db",
    "get_session_factory",
    "init_db",
]
