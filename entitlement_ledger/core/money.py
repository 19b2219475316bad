"""Amount arithmetic in the currency's smallest unit."""
from decimal import ROUND_HALF_UP, Decimal

from entitlement_ledger.core.errors import LedgerValidationError


def validate_discount_percent(discount_percent: int) -> int:
    if isinstance(discount_percent, bool) or not isinstance(discount_percent, int):
        raise LedgerValidationError("Discount percent must be an integer")
    if not 0 <= discount_percent <= 100:
        raise LedgerValidationError("Discount percent must be between 0 and 100")
    return discount_percent


def validate_amount(amount: int, field: str = "Amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise LedgerValidationError(f"{field} must be an integer in the currency's smallest unit")
    if amount <= 0:
        raise LedgerValidationError(f"{field} must be positive")
    return amount


def validate_currency(currency: str) -> str:
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise LedgerValidationError("Currency must be 3-letter code")
    return currency.upper()


def compute_net_amount(gross_amount: int, discount_percent: int) -> int:
    """
    Net amount after discount, rounded half-up to the smallest unit.

    >>> compute_net_amount(10000, 50)
    5000
    >>> compute_net_amount(999, 15)
    849
    """
    net = Decimal(gross_amount) * (Decimal(100) - Decimal(discount_percent)) / Decimal(100)
    return int(net.quantize(Decimal(1), rounding=ROUND_HALF_UP))
