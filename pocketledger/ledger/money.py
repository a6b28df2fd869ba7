"""
Money & FX Normalizer

Pure functions for amounts, rates and currency codes.

DESIGN DECISION: Amounts are Decimal end to end. Inputs with more
precision than we store are REJECTED, not rounded, so the number a user
typed is the number on the ledger. amount_base is the exact product
amount * fx_rate_to_base and can always be recomputed from the record.
"""

from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any

from pocketledger.errors import ValidationError


MAX_AMOUNT_PLACES = 8      # covers crypto sub-units
MAX_RATE_PLACES = 10
FX_EPSILON = Decimal("0.0001")

_RATE_QUANTUM = Decimal(1).scaleb(-MAX_RATE_PLACES)


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Parse a JSON-ish number into a Decimal.

    Accepts Decimal, int, float and numeric strings. Booleans, None,
    NaN and infinities are rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")

    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, int):
            result = Decimal(value)
        elif isinstance(value, float):
            # str() gives the shortest repr, avoiding binary noise
            result = Decimal(str(value))
        elif isinstance(value, str):
            result = Decimal(value.strip())
        else:
            raise ValidationError(f"{field} must be a number")
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")

    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def decimal_places(value: Decimal) -> int:
    """Significant decimal places (trailing zeros ignored)."""
    exponent = value.normalize().as_tuple().exponent
    return max(0, -exponent)


def require_positive(
    value: Any,
    field: str = "amount",
    max_places: int = MAX_AMOUNT_PLACES,
) -> Decimal:
    """Parse a strictly positive Decimal with bounded precision."""
    result = to_decimal(value, field)
    if result <= 0:
        raise ValidationError(f"{field} must be a positive number")
    if decimal_places(result) > max_places:
        raise ValidationError(
            f"{field} must have at most {max_places} decimal places"
        )
    return result


def to_base(amount: Any, rate: Any) -> Decimal:
    """Convert an amount in its native currency to the base currency."""
    amount = require_positive(amount, "amount")
    rate = require_positive(rate, "fx_rate_to_base", MAX_RATE_PLACES)
    return amount * rate


def type_to_delta(txn_type: str, amount: Decimal) -> Decimal:
    """Signed balance contribution of a transaction."""
    kind = getattr(txn_type, "value", txn_type)
    return -amount if kind == "expense" else amount


def normalize_currency(code: Any, field: str = "currency") -> str:
    """Normalize an ISO-4217 code to upper case."""
    if not isinstance(code, str):
        raise ValidationError(f"{field} must be a 3-letter ISO code")
    value = code.strip()
    if len(value) != 3 or not value.isascii() or not value.isalpha():
        raise ValidationError(f"{field} must be a 3-letter ISO code")
    return value.upper()


def ensure_currency_match(txn_currency: Any, account_currency: str) -> str:
    """
    Check a transaction currency against its account.

    Returns the account currency. A mismatch is an error, never corrected.
    """
    currency = normalize_currency(txn_currency)
    if currency != account_currency:
        raise ValidationError(
            "Transaction currency must match account currency",
            details={"currency": currency, "account_currency": account_currency},
        )
    return account_currency


def normalize_rate(rate: Any) -> Decimal:
    """Quantize a provider rate so repeated fetches compare stably."""
    value = to_decimal(rate, "rate")
    return value.quantize(_RATE_QUANTUM, rounding=ROUND_HALF_EVEN)


def rate_changed(current: Any, latest: Decimal, epsilon: Decimal = FX_EPSILON) -> bool:
    """True when the stored rate is at least epsilon away from the latest."""
    try:
        current_value = to_decimal(current, "fx_rate_to_base")
    except ValidationError:
        # Missing or corrupt stored rate always counts as changed
        return True
    return abs(current_value - latest) >= epsilon
