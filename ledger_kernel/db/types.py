"""
Module: ledger_kernel.db.types
Responsibility: Annotated column types and helpers for monetary values.
    Centralizes precision, rounding, amount parsing and currency validation so
    every model and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, services/,
    selectors/ and domain/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats anywhere in the ledger.  ``to_money()`` rejects float input;
      every amount is a Decimal with explicit precision.
    - Currency codes are 3-letter ISO 4217 codes.

Failure modes:
    - ValidationError on float, non-numeric, NaN or infinite amounts.
    - ValidationError on unknown currency codes.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any

from sqlalchemy import Numeric, String

from ledger_kernel.exceptions import ValidationError

# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# ISO 4217 currency code
Currency = Annotated[str, String(3)]

# SHA-256 hex digest
PayloadHash = Annotated[str, String(64)]

MONEY_DECIMAL_PLACES = 9
DISPLAY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP


def round_money(
    value: Decimal,
    decimal_places: int = DISPLAY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a Decimal to a fixed number of places (half-up by default)."""
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


def to_money(value: Any, field: str = "amount") -> Decimal:
    """
    Coerce an input amount to Decimal.

    Accepts Decimal, int and numeric strings.  Floats are refused because
    they cannot represent most cent values exactly.

    Raises:
        ValidationError: If the value is a float, bool, non-numeric or not finite.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(
            f"{field} must be a Decimal, int or numeric string, not {type(value).__name__}",
            field=field,
        )
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} is not a valid number: {value!r}", field=field) from exc
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite: {value!r}", field=field)
    return amount


# ISO 4217 codes accepted by the payment platform
ISO_4217_CURRENCIES: frozenset[str] = frozenset({
    "AED", "AUD", "BDT", "BHD", "BRL", "CAD", "CHF", "CNY", "CZK", "DKK",
    "EGP", "EUR", "GBP", "HKD", "HUF", "IDR", "ILS", "INR", "JPY", "KES",
    "KRW", "KWD", "LKR", "MXN", "MYR", "NGN", "NOK", "NPR", "NZD", "OMR",
    "PHP", "PKR", "PLN", "QAR", "RON", "SAR", "SEK", "SGD", "THB", "TRY",
    "TWD", "UAH", "USD", "VND", "ZAR",
})


def validate_currency(currency: Any) -> str:
    """
    Validate and normalize an ISO 4217 currency code.

    Returns:
        The uppercase, trimmed code.

    Raises:
        ValidationError: If the code is not a known ISO 4217 code.
    """
    if not isinstance(currency, str) or not currency.strip():
        raise ValidationError(f"Invalid currency code: {currency!r}", field="currency")
    normalized = currency.strip().upper()
    if normalized not in ISO_4217_CURRENCIES:
        raise ValidationError(f"Invalid ISO 4217 currency code: {currency!r}", field="currency")
    return normalized
