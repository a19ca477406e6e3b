"""
Module: healthfin_kernel.db.types
Responsibility: Annotated column type aliases and the sanctioned money
    conversion helpers.  Every model and service uses these so that quarter
    amounts, balances and budgets share one precision and one rounding rule.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, selectors/ and the engine layer.  MUST NOT import from any of
    those layers.

Invariants enforced:
    - No floats for money.  money_from_value() rejects float inputs that are
      not finite and converts through str() so binary noise never leaks in.
    - round_money() is the only sanctioned rounding function for persisted
      amounts; round_display() is the only one for presentation (2 places).

Failure modes:
    - ValueError on non-numeric, non-finite or boolean input.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated

from sqlalchemy import Numeric, String

Money = Annotated[Decimal, Numeric(38, 9)]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

ShortCode = Annotated[str, String(50)]

ActivityCode = Annotated[str, String(120)]

LongText = Annotated[str, String(4000)]

MONEY_DECIMAL_PLACES = 9
DISPLAY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


def money_from_value(value: object) -> Decimal:
    """
    Convert a boundary value to Decimal without silent coercion.

    Accepts Decimal, int, finite float and numeric strings.  Booleans,
    None, NaN and infinities are rejected.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Not a numeric amount: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Not a numeric amount: {value!r}") from exc
    else:
        raise ValueError(f"Not a numeric amount: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Amount must be finite: {value!r}")
    return result


def round_money(amount: Decimal, places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """Round a monetary amount to the storage precision."""
    quantize_str = "0." + "0" * places if places > 0 else "1"
    return amount.quantize(Decimal(quantize_str), rounding=DEFAULT_ROUNDING)


def round_display(amount: Decimal) -> Decimal:
    """Round a statement value to two places, half-up."""
    return round_money(amount, DISPLAY_DECIMAL_PLACES)
