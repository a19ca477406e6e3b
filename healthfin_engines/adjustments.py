"""
Double-Entry Adjustment Ledger -- paired balance movements.

Responsibility:
    Apply clearances and prior-year adjustments to a BalanceState.  Every
    operation returns a new state together with the two legs it posted,
    so callers can persist the movement and audit it.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    AdjustmentService persists the legs into quarter details and re-closes
    the quarter.

Invariants enforced:
    - Every operation posts exactly two legs that keep
      ``net_financial_assets - closing_balance`` unchanged.
    - A failed operation leaves the input state untouched (states are
      frozen; failures raise before a new state is built).
    - Prior-year adjustments never touch revenue or expense sections.

Failure modes:
    - ValidationError: amount not numeric, not finite or negative, a
      cash-reducing amount above available cash, or an unknown target or
      direction.
    - InsufficientBalanceError: clearance above the outstanding balance,
      with ``max_allowable_amount`` set to the outstanding amount.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

from healthfin_kernel.exceptions import InsufficientBalanceError, ValidationError
from healthfin_engines.quarter_close import BalanceState

ZERO = Decimal("0")

CASH = "CASH"
OTHER_RECEIVABLE = "OTHER_RECEIVABLE"
PRIOR_YEAR_ADJUSTMENT = "PRIOR_YEAR_ADJUSTMENT"


class AdjustmentTarget(str, Enum):
    PAYABLE = "payable"
    RECEIVABLE = "receivable"


class AdjustmentDirection(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    error: str | None = None
    max_allowable_amount: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "error": self.error,
            "max_allowable_amount": str(self.max_allowable_amount),
        }


@dataclass(frozen=True)
class AdjustmentEntry:
    """One leg; ``amount`` is the signed change of ``account``."""

    account: str
    amount: Decimal
    description: str = ""


@dataclass(frozen=True)
class AdjustmentResult:
    state: BalanceState
    entries: tuple[AdjustmentEntry, AdjustmentEntry]


def _parse_amount(amount: Any) -> Decimal | None:
    if isinstance(amount, bool) or amount is None:
        return None
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


def validate_adjustment(
    amount: Any,
    available_cash: Decimal,
    reduces_cash: bool = True,
) -> ValidationResult:
    """
    Check an adjustment amount.  Never raises.

    ``max_allowable_amount`` is ``max(0, available_cash)``.
    """
    max_allowable = max(ZERO, available_cash)
    value = _parse_amount(amount)
    if value is None:
        return ValidationResult(False, "Amount must be a finite number", max_allowable)
    if value < ZERO:
        return ValidationResult(False, "Amount must not be negative", max_allowable)
    if reduces_cash and value > available_cash:
        return ValidationResult(
            False,
            f"Amount {value} exceeds available cash {max_allowable}",
            max_allowable,
        )
    return ValidationResult(True, None, max_allowable)


def _require(result: ValidationResult) -> None:
    if not result.is_valid:
        raise ValidationError(
            result.error or "Invalid adjustment amount",
            field_errors=[
                {
                    "field": "amount",
                    "message": result.error,
                    "max_allowable_amount": str(result.max_allowable_amount),
                }
            ],
        )


def _choice(enum_type: type[Enum], value: Any, field: str) -> Any:
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_type)
        raise ValidationError(
            f"Invalid {field}: {value!r}",
            field_errors=[{"field": field, "message": f"Must be one of: {choices}"}],
        ) from None


def _amount(amount: Any) -> Decimal:
    # cash is not bounded here; only the amount itself is checked
    result = validate_adjustment(amount, ZERO, reduces_cash=False)
    _require(result)
    return _parse_amount(amount)  # type: ignore[return-value]


def clear_vat(state: BalanceState, category: str, amount: Any) -> AdjustmentResult:
    """VAT refund received: VAT receivable down, cash up."""
    value = _amount(amount)
    outstanding = state.vat.get(category, ZERO)
    if value > outstanding:
        raise InsufficientBalanceError(f"VAT_{category}", value, outstanding)

    new_state = replace(
        state.with_vat(category, outstanding - value),
        cash=state.cash + value,
    )
    return AdjustmentResult(
        new_state,
        (
            AdjustmentEntry(f"VAT_{category}", -value, "VAT receivable cleared"),
            AdjustmentEntry(CASH, value, "VAT refund received"),
        ),
    )


def clear_payable(state: BalanceState, code: str, amount: Any) -> AdjustmentResult:
    """Payable settled: payable down, cash down."""
    value = _amount(amount)
    outstanding = state.payables.get(code, ZERO)
    if value > outstanding:
        raise InsufficientBalanceError(code, value, outstanding)
    _require(validate_adjustment(value, state.cash))

    new_state = replace(state.with_payable(code, outstanding - value), cash=state.cash - value)
    return AdjustmentResult(
        new_state,
        (
            AdjustmentEntry(code, -value, "Payable cleared"),
            AdjustmentEntry(CASH, -value, "Payable paid"),
        ),
    )


def clear_other_receivable(state: BalanceState, amount: Any) -> AdjustmentResult:
    """Other receivable collected: receivable down, cash up."""
    value = _amount(amount)
    outstanding = state.other_receivable
    if value > outstanding:
        raise InsufficientBalanceError(OTHER_RECEIVABLE, value, outstanding)

    new_state = replace(
        state,
        other_receivable=outstanding - value,
        cash=state.cash + value,
    )
    return AdjustmentResult(
        new_state,
        (
            AdjustmentEntry(OTHER_RECEIVABLE, -value, "Other receivable cleared"),
            AdjustmentEntry(CASH, value, "Other receivable collected"),
        ),
    )


def record_other_receivable(state: BalanceState, amount: Any) -> AdjustmentResult:
    """Miscellaneous advance: cash down, other receivable up."""
    value = _amount(amount)
    _require(validate_adjustment(value, state.cash))

    new_state = replace(
        state,
        other_receivable=state.other_receivable + value,
        cash=state.cash - value,
    )
    return AdjustmentResult(
        new_state,
        (
            AdjustmentEntry(OTHER_RECEIVABLE, value, "Other receivable recorded"),
            AdjustmentEntry(CASH, -value, "Cash advanced"),
        ),
    )


def apply_prior_year_adjustment(
    state: BalanceState,
    code: str,
    target: AdjustmentTarget | str,
    direction: AdjustmentDirection | str,
    amount: Any,
) -> AdjustmentResult:
    """
    Restate a carried-forward payable or receivable.

    The prior-year adjustment component of G moves by the same amount so
    that net assets and the closing balance stay equal: a payable
    increase and a receivable decrease both reduce it.
    """
    value = _amount(amount)
    target = _choice(AdjustmentTarget, target, "target")
    direction = _choice(AdjustmentDirection, direction, "direction")
    signed = value if direction is AdjustmentDirection.INCREASE else -value

    if target is AdjustmentTarget.PAYABLE:
        outstanding = state.payables.get(code, ZERO)
        if outstanding + signed < ZERO:
            raise InsufficientBalanceError(code, value, outstanding)
        new_state = replace(
            state.with_payable(code, outstanding + signed),
            prior_year_adjustments=state.prior_year_adjustments - signed,
        )
        legs = (
            AdjustmentEntry(code, signed, "Prior year payable restated"),
            AdjustmentEntry(PRIOR_YEAR_ADJUSTMENT, -signed, "Prior year adjustment"),
        )
    else:
        outstanding = state.other_receivable
        if outstanding + signed < ZERO:
            raise InsufficientBalanceError(code, value, outstanding)
        new_state = replace(
            state,
            other_receivable=outstanding + signed,
            prior_year_adjustments=state.prior_year_adjustments + signed,
        )
        legs = (
            AdjustmentEntry(code, signed, "Prior year receivable restated"),
            AdjustmentEntry(PRIOR_YEAR_ADJUSTMENT, signed, "Prior year adjustment"),
        )

    return AdjustmentResult(new_state, legs)


def apply_prior_year_cash_adjustment(
    state: BalanceState,
    direction: AdjustmentDirection | str,
    amount: Any,
) -> AdjustmentResult:
    """Restate opening cash; the G-01 cash line moves with it."""
    value = _amount(amount)
    direction = _choice(AdjustmentDirection, direction, "direction")
    if direction is AdjustmentDirection.DECREASE:
        _require(validate_adjustment(value, state.cash))
    signed = value if direction is AdjustmentDirection.INCREASE else -value

    new_state = replace(
        state,
        cash=state.cash + signed,
        prior_year_adjustments=state.prior_year_adjustments + signed,
    )
    return AdjustmentResult(
        new_state,
        (
            AdjustmentEntry(CASH, signed, "Prior year cash restated"),
            AdjustmentEntry(PRIOR_YEAR_ADJUSTMENT, signed, "Prior year adjustment"),
        ),
    )
