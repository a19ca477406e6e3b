"""
Tests for the double-entry adjustment ledger.

Covers:
- VAT, payable and other receivable clearances
- Other receivable recording against available cash
- Prior-year payable, receivable and cash restatements
- Amount validation and max_allowable_amount reporting
- Every operation keeps ``(D - E) - G`` unchanged

All tests are pure: NO database.
"""

from decimal import Decimal

import pytest

from healthfin_engines.adjustments import (
    AdjustmentDirection,
    AdjustmentTarget,
    apply_prior_year_adjustment,
    apply_prior_year_cash_adjustment,
    clear_other_receivable,
    clear_payable,
    clear_vat,
    record_other_receivable,
    validate_adjustment,
)
from healthfin_engines.quarter_close import BalanceState
from healthfin_kernel.exceptions import InsufficientBalanceError, ValidationError

PAYABLE = "HIV_EXEC_HOSPITAL_E_1"
RECEIVABLE = "HIV_EXEC_HOSPITAL_D_D-01_5"


@pytest.fixture
def state():
    """Balanced position: 48700 cash + 300 VAT + 100 receivable - 500 payable."""
    return BalanceState(
        cash=Decimal("48700"),
        vat={"FUEL": Decimal("300")},
        payables={PAYABLE: Decimal("500")},
        other_receivable=Decimal("100"),
        accumulated_surplus=Decimal("50000"),
        surplus=Decimal("-1400"),
    )


def _gap(state: BalanceState) -> Decimal:
    return state.net_financial_assets - state.closing_balance


# =============================================================================
# Clearances
# =============================================================================


class TestClearVat:
    """VAT refund received."""

    def test_clear_moves_vat_into_cash(self, state):
        result = clear_vat(state, "FUEL", "300")

        assert result.state.vat["FUEL"] == Decimal("0")
        assert result.state.cash == Decimal("49000")
        assert [(e.account, e.amount) for e in result.entries] == [
            ("VAT_FUEL", Decimal("-300")),
            ("CASH", Decimal("300")),
        ]

    def test_clear_above_outstanding_raises(self, state):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            clear_vat(state, "FUEL", "500")

        assert exc_info.value.max_allowable_amount == Decimal("300")
        assert exc_info.value.balance_code == "VAT_FUEL"

    def test_failed_clear_leaves_state_untouched(self, state):
        before = state
        with pytest.raises(InsufficientBalanceError):
            clear_vat(state, "FUEL", "500")

        assert state == before
        assert state.vat["FUEL"] == Decimal("300")

    def test_unknown_category_has_nothing_outstanding(self, state):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            clear_vat(state, "SUPPLIES", "1")

        assert exc_info.value.max_allowable_amount == Decimal("0")


class TestClearPayable:
    """Payable settled from cash."""

    def test_clear_reduces_payable_and_cash(self, state):
        result = clear_payable(state, PAYABLE, Decimal("200"))

        assert result.state.payables[PAYABLE] == Decimal("300")
        assert result.state.cash == Decimal("48500")

    def test_clear_above_outstanding_raises(self, state):
        with pytest.raises(InsufficientBalanceError) as exc_info:
            clear_payable(state, PAYABLE, Decimal("600"))

        assert exc_info.value.max_allowable_amount == Decimal("500")

    def test_clear_above_cash_is_a_validation_error(self):
        poor = BalanceState(cash=Decimal("100"), payables={PAYABLE: Decimal("500")})

        with pytest.raises(ValidationError) as exc_info:
            clear_payable(poor, PAYABLE, Decimal("300"))

        assert exc_info.value.field_errors[0]["max_allowable_amount"] == "100"


class TestOtherReceivable:
    """Recording and collecting other receivables."""

    def test_collect(self, state):
        result = clear_other_receivable(state, "60")

        assert result.state.other_receivable == Decimal("40")
        assert result.state.cash == Decimal("48760")

    def test_collect_above_outstanding_raises(self, state):
        with pytest.raises(InsufficientBalanceError):
            clear_other_receivable(state, "101")

    def test_record_advances_cash(self, state):
        result = record_other_receivable(state, "1000")

        assert result.state.other_receivable == Decimal("1100")
        assert result.state.cash == Decimal("47700")

    def test_record_above_cash_is_rejected(self, state):
        with pytest.raises(ValidationError):
            record_other_receivable(state, "50000")


# =============================================================================
# Prior-year adjustments
# =============================================================================


class TestPriorYearAdjustments:
    """Restating carried-forward balances through G-01."""

    def test_payable_increase_reduces_prior_year_adjustment(self, state):
        result = apply_prior_year_adjustment(
            state, PAYABLE, AdjustmentTarget.PAYABLE, AdjustmentDirection.INCREASE, "50"
        )

        assert result.state.payables[PAYABLE] == Decimal("550")
        assert result.state.prior_year_adjustments == Decimal("-50")

    def test_payable_decrease_below_zero_raises(self, state):
        with pytest.raises(InsufficientBalanceError):
            apply_prior_year_adjustment(state, PAYABLE, "payable", "decrease", "501")

    def test_receivable_decrease(self, state):
        result = apply_prior_year_adjustment(state, RECEIVABLE, "receivable", "decrease", "30")

        assert result.state.other_receivable == Decimal("70")
        assert result.state.prior_year_adjustments == Decimal("-30")

    def test_cash_increase(self, state):
        result = apply_prior_year_cash_adjustment(state, AdjustmentDirection.INCREASE, "25")

        assert result.state.cash == Decimal("48725")
        assert result.state.prior_year_adjustments == Decimal("25")

    def test_cash_decrease_above_cash_is_rejected(self, state):
        with pytest.raises(ValidationError):
            apply_prior_year_cash_adjustment(state, "decrease", "48701")

    def test_unknown_direction_is_rejected(self, state):
        with pytest.raises(ValidationError) as exc_info:
            apply_prior_year_cash_adjustment(state, "sideways", "1")

        assert exc_info.value.field_errors[0]["field"] == "direction"
        assert "increase, decrease" in exc_info.value.field_errors[0]["message"]

    def test_unknown_target_is_rejected(self, state):
        with pytest.raises(ValidationError) as exc_info:
            apply_prior_year_adjustment(state, PAYABLE, "inventory", "increase", "1")

        assert exc_info.value.field_errors[0]["field"] == "target"

    def test_unknown_payable_direction_is_rejected(self, state):
        with pytest.raises(ValidationError):
            apply_prior_year_adjustment(state, PAYABLE, "payable", "up", "1")


# =============================================================================
# Invariants
# =============================================================================


OPERATIONS = [
    pytest.param(lambda s: clear_vat(s, "FUEL", "120"), id="clear_vat"),
    pytest.param(lambda s: clear_payable(s, PAYABLE, "200"), id="clear_payable"),
    pytest.param(lambda s: clear_other_receivable(s, "60"), id="clear_other_receivable"),
    pytest.param(lambda s: record_other_receivable(s, "75"), id="record_other_receivable"),
    pytest.param(
        lambda s: apply_prior_year_adjustment(s, PAYABLE, "payable", "increase", "40"),
        id="pya_payable_increase",
    ),
    pytest.param(
        lambda s: apply_prior_year_adjustment(s, PAYABLE, "payable", "decrease", "40"),
        id="pya_payable_decrease",
    ),
    pytest.param(
        lambda s: apply_prior_year_adjustment(s, RECEIVABLE, "receivable", "increase", "40"),
        id="pya_receivable_increase",
    ),
    pytest.param(
        lambda s: apply_prior_year_cash_adjustment(s, "decrease", "40"),
        id="pya_cash_decrease",
    ),
]


class TestEquationPreserved:
    """Every adjustment posts two legs and keeps the equation gap."""

    @pytest.mark.parametrize("operation", OPERATIONS)
    def test_gap_unchanged(self, state, operation):
        result = operation(state)

        assert _gap(result.state) == _gap(state)
        assert len(result.entries) == 2

    def test_fixture_is_balanced(self, state):
        assert _gap(state) == Decimal("0")


# =============================================================================
# validate_adjustment
# =============================================================================


class TestValidateAdjustment:
    """Amount checks never raise."""

    def test_valid(self):
        result = validate_adjustment("100", Decimal("500"))

        assert result.is_valid
        assert result.max_allowable_amount == Decimal("500")

    @pytest.mark.parametrize("amount", ["abc", None, True, "NaN", "Infinity"])
    def test_not_a_finite_number(self, amount):
        result = validate_adjustment(amount, Decimal("500"))

        assert not result.is_valid
        assert result.error == "Amount must be a finite number"

    def test_negative(self):
        result = validate_adjustment("-1", Decimal("500"))

        assert not result.is_valid
        assert result.error == "Amount must not be negative"

    def test_exceeds_cash(self):
        result = validate_adjustment("600", Decimal("500"))

        assert not result.is_valid
        assert "exceeds available cash" in result.error

    def test_exceeding_cash_allowed_when_cash_not_reduced(self):
        assert validate_adjustment("600", Decimal("500"), reduces_cash=False).is_valid

    def test_max_allowable_floors_negative_cash(self):
        result = validate_adjustment("1", Decimal("-20"))

        assert result.max_allowable_amount == Decimal("0")
        assert result.to_dict()["max_allowable_amount"] == "0"

    def test_negative_amount_raises_from_operations(self, state):
        with pytest.raises(ValidationError):
            clear_vat(state, "FUEL", "-5")
