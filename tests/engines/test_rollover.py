"""
Tests for quarter sequencing and the previous-quarter balances view.

All tests are pure: NO database.
"""

from decimal import Decimal

import pytest

from healthfin_engines.quarter_close import BalanceState, build_layout
from healthfin_engines.rollover import (
    QuarterRef,
    build_previous_balances,
    empty_previous_balances,
    get_quarter_sequence,
)
from healthfin_kernel.domain.dtos import Quarter

HIV = "HIV_EXEC_HOSPITAL_"


class TestQuarterSequence:
    """Navigation across the fiscal-year boundary."""

    def test_q1_without_prior_year(self):
        seq = get_quarter_sequence(Quarter.Q1, 2025)

        assert seq.previous is None
        assert not seq.has_previous
        assert seq.is_first_quarter
        assert not seq.is_cross_fiscal_year_rollover
        assert seq.next == QuarterRef(Quarter.Q2, 2025)

    def test_q1_with_prior_year_rolls_back_to_q4(self):
        seq = get_quarter_sequence(Quarter.Q1, 2025, has_cross_fiscal_year_previous=True)

        assert seq.previous == QuarterRef(Quarter.Q4, 2024)
        assert seq.is_cross_fiscal_year_rollover

    def test_q4_rolls_forward_to_next_year(self):
        seq = get_quarter_sequence(Quarter.Q4, 2025)

        assert seq.previous == QuarterRef(Quarter.Q3, 2025)
        assert seq.next == QuarterRef(Quarter.Q1, 2026)
        assert seq.has_next

    @pytest.mark.parametrize("label", ["Q3", "q3", "3", 3])
    def test_quarter_labels(self, label):
        seq = get_quarter_sequence(label, 2025)

        assert seq.current == QuarterRef(Quarter.Q3, 2025)
        assert seq.previous == QuarterRef(Quarter.Q2, 2025)

    def test_invalid_quarter(self):
        with pytest.raises(ValueError):
            get_quarter_sequence("Q5", 2025)

    def test_ref_serializes(self):
        assert QuarterRef(Quarter.Q2, 2025).to_dict() == {"quarter": "Q2", "year": 2025}


class TestPreviousBalances:
    """Shaping a closing position for the next quarter."""

    @pytest.fixture
    def layout(self, catalog):
        return build_layout(catalog, "HIV", "hospital")

    def test_sections(self, layout):
        state = BalanceState(
            cash=Decimal("15000"),
            vat={"FUEL": Decimal("300")},
            payables={HIV + "E_14": Decimal("200")},
            accumulated_surplus=Decimal("15100"),
        )

        balances = build_previous_balances(layout, state, Quarter.Q4, 2024, "exec-1")

        assert balances.exists
        assert balances.quarter is Quarter.Q4
        assert balances.year == 2024
        assert balances.execution_id == "exec-1"
        d = balances.closing_balances["D"]
        assert d[HIV + "D_1"] == Decimal("15000")
        assert d[HIV + "D_VAT_FUEL"] == Decimal("300")
        assert d["VAT_FUEL"] == Decimal("300")
        assert balances.closing_balances["VAT"]["FUEL"] == Decimal("300")
        assert balances.closing_balances["E"][HIV + "E_14"] == Decimal("200")
        assert balances.closing_balances["E"][HIV + "E_1"] == Decimal("0")
        g = balances.closing_balances["G"]
        assert g["accumulated_surplus"] == Decimal("15100")
        assert g["total"] == Decimal("15100")
        assert balances.totals["net_financial_assets"] == Decimal("15100")

    def test_negative_vat_is_floored(self, layout):
        state = BalanceState(vat={"FUEL": Decimal("-5")})

        balances = build_previous_balances(layout, state, Quarter.Q1, 2025)

        assert balances.closing_balances["VAT"]["FUEL"] == Decimal("0")
        assert balances.closing_balances["D"][HIV + "D_VAT_FUEL"] == Decimal("0")

    def test_empty_view(self):
        balances = empty_previous_balances()

        assert not balances.exists
        assert balances.closing_balances == {"D": {}, "E": {}, "VAT": {}, "G": {}}
        assert balances.to_dict()["quarter"] is None
        assert balances.totals["net_financial_assets"] == Decimal("0")

    def test_to_dict_stringifies_amounts(self, layout):
        state = BalanceState(cash=Decimal("10.50"), accumulated_surplus=Decimal("10.50"))

        data = build_previous_balances(layout, state, Quarter.Q2, 2025).to_dict()

        assert data["quarter"] == "Q2"
        assert data["closing_balances"]["D"][HIV + "D_1"] == "10.50"
        assert data["totals"]["financial_assets"] == "10.50"
