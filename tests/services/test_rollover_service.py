"""
Tests for RolloverService and the fiscal-year carry of balances.

Covers:
- Quarter sequence with and without a prior fiscal year
- Previous quarter balances inside a year and across the year boundary
- Q1 of a new year opens from the prior year's Q4 closing position
"""

from decimal import Decimal

import pytest

from healthfin_engines.rollover import QuarterRef
from healthfin_kernel.domain.dtos import Quarter
from healthfin_kernel.exceptions import ValidationError

HIV = "HIV_EXEC_HOSPITAL_"


@pytest.fixture
def prior_year(create_period, update):
    """FY2024: 10000 opening, 5000 received in Q4."""
    prior = create_period(2024)
    update("Q1", reporting_period=prior, D_1={"opening": "10000"})
    update("Q4", reporting_period=prior, A_2={"amount": "5000"})
    return prior


class TestQuarterSequence:
    """Navigation with the ledger deciding cross-year availability."""

    def test_q1_without_prior_year(self, rollover_service, hospital, period):
        seq = rollover_service.get_quarter_sequence(hospital.id, period.id, "HIV", "Q1")

        assert seq.previous is None
        assert seq.next == QuarterRef(Quarter.Q2, 2025)

    def test_q1_with_prior_year_data(self, prior_year, rollover_service, hospital, period):
        seq = rollover_service.get_quarter_sequence(hospital.id, period.id, "HIV", "Q1")

        assert seq.previous == QuarterRef(Quarter.Q4, 2024)
        assert seq.is_cross_fiscal_year_rollover

    def test_empty_prior_year_is_ignored(self, create_period, rollover_service, hospital, period):
        create_period(2024)

        seq = rollover_service.get_quarter_sequence(hospital.id, period.id, "HIV", "Q1")

        assert seq.previous is None

    def test_invalid_quarter(self, rollover_service, hospital, period):
        with pytest.raises(ValidationError):
            rollover_service.get_quarter_sequence(hospital.id, period.id, "HIV", "Q0")


class TestPreviousQuarterBalances:
    """Closing balances of the quarter before the one being entered."""

    def test_nothing_before_first_quarter(self, rollover_service, hospital, period):
        balances = rollover_service.get_previous_quarter_balances(
            hospital.id, period.id, "HIV", "Q1"
        )

        assert not balances.exists

    def test_within_year(self, update, rollover_service, hospital, period):
        update(
            "Q1",
            D_1={"opening": "50000"},
            **{"B_B-04_3": {"amount": "1000", "vat_amount": "300"}},
        )

        balances = rollover_service.get_previous_quarter_balances(
            hospital.id, period.id, "HIV", "Q2"
        )

        assert balances.exists
        assert balances.quarter is Quarter.Q1
        assert balances.year == 2025
        assert balances.closing_balances["D"][HIV + "D_1"] == Decimal("48700")
        assert balances.closing_balances["VAT"]["FUEL"] == Decimal("300")
        assert balances.closing_balances["G"]["total"] == Decimal("49000")
        assert balances.execution_id is not None

    def test_previous_quarter_without_data(self, update, rollover_service, hospital, period):
        update("Q1", A_1={"amount": "1"})

        balances = rollover_service.get_previous_quarter_balances(
            hospital.id, period.id, "HIV", "Q3"
        )

        assert not balances.exists

    def test_across_fiscal_years(self, prior_year, rollover_service, hospital, period):
        balances = rollover_service.get_previous_quarter_balances(
            hospital.id, period.id, "HIV", "Q1"
        )

        assert balances.exists
        assert balances.quarter is Quarter.Q4
        assert balances.year == 2024
        assert balances.closing_balances["D"][HIV + "D_1"] == Decimal("15000")
        assert balances.closing_balances["G"]["accumulated_surplus"] == Decimal("15000")


class TestYearOpening:
    """Q1 opens from the prior fiscal year when it holds data."""

    def test_q1_opens_from_prior_q4(self, prior_year, update, stored_value):
        update("Q1", A_1={"amount": "1000"})

        assert stored_value("D_1", "Q1") == Decimal("16000")
        assert stored_value("G_1", "Q1") == Decimal("15000")

    def test_declared_opening_ignored_when_prior_year_exists(
        self, prior_year, update, stored_value
    ):
        update("Q1", D_1={"opening": "99999"}, A_1={"amount": "1000"})

        assert stored_value("D_1", "Q1") == Decimal("16000")
