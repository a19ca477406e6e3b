"""
Tests for the Data Aggregation Engine.

Covers:
- Stock sections (D, E) contribute their balance, never a quarter sum
- Flow sections (A, B, G, X) contribute the quarter sum
- ``as_of`` bounds for flows and stocks
- Fan-out and fan-in through the catalog adjacency
- Skipped entries (no section, unknown activity, malformed amount)
- Unmapped reported activities produce warnings, not errors
- Declared Q1 openings as a first-year baseline

All tests are pure: NO database.
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from healthfin_engines.aggregation import (
    aggregate,
    declared_opening_buckets,
    entry_contribution,
    with_opening_cash,
)
from healthfin_kernel.domain.catalog import ActivityCatalog, ActivityDef
from healthfin_kernel.domain.dtos import ExecutionEntryData, Quarter, Section

HIV = "HIV_EXEC_HOSPITAL_"
FACILITY = "facility-1"


def _entry(key_or_code: str, **values) -> ExecutionEntryData:
    code = key_or_code if "_EXEC_" in key_or_code or "_PLAN_" in key_or_code else HIV + key_or_code
    return ExecutionEntryData(
        activity_code=code,
        facility_id=values.pop("facility_id", FACILITY),
        reporting_period_id="period-2025",
        project_type="HIV",
        **values,
    )


amounts = st.decimals(
    min_value=Decimal("-1000000"),
    max_value=Decimal("1000000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)


# =============================================================================
# Section rules
# =============================================================================


class TestSectionRules:
    """Stock and flow contributions."""

    def test_flow_sums_quarters(self, catalog):
        entry = _entry("A_2", q1=Decimal("100"), q2=Decimal("200"), q4=Decimal("50"))

        result = aggregate(catalog=catalog, entries=[entry])

        assert result.bucket("TRANSFERS_PUBLIC_ENTITIES") == Decimal("350")

    def test_stock_uses_cumulative_balance(self, catalog):
        """A cash balance of 700 is never reported as 100 + 300 + 700."""
        entry = _entry(
            "D_1",
            q1=Decimal("100"),
            q2=Decimal("300"),
            q3=Decimal("700"),
            cumulative_balance=Decimal("700"),
        )

        result = aggregate(catalog=catalog, entries=[entry])

        assert result.bucket("CASH_EQUIVALENTS_END") == Decimal("700")

    def test_stock_without_balance_takes_latest_entered_quarter(self, catalog):
        entry = _entry("E_1", q1=Decimal("400"), q2=Decimal("250"))

        result = aggregate(catalog=catalog, entries=[entry])

        assert result.bucket("PAYABLES") == Decimal("250")

    def test_as_of_bounds_flows_and_stocks(self, catalog):
        revenue = _entry("A_1", q1=Decimal("10"), q2=Decimal("20"), q3=Decimal("30"))
        cash = _entry(
            "D_1",
            q1=Decimal("100"),
            q2=Decimal("120"),
            q3=Decimal("150"),
            cumulative_balance=Decimal("150"),
        )

        result = aggregate(catalog=catalog, entries=[revenue, cash], as_of=Quarter.Q2)

        assert result.bucket("OTHER_REVENUE") == Decimal("30")
        assert result.bucket("CASH_EQUIVALENTS_END") == Decimal("120")

    def test_zero_contribution_still_creates_bucket(self, catalog):
        entry = _entry("A_1", q1=Decimal("0"))

        result = aggregate(catalog=catalog, entries=[entry])

        assert "OTHER_REVENUE" in result.buckets
        assert result.buckets["OTHER_REVENUE"] == Decimal("0")

    def test_total_rows_and_net_assets_do_not_contribute(self, catalog):
        entries = [
            _entry("B_99", q1=Decimal("999")),
            _entry("F_1", q1=Decimal("999")),
        ]

        result = aggregate(catalog=catalog, entries=entries)

        assert result.buckets == {}
        assert result.skipped == ()
        assert result.warnings == ()


class TestAdjacency:
    """Fan-out and fan-in."""

    def test_fan_out_posts_full_amount_to_every_event(self, catalog):
        entry = _entry("G_G-01_1", q1=Decimal("50"))

        result = aggregate(catalog=catalog, entries=[entry])

        assert result.bucket("PRIOR_YEAR_ADJUSTMENTS_CASH") == Decimal("50")
        assert result.bucket("PRIOR_YEAR_ADJUSTMENTS") == Decimal("50")

    def test_fan_in_sums_activities(self, catalog):
        entries = [
            _entry("B_B-02_1", q1=Decimal("100")),
            _entry("B_B-03_2", q1=Decimal("200")),
            _entry("B_B-04_5", q2=Decimal("25")),
        ]

        result = aggregate(catalog=catalog, entries=entries)

        assert result.bucket("GOODS_SERVICES") == Decimal("325")

    def test_multiple_facilities_accumulate(self, catalog):
        entries = [
            _entry("A_2", q1=Decimal("1000"), facility_id="facility-1"),
            _entry("A_2", q1=Decimal("500"), facility_id="facility-2"),
        ]

        result = aggregate(catalog=catalog, entries=entries)

        assert result.bucket("TRANSFERS_PUBLIC_ENTITIES") == Decimal("1500")

    def test_unreported_activity_is_silently_ignored(self, catalog):
        """X_1 and G_4 are derived helpers, not reportable lines."""
        entries = [
            _entry("X_1", q1=Decimal("40")),
            _entry("G_4", q1=Decimal("-20000")),
        ]

        result = aggregate(catalog=catalog, entries=entries)

        assert result.buckets == {}
        assert result.warnings == ()


# =============================================================================
# Data quality
# =============================================================================


class TestSkippedEntries:
    """Bad entries are skipped with a reason; aggregation never raises."""

    def test_code_without_section(self, catalog):
        entry = _entry("HIV_PLAN_HOSPITAL_A_1", q1=Decimal("10"))

        result = aggregate(catalog=catalog, entries=[entry])

        assert result.buckets == {}
        assert [s.reason for s in result.skipped] == ["no section in activity code"]

    def test_unknown_activity(self, catalog):
        entry = _entry("A_77", q1=Decimal("10"))

        result = aggregate(catalog=catalog, entries=[entry])

        assert [s.reason for s in result.skipped] == ["unknown activity"]
        assert result.skipped[0].activity_code == HIV + "A_77"

    def test_malformed_amount_skips_only_that_entry(self, catalog):
        entries = [
            _entry("A_1", q1="abc"),
            _entry("A_2", q1=Decimal("75")),
        ]

        result = aggregate(catalog=catalog, entries=entries)

        assert result.bucket("TRANSFERS_PUBLIC_ENTITIES") == Decimal("75")
        assert "OTHER_REVENUE" not in result.buckets
        assert len(result.skipped) == 1
        assert "non-numeric amount" in result.skipped[0].reason

    def test_non_finite_amount_is_skipped(self, catalog):
        entry = _entry("A_1", q1=Decimal("Infinity"))

        result = aggregate(catalog=catalog, entries=[entry])

        assert "non-finite amount" in result.skipped[0].reason

    def test_skipped_entry_serializes(self, catalog):
        result = aggregate(catalog=catalog, entries=[_entry("A_77", q1=Decimal("1"))])

        assert result.skipped[0].to_dict() == {
            "activity_code": HIV + "A_77",
            "facility_id": FACILITY,
            "reason": "unknown activity",
        }


class TestUnmappedActivity:
    """A reported activity with no event mapping is a warning."""

    @pytest.fixture
    def orphan_catalog(self):
        orphan = ActivityDef(
            code=HIV + "A_9",
            key="A_9",
            name="Orphan income",
            section=Section.A,
            project_type="HIV",
            facility_type="hospital",
            display_order=9,
        )
        return ActivityCatalog(
            name="orphan",
            version="1",
            activities=(orphan,),
            events={},
            activity_events={},
            event_activities={},
            statements={},
        )

    def test_warning_returned_and_aggregation_continues(self, orphan_catalog):
        result = aggregate(catalog=orphan_catalog, entries=[_entry("A_9", q1=Decimal("12"))])

        assert result.buckets == {}
        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert warning.activity_code == HIV + "A_9"
        assert warning.amount == Decimal("12")
        assert warning.to_dict()["message"] == "Activity has no event mapping"

    def test_warning_is_logged(self, orphan_catalog, captured_logs):
        aggregate(catalog=orphan_catalog, entries=[_entry("A_9", q1=Decimal("12"))])

        logs = captured_logs()
        unmapped = [r for r in logs if r["message"] == "statement_unmapped_activity"]
        assert len(unmapped) == 1
        assert unmapped[0]["level"] == "WARNING"
        assert unmapped[0]["activity_code"] == HIV + "A_9"

    def test_engine_trace_emitted(self, catalog, captured_logs):
        aggregate(catalog=catalog, entries=[_entry("A_1", q1=Decimal("1"))])

        traces = [r for r in captured_logs() if r["message"] == "HEALTHFIN_ENGINE_TRACE"]
        assert traces
        assert traces[-1]["engine_name"] == "aggregation"
        assert len(traces[-1]["input_fingerprint"]) == 16


# =============================================================================
# Declared opening
# =============================================================================


class TestDeclaredOpening:
    """Q1 declared openings as the baseline of a first year."""

    def test_stock_openings_are_bucketed(self, catalog):
        entries = [
            _entry("D_1", q1=Decimal("52000"), quarter_details={"Q1": {"opening": "50000"}}),
            _entry("E_1", q1=Decimal("900"), quarter_details={"Q1": {"opening": "400"}}),
        ]

        buckets = declared_opening_buckets(catalog=catalog, entries=entries)

        assert buckets["CASH_EQUIVALENTS_END"] == Decimal("50000")
        assert buckets["PAYABLES"] == Decimal("400")

    def test_flows_and_missing_openings_are_ignored(self, catalog):
        entries = [
            _entry("A_2", q1=Decimal("100"), quarter_details={"Q1": {"opening": "999"}}),
            _entry("D_1", q2=Decimal("10")),
            _entry("E_1", quarter_details={"Q1": {"opening": "n/a"}}),
        ]

        assert declared_opening_buckets(catalog=catalog, entries=entries) == {}

    def test_opening_cash_comes_from_baseline_close(self):
        buckets = {"CASH_EQUIVALENTS_END": Decimal("16000")}

        merged = with_opening_cash(buckets, {"CASH_EQUIVALENTS_END": Decimal("15000")})

        assert merged["CASH_EQUIVALENTS_BEGIN"] == Decimal("15000")
        assert "CASH_EQUIVALENTS_BEGIN" not in buckets
        assert with_opening_cash({}, {})["CASH_EQUIVALENTS_BEGIN"] == Decimal("0")


# =============================================================================
# Properties
# =============================================================================


class TestContributionProperties:
    """Property-based checks of the section rules."""

    @given(q1=amounts, q2=amounts, q3=amounts, balance=amounts)
    @settings(max_examples=100)
    def test_stock_contribution_is_the_balance(self, q1, q2, q3, balance):
        entry = _entry("D_1", q1=q1, q2=q2, q3=q3, cumulative_balance=balance)

        assert entry_contribution(entry, Section.D) == balance

    @given(values=st.lists(st.one_of(st.none(), amounts), min_size=4, max_size=4))
    @settings(max_examples=100)
    def test_flow_contribution_is_the_quarter_sum(self, values):
        entry = _entry("A_2", q1=values[0], q2=values[1], q3=values[2], q4=values[3])

        expected = sum((v for v in values if v is not None), Decimal("0"))
        assert entry_contribution(entry, Section.A) == expected
