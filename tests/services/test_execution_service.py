"""
Tests for ExecutionService.

Covers:
- Quarter updates write user values and the derived D/E/F/G balances
- Q1 opening balances and the quarter-to-quarter carry
- Payment status: paid, unpaid, partial
- Boundary validation (read-only rows, unknown codes, bad amounts)
- Optimistic locking on the quarter version
- Cascade: next quarter now, the rest queued
- Period locks
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from healthfin_kernel.domain.dtos import CascadeStatus, Quarter
from healthfin_kernel.exceptions import (
    OptimisticLockError,
    PeriodLockedError,
    ValidationError,
)
from healthfin_kernel.models.execution import ExecutionQuarter, QuarterStatus
from healthfin_kernel.models.facility import FacilityType
from healthfin_kernel.selectors.execution_selector import ExecutionSelector
from healthfin_kernel.services.recalculation_queue import RecalculationQueue

HIV = "HIV_EXEC_HOSPITAL_"


def _version(session, hospital, period, quarter: Quarter) -> int | None:
    return ExecutionSelector(session).quarter_version(hospital.id, period.id, "HIV", quarter)


# =============================================================================
# Writing and closing
# =============================================================================


class TestUpdateExecution:
    """Accepted updates and the balances they close to."""

    def test_opening_balance_closes_into_q1(self, update, stored_value):
        update("Q1", D_1={"opening": "50000"})

        assert stored_value("D_1", "Q1") == Decimal("50000")
        assert stored_value("G_1", "Q1") == Decimal("50000")
        assert stored_value("F_1", "Q1") == Decimal("50000")

    def test_q2_carries_q1_closing_cash(self, update, stored_value):
        update("Q1", D_1={"opening": "50000"})
        update("Q2", A_2={"amount": "20000"}, **{"B_B-01_1": {"amount": "40000"}})

        assert stored_value("A_2", "Q2") == Decimal("20000")
        assert stored_value("D_1", "Q2") == Decimal("30000")
        assert stored_value("G_4", "Q2") == Decimal("-20000")
        assert stored_value("F_1", "Q2") == Decimal("30000")

    def test_vat_expense_splits_net_and_vat(self, update, stored_value):
        update(
            "Q1",
            D_1={"opening": "50000"},
            **{"B_B-04_3": {"amount": "1000", "vat_amount": "300"}},
        )

        assert stored_value("D_1", "Q1") == Decimal("48700")
        assert stored_value("D_VAT_FUEL", "Q1") == Decimal("300")
        assert stored_value("F_1", "Q1") == Decimal("49000")

    def test_unpaid_expense_raises_its_payable(self, update, stored_value):
        update(
            "Q1",
            D_1={"opening": "50000"},
            **{"B_B-01_1": {"amount": "500", "payment_status": "unpaid"}},
        )

        assert stored_value("D_1", "Q1") == Decimal("50000")
        assert stored_value("E_1", "Q1") == Decimal("500")
        assert stored_value("F_1", "Q1") == Decimal("49500")

    def test_partial_payment(self, update, stored_value):
        update(
            "Q1",
            D_1={"opening": "50000"},
            **{
                "B_B-01_1": {
                    "amount": "500",
                    "payment_status": "partial",
                    "amount_paid": "200",
                }
            },
        )

        assert stored_value("D_1", "Q1") == Decimal("49800")
        assert stored_value("E_1", "Q1") == Decimal("300")

    def test_comment_only_update_keeps_amount(
        self, update, stored_value, quarter_close_service, hospital, period
    ):
        update("Q1", A_1={"amount": "100"})
        update("Q1", A_1={"comment": "Bank interest"})

        entry = quarter_close_service.entries_by_code(hospital.id, period.id, "HIV")[HIV + "A_1"]
        assert entry.comment == "Bank interest"
        assert stored_value("A_1", "Q1") == Decimal("100")

    def test_amount_none_clears_value(self, update, stored_value):
        update("Q1", A_1={"amount": "100"})
        update("Q1", A_1={"amount": None})

        assert stored_value("A_1", "Q1") is None
        assert stored_value("D_1", "Q1") == Decimal("0")

    def test_project_alias_and_numeric_quarter(
        self, execution_service, hospital, period, test_actor_id, stored_value
    ):
        execution_service.update_execution(
            hospital.id,
            period.id,
            "hiv",
            2,
            {"activities": {HIV + "A_1": {"amount": "10"}}},
            test_actor_id,
        )

        assert stored_value("A_1", "Q2") == Decimal("10")

    def test_version_bumped_once_per_update(self, update, session, hospital, period):
        update("Q1", A_1={"amount": "1"})
        update("Q1", A_1={"amount": "2"})

        assert _version(session, hospital, period, Quarter.Q1) == 2

    def test_update_logs_start_and_completion(self, update, captured_logs):
        update("Q1", A_1={"amount": "1"})

        messages = [r["message"] for r in captured_logs()]
        assert "execution_update_started" in messages
        assert "execution_update_completed" in messages

    def test_health_center_codes(
        self, execution_service, create_facility, period, test_actor_id, quarter_close_service
    ):
        center = create_facility("Gikondo HC", FacilityType.HEALTH_CENTER)
        code = "HIV_EXEC_HEALTH_CENTER_A_1"

        execution_service.update_execution(
            center.id, period.id, "HIV", "Q1",
            {"activities": {code: {"amount": "5"}}}, test_actor_id,
        )

        entries = quarter_close_service.entries_by_code(center.id, period.id, "HIV")
        assert entries[code].q1 == Decimal("5")


# =============================================================================
# Boundary validation
# =============================================================================


class TestValidation:
    """Malformed input is rejected and nothing is written."""

    @pytest.mark.parametrize(
        "key, values, message",
        [
            ("A_3", {"amount": "1"}, "Computed activity is read-only"),
            ("E_16", {"amount": "1"}, "Computed activity is read-only"),
            ("F_1", {"amount": "1"}, "Computed activity is read-only"),
            ("D_1", {"amount": "1"}, "Field not accepted"),
            ("G_4", {"amount": "1"}, "Field not accepted"),
            ("A_1", {"opening": "1"}, "Field not accepted"),
            ("A_1", {"amount": "-1"}, "Must not be negative"),
            ("A_1", "100", "Expected a mapping of fields"),
            ("B_B-01_1", {"amount": "1", "vat_amount": "1"}, "Activity carries no VAT"),
            ("B_B-01_1", {"amount": "1", "payment_status": "later"}, "Must be one of"),
            ("B_B-01_1", {"amount": "1", "payment_status": "partial"}, "Required for partial"),
            (
                "B_B-01_1",
                {"amount": "1", "payment_status": "paid", "amount_paid": "1"},
                "Only partial payments",
            ),
            (
                "B_B-01_1",
                {"amount": "100", "payment_status": "partial", "amount_paid": "150"},
                "Exceeds the gross amount",
            ),
        ],
    )
    def test_rejected_fields(self, update, key, values, message):
        with pytest.raises(ValidationError) as exc_info:
            update("Q1", **{key: values})

        assert any(message in e["message"] for e in exc_info.value.field_errors)

    @pytest.mark.parametrize("amount", ["abc", "NaN", "Infinity"])
    def test_non_finite_amounts(self, update, amount):
        with pytest.raises(ValidationError):
            update("Q1", A_1={"amount": amount})

    def test_opening_outside_q1(self, update):
        with pytest.raises(ValidationError) as exc_info:
            update("Q2", D_1={"opening": "100"})

        assert exc_info.value.field_errors[0]["message"] == "Opening balances belong to Q1"

    def test_unknown_code(self, execution_service, hospital, period, test_actor_id):
        with pytest.raises(ValidationError) as exc_info:
            execution_service.update_execution(
                hospital.id, period.id, "HIV", "Q1",
                {"activities": {"HIV_EXEC_HOSPITAL_A_99": {"amount": "1"}}},
                test_actor_id,
            )

        assert exc_info.value.field_errors == [
            {"field": "activities.HIV_EXEC_HOSPITAL_A_99", "message": "Unknown activity code"}
        ]

    def test_other_project_code_is_unknown(
        self, execution_service, hospital, period, test_actor_id
    ):
        with pytest.raises(ValidationError):
            execution_service.update_execution(
                hospital.id, period.id, "HIV", "Q1",
                {"activities": {"MAL_EXEC_HOSPITAL_A_1": {"amount": "1"}}},
                test_actor_id,
            )

    @pytest.mark.parametrize("data", [{}, {"activities": []}, []])
    def test_missing_activities_mapping(
        self, execution_service, hospital, period, test_actor_id, data
    ):
        with pytest.raises(ValidationError):
            execution_service.update_execution(
                hospital.id, period.id, "HIV", "Q1", data, test_actor_id
            )

    def test_invalid_quarter(self, update):
        with pytest.raises(ValidationError):
            update("Q5", A_1={"amount": "1"})

    def test_all_errors_reported_and_nothing_written(
        self, update, session, hospital, period, stored_value
    ):
        with pytest.raises(ValidationError) as exc_info:
            update("Q1", A_1={"amount": "-1"}, A_3={"amount": "1"}, A_2={"amount": "5"})

        assert len(exc_info.value.field_errors) == 2
        assert stored_value("A_2", "Q1") is None
        assert _version(session, hospital, period, Quarter.Q1) is None

    def test_unknown_facility(self, execution_service, period, test_actor_id):
        with pytest.raises(ValidationError):
            execution_service.update_execution(
                uuid4(), period.id, "HIV", "Q1",
                {"activities": {HIV + "A_1": {"amount": "1"}}}, test_actor_id,
            )


# =============================================================================
# Concurrency
# =============================================================================


class TestOptimisticLocking:
    """One writer per quarter version."""

    def test_stale_version_rejected(self, update, session, hospital, period):
        update("Q1", A_1={"amount": "1"})

        with pytest.raises(OptimisticLockError) as exc_info:
            update("Q1", expected_version=0, A_1={"amount": "2"})

        assert exc_info.value.expected_version == 0
        assert exc_info.value.actual_version == 1

    def test_current_version_accepted(self, update, session, hospital, period, stored_value):
        update("Q1", A_1={"amount": "1"})

        update("Q1", expected_version=1, A_1={"amount": "2"})

        assert stored_value("A_1", "Q1") == Decimal("2")
        assert _version(session, hospital, period, Quarter.Q1) == 2

    def test_first_write_with_version_zero(self, update, session, hospital, period):
        update("Q1", expected_version=0, A_1={"amount": "1"})

        assert _version(session, hospital, period, Quarter.Q1) == 1

    def test_first_write_with_unknown_version(self, update):
        with pytest.raises(OptimisticLockError):
            update("Q1", expected_version=3, A_1={"amount": "1"})


# =============================================================================
# Cascade
# =============================================================================


class TestCascade:
    """Edits propagate to later quarters."""

    @pytest.fixture
    def three_quarters(self, update):
        update("Q1", D_1={"opening": "50000"})
        update("Q2", A_2={"amount": "20000"})
        update("Q3", A_2={"amount": "5000"})

    def test_no_later_quarters(self, update):
        result = update("Q1", A_1={"amount": "1"})

        assert result.status is CascadeStatus.NONE

    def test_next_quarter_recalculated_rest_queued(
        self, three_quarters, update, stored_value, session, deterministic_clock,
        hospital, period,
    ):
        result = update("Q1", A_1={"amount": "1000"})

        assert result.status is CascadeStatus.PARTIAL_COMPLETE
        assert result.immediately_recalculated == (Quarter.Q2,)
        assert result.queued_for_recalculation == (Quarter.Q3,)
        assert stored_value("D_1", "Q2") == Decimal("71000")
        assert stored_value("D_1", "Q3") == Decimal("75000")

        jobs = RecalculationQueue(session, deterministic_clock).pending_for(
            hospital.id, period.id, "HIV"
        )
        assert [(j.quarter, j.trigger_quarter) for j in jobs] == [("Q3", "Q1")]

    def test_queued_quarter_flagged_pending(
        self, three_quarters, update, session, hospital, period
    ):
        update("Q1", A_1={"amount": "1000"})

        statuses = dict(
            session.execute(
                select(ExecutionQuarter.quarter, ExecutionQuarter.status).where(
                    ExecutionQuarter.facility_id == hospital.id
                )
            ).all()
        )
        assert QuarterStatus(statuses["Q2"]) is QuarterStatus.RECALCULATED
        assert QuarterStatus(statuses["Q3"]) is QuarterStatus.PENDING_RECALCULATION

    def test_second_edit_refreshes_the_pending_job(
        self, three_quarters, update, session, deterministic_clock, hospital, period
    ):
        update("Q1", A_1={"amount": "1000"})
        update("Q1", A_1={"amount": "2000"})

        jobs = RecalculationQueue(session, deterministic_clock).pending_for(
            hospital.id, period.id, "HIV"
        )
        assert len(jobs) == 1

    def test_recalculation_is_idempotent(
        self, three_quarters, execution_service, hospital, period, test_actor_id
    ):
        assert not execution_service.recalculate_quarter(
            hospital.id, period.id, "HIV", "Q2", test_actor_id
        )

    def test_edit_of_last_quarter_completes(self, three_quarters, update):
        result = update("Q2", A_1={"amount": "1"})

        assert result.status is CascadeStatus.COMPLETE
        assert result.immediately_recalculated == (Quarter.Q3,)


# =============================================================================
# Period locks
# =============================================================================


class TestPeriodLocks:
    """Locked scopes reject writes before anything is touched."""

    def test_locked_period(self, update, period_service, period, test_actor_id):
        period_service.lock_period(period.id, test_actor_id)

        with pytest.raises(PeriodLockedError) as exc_info:
            update("Q1", A_1={"amount": "1"})

        assert exc_info.value.operation == "update_execution"

    def test_locked_facility_scope(self, update, period_service, hospital, period, test_actor_id):
        period_service.lock(period.id, hospital.id, "HIV", test_actor_id, reason="audit")

        with pytest.raises(PeriodLockedError):
            update("Q1", A_1={"amount": "1"})

    def test_lock_of_other_project_does_not_apply(
        self, update, period_service, hospital, period, test_actor_id, stored_value
    ):
        period_service.lock(period.id, hospital.id, "TB", test_actor_id)

        update("Q1", A_1={"amount": "1"})

        assert stored_value("A_1", "Q1") == Decimal("1")

    def test_unlock_reopens(
        self, update, period_service, hospital, period, test_actor_id, deterministic_clock
    ):
        period_service.lock(period.id, hospital.id, "HIV", test_actor_id)
        deterministic_clock.advance()
        lock = period_service.unlock(period.id, hospital.id, "HIV", test_actor_id)

        update("Q1", A_1={"amount": "1"})

        assert [a.action for a in period_service.lock_history(lock.id)] == ["locked", "unlocked"]
