"""
AdjustmentService -- persisted double-entry adjustments.

Responsibility:
    Runs the Double-Entry Adjustment Ledger against a quarter's current
    closing position and, when the engine accepts the movement, records
    it in the ledger: clearances and prior-year restatements accumulate
    in the quarter details of the affected balance activity, and
    miscellaneous receivables add to the Section X activity.  The quarter
    is then re-closed and the change cascades like an execution update.

Architecture position:
    Services -- imperative shell.
    Validation and paired legs: healthfin_engines.adjustments.
    Re-close and cascade: QuarterCloseService.

Invariants enforced:
    - Period locks are checked before anything is read or written.
    - The engine validates against the position the ledger would close
      to, so a rejected adjustment writes nothing.
    - Every accepted adjustment keeps D - E == G: the stored movement is
      exactly the one the engine posted.

Failure modes:
    - PeriodLockedError, ValidationError (bad amount, unknown VAT
      category or payable, cash shortfall), InsufficientBalanceError
      (amount above the outstanding balance), OptimisticLockError.

Audit relevance:
    ``adjustment_applied`` logs the operation, both legs and the
    resulting quarter version.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from healthfin_engines import (
    AdjustmentDirection,
    AdjustmentEntry,
    AdjustmentResult,
    AdjustmentTarget,
    BalanceState,
    QuarterLayout,
    apply_prior_year_adjustment,
    apply_prior_year_cash_adjustment,
    clear_other_receivable,
    clear_payable,
    clear_vat,
    record_other_receivable,
)
from healthfin_engines.quarter_close import (
    OTHER_RECEIVABLE_CLEARED,
    PAYABLE_CLEARED,
    PRIOR_YEAR_ADJUSTMENT,
    VAT_CLEARED,
)
from healthfin_kernel.domain.catalog import ActivityCatalog
from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import CascadeResult, Quarter, thaw
from healthfin_kernel.exceptions import ValidationError
from healthfin_kernel.logging_config import LogContext, get_logger
from healthfin_kernel.models.execution import QuarterStatus
from healthfin_kernel.services.period_service import PeriodService
from healthfin_services.quarter_close_service import QuarterCloseService

logger = get_logger("services.adjustment")

ZERO = Decimal("0")


@dataclass(frozen=True)
class AdjustmentOutcome:
    """What an accepted adjustment posted and where the quarter closed."""

    operation: str
    quarter: Quarter
    entries: tuple[AdjustmentEntry, AdjustmentEntry]
    state: BalanceState
    quarter_version: int
    cascade: CascadeResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "quarter": self.quarter.value,
            "entries": [
                {"account": e.account, "amount": str(e.amount), "description": e.description}
                for e in self.entries
            ],
            "net_financial_assets": str(self.state.net_financial_assets),
            "closing_balance": str(self.state.closing_balance),
            "quarter_version": self.quarter_version,
            "cascade": self.cascade.to_dict(),
        }


@dataclass(frozen=True)
class _Posting:
    """Ledger write for an accepted adjustment."""

    code: str
    detail_key: str | None
    amount: Decimal


def _invalid(field: str, message: str) -> ValidationError:
    return ValidationError(message, field_errors=[{"field": field, "message": message}])


def _require_payable(code: str) -> Callable[[QuarterLayout], None]:
    def _check(layout: QuarterLayout) -> None:
        if code not in layout.payable_codes:
            raise _invalid("payable_code", f"Unknown payable: {code}")

    return _check


def _require_vat(category: str) -> Callable[[QuarterLayout], None]:
    def _check(layout: QuarterLayout) -> None:
        if category not in layout.vat_codes:
            raise _invalid("vat_category", f"Unknown VAT category: {category}")

    return _check


class AdjustmentService:
    """
    Commands that move balances in pairs.

    Contract:
        Every command takes the facility, period, project and quarter it
        posts into, plus the actor.  Amounts are validated by the engine.

    Guarantees:
        - Rejected adjustments leave the ledger untouched.
        - Accepted adjustments bump the quarter version once and cascade.

    Non-goals:
        - Does NOT post into revenue or expense sections.
    """

    def __init__(
        self,
        session: Session,
        catalog: ActivityCatalog,
        clock: Clock | None = None,
    ):
        self._session = session
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._periods = PeriodService(session, self._clock)
        self._closer = QuarterCloseService(session, catalog, self._clock)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def clear_vat(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str,
        vat_category: str,
        amount: Any,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> AdjustmentOutcome:
        """VAT refund received: VAT receivable down, cash up."""

        def _posting(layout: QuarterLayout, result: AdjustmentResult) -> _Posting:
            code = layout.vat_codes[vat_category.upper()]
            return _Posting(code, VAT_CLEARED, -result.entries[0].amount)

        return self._apply(
            "clear_vat",
            facility_id,
            reporting_period_id,
            project_type,
            quarter,
            actor_id,
            expected_version,
            lambda state: clear_vat(state, vat_category.upper(), amount),
            _posting,
            _require_vat(vat_category.upper()),
        )

    def clear_payable(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str,
        payable_code: str,
        amount: Any,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> AdjustmentOutcome:
        """Payable settled: payable down, cash down."""

        def _posting(layout: QuarterLayout, result: AdjustmentResult) -> _Posting:
            return _Posting(payable_code, PAYABLE_CLEARED, -result.entries[0].amount)

        return self._apply(
            "clear_payable",
            facility_id,
            reporting_period_id,
            project_type,
            quarter,
            actor_id,
            expected_version,
            lambda state: clear_payable(state, payable_code, amount),
            _posting,
            _require_payable(payable_code),
        )

    def clear_other_receivable(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str,
        amount: Any,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> AdjustmentOutcome:
        """Other receivable collected: receivable down, cash up."""

        def _posting(layout: QuarterLayout, result: AdjustmentResult) -> _Posting:
            return _Posting(
                self._receivable_code(layout),
                OTHER_RECEIVABLE_CLEARED,
                -result.entries[0].amount,
            )

        return self._apply(
            "clear_other_receivable",
            facility_id,
            reporting_period_id,
            project_type,
            quarter,
            actor_id,
            expected_version,
            lambda state: clear_other_receivable(state, amount),
            _posting,
        )

    def record_other_receivable(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str,
        amount: Any,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> AdjustmentOutcome:
        """Section X miscellaneous advance: cash down, other receivable up."""

        def _posting(layout: QuarterLayout, result: AdjustmentResult) -> _Posting:
            if not layout.misc_codes:
                raise _invalid("activity", "No miscellaneous adjustment activity configured")
            return _Posting(layout.misc_codes[0], None, result.entries[0].amount)

        return self._apply(
            "record_other_receivable",
            facility_id,
            reporting_period_id,
            project_type,
            quarter,
            actor_id,
            expected_version,
            lambda state: record_other_receivable(state, amount),
            _posting,
        )

    def apply_prior_year_adjustment(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str,
        activity_code: str,
        target: AdjustmentTarget | str,
        direction: AdjustmentDirection | str,
        amount: Any,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> AdjustmentOutcome:
        """
        Restate a carried-forward payable or receivable.

        The matching G-01 line moves with it so net assets and the
        closing balance stay equal.
        """
        try:
            target = AdjustmentTarget(target)
            direction = AdjustmentDirection(direction)
        except ValueError as exc:
            raise _invalid("target", str(exc)) from None

        def _posting(layout: QuarterLayout, result: AdjustmentResult) -> _Posting:
            if target is AdjustmentTarget.RECEIVABLE:
                code = self._receivable_code(layout)
                if activity_code != code:
                    raise _invalid(
                        "activity_code", f"Not the other receivables line: {activity_code}"
                    )
            else:
                code = activity_code
            return _Posting(code, PRIOR_YEAR_ADJUSTMENT, result.entries[0].amount)

        return self._apply(
            "apply_prior_year_adjustment",
            facility_id,
            reporting_period_id,
            project_type,
            quarter,
            actor_id,
            expected_version,
            lambda state: apply_prior_year_adjustment(
                state, activity_code, target, direction, amount
            ),
            _posting,
            _require_payable(activity_code) if target is AdjustmentTarget.PAYABLE else None,
        )

    def apply_prior_year_cash_adjustment(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str,
        direction: AdjustmentDirection | str,
        amount: Any,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> AdjustmentOutcome:
        """Restate opening cash; the G-01 cash line moves with it."""
        try:
            direction = AdjustmentDirection(direction)
        except ValueError as exc:
            raise _invalid("direction", str(exc)) from None

        def _posting(layout: QuarterLayout, result: AdjustmentResult) -> _Posting:
            if layout.cash_code is None:
                raise _invalid("activity", "No cash activity configured")
            return _Posting(layout.cash_code, PRIOR_YEAR_ADJUSTMENT, result.entries[0].amount)

        return self._apply(
            "apply_prior_year_cash_adjustment",
            facility_id,
            reporting_period_id,
            project_type,
            quarter,
            actor_id,
            expected_version,
            lambda state: apply_prior_year_cash_adjustment(state, direction, amount),
            _posting,
        )

    # ------------------------------------------------------------------
    # Shared flow
    # ------------------------------------------------------------------

    @staticmethod
    def _receivable_code(layout: QuarterLayout) -> str:
        if layout.other_receivable_code is None:
            raise _invalid("activity", "No other receivables activity configured")
        return layout.other_receivable_code

    def _apply(
        self,
        operation: str,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str,
        actor_id: UUID,
        expected_version: int | None,
        engine_op: Callable[[BalanceState], AdjustmentResult],
        posting_for: Callable[[QuarterLayout, AdjustmentResult], _Posting],
        precheck: Callable[[QuarterLayout], None] | None = None,
    ) -> AdjustmentOutcome:
        try:
            quarter = Quarter.from_value(quarter)
        except ValueError as exc:
            raise _invalid("quarter", str(exc)) from None
        project = self._catalog.resolve_project(project_type)

        with LogContext.bind(
            actor_id=str(actor_id),
            facility_id=str(facility_id),
            reporting_period_id=str(reporting_period_id),
            project_type=project,
        ):
            self._periods.assert_unlocked(
                reporting_period_id, facility_id, project, operation=operation
            )

            layout = self._closer.layout_for(facility_id, project)
            if precheck is not None:
                precheck(layout)

            state = self._closer.current_state(
                layout, facility_id, reporting_period_id, project, quarter
            )
            result = engine_op(state)
            posting = posting_for(layout, result)

            ledger = self._closer.ledger
            row, observed = ledger.acquire_quarter(
                facility_id, reporting_period_id, project, quarter, actor_id, expected_version
            )
            self._write(layout, facility_id, reporting_period_id, quarter, posting, actor_id)

            outcome = self._closer.close(
                facility_id, reporting_period_id, project, quarter, actor_id
            )
            version = ledger.commit_quarter(
                row, observed, outcome.checksum, actor_id, status=QuarterStatus.SUBMITTED
            )
            cascade = self._closer.cascade_from(
                facility_id, reporting_period_id, project, quarter, actor_id
            )

            logger.info(
                "adjustment_applied",
                extra={
                    "operation": operation,
                    "project_type": project,
                    "quarter": quarter.value,
                    "legs": [
                        {"account": e.account, "amount": str(e.amount)} for e in result.entries
                    ],
                    "quarter_version": version,
                    "cascade_status": cascade.status.value,
                },
            )
            return AdjustmentOutcome(
                operation=operation,
                quarter=quarter,
                entries=result.entries,
                state=outcome.state,
                quarter_version=version,
                cascade=cascade,
            )

    def _write(
        self,
        layout: QuarterLayout,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        quarter: Quarter,
        posting: _Posting,
        actor_id: UUID,
    ) -> None:
        ledger = self._closer.ledger
        entry = ledger.get_entry(facility_id, reporting_period_id, posting.code)
        current_value = getattr(entry, quarter.field_name) if entry is not None else None

        if posting.detail_key is None:
            ledger.upsert_execution_entry(
                facility_id,
                reporting_period_id,
                layout.project_type,
                layout.facility_type,
                posting.code,
                quarter,
                (current_value or ZERO) + posting.amount,
                actor_id,
            )
            return

        stored = (entry.quarter_details or {}) if entry is not None else {}
        details = thaw(stored.get(quarter.value) or {})
        previous = Decimal(str(details.get(posting.detail_key) or "0"))
        details[posting.detail_key] = previous + posting.amount
        ledger.upsert_execution_entry(
            facility_id,
            reporting_period_id,
            layout.project_type,
            layout.facility_type,
            posting.code,
            quarter,
            current_value,
            actor_id,
            details=details,
        )
