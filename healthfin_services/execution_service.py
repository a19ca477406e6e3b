"""
ExecutionService -- quarterly execution updates with cascade.

Responsibility:
    Accepts one quarter of user-entered execution data for a facility
    and project, validates it at the boundary, persists it under the
    quarter's compare-and-swap token, recomputes the quarter's derived
    balances and propagates the change to later quarters.

Architecture position:
    Services -- imperative shell.
    Lock gate: PeriodService.  Writes: ExecutionLedgerService.  Closing
    arithmetic and cascade: QuarterCloseService over healthfin_engines.

Invariants enforced:
    - The period lock is checked before any row is touched.
    - Invalid input is rejected, never coerced: amounts must be finite
      and non-negative, codes must belong to the facility's catalog and
      payment statuses must be known.
    - Derived activities (D, E, F and G balances) never take a quarter
      value from the caller; D and E accept only declared opening
      balances in Q1.
    - One writer per quarter: a stale ``expected_version`` raises
      OptimisticLockError and nothing is merged.

Failure modes:
    - PeriodLockedError, ValidationError, OptimisticLockError.

Audit relevance:
    ``execution_update_started`` / ``execution_update_completed`` carry
    the quarter, the number of changed activities, the new quarter
    version and the cascade outcome.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from healthfin_engines import QuarterLayout
from healthfin_engines.quarter_close import (
    AMOUNT_PAID,
    NET_AMOUNT,
    OPENING,
    PAYMENT_STATUS,
    VAT_AMOUNT,
)
from healthfin_kernel.db.types import money_from_value
from healthfin_kernel.domain.catalog import ActivityCatalog, ActivityDef
from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import CascadeResult, PaymentStatus, Quarter, Section, thaw
from healthfin_kernel.exceptions import ValidationError
from healthfin_kernel.logging_config import LogContext, get_logger
from healthfin_kernel.models.execution import QuarterStatus
from healthfin_kernel.services.period_service import PeriodService
from healthfin_services.quarter_close_service import QuarterCloseService

logger = get_logger("services.execution")

ZERO = Decimal("0")

AMOUNT = "amount"
COMMENT = "comment"

_EXPENSE_KEYS = frozenset({AMOUNT, PAYMENT_STATUS, AMOUNT_PAID, VAT_AMOUNT, COMMENT})
_FLOW_KEYS = frozenset({AMOUNT, COMMENT})
_BALANCE_KEYS = frozenset({OPENING, COMMENT})


class _ActivityChange:
    """Validated change to one activity in the edited quarter."""

    __slots__ = ("activity", "value", "details", "comment", "has_value", "has_comment")

    def __init__(self, activity: ActivityDef):
        self.activity = activity
        self.value: Decimal | None = None
        self.details: dict[str, Any] = {}
        self.comment: str | None = None
        self.has_value = False
        self.has_comment = False


class ExecutionService:
    """
    Entry point for quarterly execution updates.

    Contract:
        ``update_execution`` returns a CascadeResult describing the later
        quarters it touched.  All writes happen in the caller's
        transaction; the service flushes but never commits.

    Guarantees:
        - The edited quarter's version is bumped by exactly one.
        - The next later quarter with data is recalculated before return;
          the rest are queued for RecalculationWorker.

    Non-goals:
        - Does NOT accept clearances or prior-year adjustments; those are
          AdjustmentService commands with their own balance checks.
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

    def update_execution(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str | int,
        data: Mapping[str, Any],
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> CascadeResult:
        """
        Persist one quarter of execution data and cascade.

        ``data`` has the form::

            {"activities": {
                "HIV_EXEC_HOSPITAL_A_1": {"amount": "20000"},
                "HIV_EXEC_HOSPITAL_B_B-04_1": {
                    "amount": "1000", "vat_amount": "180",
                    "payment_status": "partial", "amount_paid": "500"},
                "HIV_EXEC_HOSPITAL_D_1": {"opening": "50000"},
            }}

        Raises:
            PeriodLockedError: The period or facility scope is locked.
            ValidationError: Malformed input; ``field_errors`` lists every
                problem found.
            OptimisticLockError: ``expected_version`` is stale.
        """
        quarter = self._parse_quarter(quarter)
        project = self._catalog.resolve_project(project_type)

        with LogContext.bind(
            actor_id=str(actor_id),
            facility_id=str(facility_id),
            reporting_period_id=str(reporting_period_id),
            project_type=project,
        ):
            self._periods.assert_unlocked(
                reporting_period_id, facility_id, project, operation="update_execution"
            )

            layout = self._closer.layout_for(facility_id, project)
            changes = self._validate(layout, project, quarter, data)

            logger.info(
                "execution_update_started",
                extra={
                    "project_type": project,
                    "quarter": quarter.value,
                    "activity_count": len(changes),
                    "expected_version": expected_version,
                },
            )

            ledger = self._closer.ledger
            row, observed = ledger.acquire_quarter(
                facility_id, reporting_period_id, project, quarter, actor_id, expected_version
            )

            entries = self._closer.entries_by_code(facility_id, reporting_period_id, project)
            changed_count = 0
            for change in changes:
                code = change.activity.code
                entry = entries.get(code)
                # details of other quarters and earlier keys are preserved
                details = thaw(entry.details_for(quarter)) if entry else {}
                details.update(change.details)
                value = change.value if change.has_value else (
                    entry.quarter_value(quarter) if entry else None
                )
                kwargs: dict[str, Any] = {"details": details or None}
                if change.has_comment:
                    kwargs["comment"] = change.comment
                if ledger.upsert_execution_entry(
                    facility_id,
                    reporting_period_id,
                    layout.project_type,
                    layout.facility_type,
                    code,
                    quarter,
                    value,
                    actor_id,
                    **kwargs,
                ):
                    changed_count += 1

            outcome = self._closer.close(
                facility_id, reporting_period_id, project, quarter, actor_id
            )
            new_version = ledger.commit_quarter(
                row, observed, outcome.checksum, actor_id, status=QuarterStatus.SUBMITTED
            )

            result = self._closer.cascade_from(
                facility_id, reporting_period_id, project, quarter, actor_id
            )

            logger.info(
                "execution_update_completed",
                extra={
                    "project_type": project,
                    "quarter": quarter.value,
                    "changed_activities": changed_count,
                    "new_version": new_version,
                    "cascade_status": result.status.value,
                },
            )
            return result

    def recalculate_quarter(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str | int,
        actor_id: UUID,
    ) -> bool:
        """Re-close a quarter from stored data; True when anything changed."""
        quarter = self._parse_quarter(quarter)
        project = self._catalog.resolve_project(project_type)
        self._periods.assert_unlocked(
            reporting_period_id, facility_id, project, operation="recalculate_quarter"
        )
        return self._closer.recalculate(
            facility_id, reporting_period_id, project, quarter, actor_id
        )

    # ------------------------------------------------------------------
    # Boundary validation
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_quarter(quarter: Quarter | str | int) -> Quarter:
        try:
            return Quarter.from_value(quarter)
        except ValueError as exc:
            raise ValidationError(
                str(exc), field_errors=[{"field": "quarter", "message": str(exc)}]
            ) from None

    def _validate(
        self,
        layout: QuarterLayout,
        project: str,
        quarter: Quarter,
        data: Mapping[str, Any],
    ) -> list[_ActivityChange]:
        errors: list[dict[str, Any]] = []

        activities = data.get("activities") if isinstance(data, Mapping) else None
        if not isinstance(activities, Mapping):
            raise ValidationError(
                "Execution data must contain an 'activities' mapping",
                field_errors=[{"field": "activities", "message": "Required mapping"}],
            )

        known = {
            a.code: a
            for a in self._catalog.list_activities(project, layout.facility_type)
        }
        derived = layout.derived_codes
        changes: list[_ActivityChange] = []

        for code, values in activities.items():
            field = f"activities.{code}"
            activity = known.get(code)
            if activity is None:
                errors.append({"field": field, "message": "Unknown activity code"})
                continue
            if activity.is_total_row or activity.section is Section.F:
                errors.append({"field": field, "message": "Computed activity is read-only"})
                continue
            if quarter not in activity.applicable_quarters:
                errors.append(
                    {"field": field, "message": f"Activity does not apply to {quarter.value}"}
                )
                continue
            if not isinstance(values, Mapping):
                errors.append({"field": field, "message": "Expected a mapping of fields"})
                continue

            if activity.section is Section.B:
                allowed = _EXPENSE_KEYS
            elif code in derived:
                allowed = _BALANCE_KEYS if activity.section.is_stock else frozenset({COMMENT})
            else:
                allowed = _FLOW_KEYS

            unknown = sorted(set(values) - allowed)
            for key in unknown:
                errors.append({"field": f"{field}.{key}", "message": "Field not accepted"})
            if unknown:
                continue

            change = _ActivityChange(activity)
            self._read_fields(change, values, quarter, field, errors)
            changes.append(change)

        if errors:
            logger.warning(
                "execution_update_rejected",
                extra={"quarter": quarter.value, "error_count": len(errors)},
            )
            raise ValidationError(
                f"Execution data failed validation with {len(errors)} error(s)",
                field_errors=errors,
            )
        return changes

    def _read_fields(
        self,
        change: _ActivityChange,
        values: Mapping[str, Any],
        quarter: Quarter,
        field: str,
        errors: list[dict[str, Any]],
    ) -> None:
        activity = change.activity

        def _amount(key: str) -> Decimal | None:
            try:
                amount = money_from_value(values[key])
            except ValueError as exc:
                errors.append({"field": f"{field}.{key}", "message": str(exc)})
                return None
            if amount < 0:
                errors.append({"field": f"{field}.{key}", "message": "Must not be negative"})
                return None
            return amount

        if AMOUNT in values:
            if values[AMOUNT] is None:
                change.has_value = True
            else:
                amount = _amount(AMOUNT)
                if amount is not None:
                    change.value = amount
                    change.has_value = True

        if COMMENT in values:
            comment = values[COMMENT]
            if comment is not None and not isinstance(comment, str):
                errors.append({"field": f"{field}.{COMMENT}", "message": "Must be text"})
            else:
                change.comment = comment
                change.has_comment = True

        if OPENING in values:
            if quarter is not Quarter.Q1:
                errors.append(
                    {"field": f"{field}.{OPENING}", "message": "Opening balances belong to Q1"}
                )
            else:
                amount = _amount(OPENING)
                if amount is not None:
                    change.details[OPENING] = amount

        if activity.section is not Section.B:
            return

        vat_amount = ZERO
        if VAT_AMOUNT in values:
            if not activity.vat_category:
                errors.append(
                    {"field": f"{field}.{VAT_AMOUNT}", "message": "Activity carries no VAT"}
                )
            else:
                amount = _amount(VAT_AMOUNT)
                if amount is not None:
                    vat_amount = amount
                    change.details[VAT_AMOUNT] = amount
        if activity.vat_category and change.has_value and change.value is not None:
            change.details[NET_AMOUNT] = change.value

        status = values.get(PAYMENT_STATUS)
        if status is not None:
            try:
                status = PaymentStatus(status)
            except ValueError:
                errors.append(
                    {
                        "field": f"{field}.{PAYMENT_STATUS}",
                        "message": f"Must be one of {[s.value for s in PaymentStatus]}",
                    }
                )
                return
            change.details[PAYMENT_STATUS] = status.value

        if AMOUNT_PAID in values:
            if status is not PaymentStatus.PARTIAL:
                errors.append(
                    {
                        "field": f"{field}.{AMOUNT_PAID}",
                        "message": "Only partial payments record an amount paid",
                    }
                )
                return
            paid = _amount(AMOUNT_PAID)
            if paid is None:
                return
            gross = (change.value or ZERO) + vat_amount
            if paid > gross:
                errors.append(
                    {
                        "field": f"{field}.{AMOUNT_PAID}",
                        "message": f"Exceeds the gross amount {gross}",
                    }
                )
                return
            change.details[AMOUNT_PAID] = paid
        elif status is PaymentStatus.PARTIAL:
            errors.append(
                {
                    "field": f"{field}.{AMOUNT_PAID}",
                    "message": "Required for partial payments",
                }
            )
        elif status is not None:
            # a status change clears a stale partial amount
            change.details[AMOUNT_PAID] = None

