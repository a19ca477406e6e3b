"""
QuarterCloseService -- closes a quarter against the stored ledger.

Responsibility:
    Resolves the ledger layout of a facility, derives a quarter's opening
    position (previous quarter of the same period, or the prior fiscal
    year's Q4, or the opening balances declared in Q1), runs the pure
    quarter close and writes the derived D/E/F/G values back through the
    ledger service.

Architecture position:
    Services -- imperative shell shared by ExecutionService,
    AdjustmentService, RolloverService and RecalculationWorker.
    Arithmetic lives in healthfin_engines.quarter_close.

Invariants enforced:
    - The opening position of Q1 is the prior fiscal year's closing
      position when that year holds data; otherwise the balances
      declared under ``opening`` in Q1 details.
    - The accumulated surplus is constant within a year and stored once,
      in Q1 of the accumulated surplus activity.
    - Recalculation is idempotent: closing an already consistent quarter
      changes no stored value and does not bump the quarter version.

Failure modes:
    - ValidationError: unknown facility.
    - OptimisticLockError: a concurrent writer moved the quarter version
      between acquire and commit.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from uuid import UUID

from sqlalchemy.orm import Session

from healthfin_engines import (
    BalanceState,
    QuarterClose,
    QuarterLayout,
    build_layout,
    close_quarter,
    closing_entry_values,
    extract_transactions,
    plan_cascade,
    read_closing_state,
    read_declared_opening,
)
from healthfin_kernel.domain.catalog import ActivityCatalog
from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import CascadeResult, ExecutionEntryData, Quarter
from healthfin_kernel.exceptions import ValidationError
from healthfin_kernel.logging_config import get_logger
from healthfin_kernel.models.execution import QuarterStatus
from healthfin_kernel.selectors.execution_selector import ExecutionSelector
from healthfin_kernel.selectors.period_selector import PeriodSelector
from healthfin_kernel.services.ledger_service import ExecutionLedgerService
from healthfin_kernel.services.recalculation_queue import RecalculationQueue
from healthfin_kernel.utils.hashing import hash_payload

logger = get_logger("services.quarter_close")


@dataclass(frozen=True)
class CloseOutcome:
    """Result of writing one quarter's closing values."""

    quarter: Quarter
    result: QuarterClose
    changed: bool
    checksum: str

    @property
    def state(self) -> BalanceState:
        return self.result.state


class QuarterCloseService:
    """
    Closing computation over stored execution entries.

    Contract:
        ``close`` writes derived values but leaves the quarter token
        alone; callers commit it.  ``recalculate`` acquires and commits
        the token itself.  ``cascade_from`` runs after a committed edit;
        ``requeue_after`` runs after a recalculation changed values.

    Non-goals:
        - Does NOT check period locks (the calling command does).
        - Does NOT validate user input.
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
        self._ledger = ExecutionLedgerService(session, self._clock)
        self._queue = RecalculationQueue(session, self._clock)
        self._executions = ExecutionSelector(session)
        self._periods = PeriodSelector(session)

    @property
    def catalog(self) -> ActivityCatalog:
        return self._catalog

    @property
    def ledger(self) -> ExecutionLedgerService:
        return self._ledger

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def facility_type(self, facility_id: str | UUID) -> str:
        facility_type = self._executions.facility_type(facility_id)
        if facility_type is None:
            raise ValidationError(
                f"Unknown facility: {facility_id}",
                field_errors=[{"field": "facility_id", "message": "Facility not found"}],
            )
        return facility_type

    def layout_for(self, facility_id: str | UUID, project_type: str) -> QuarterLayout:
        return build_layout(self._catalog, project_type, self.facility_type(facility_id))

    def entries_by_code(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
    ) -> dict[str, ExecutionEntryData]:
        entries = self._executions.get_execution_entries(
            facility_id, reporting_period_id, project_type
        )
        return {entry.activity_code: entry for entry in entries}

    def quarters_with_data(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
    ) -> list[Quarter]:
        return self._executions.quarters_with_data(
            facility_id, reporting_period_id, project_type
        )

    def year_opening_state(
        self,
        layout: QuarterLayout,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        entries: dict[str, ExecutionEntryData] | None = None,
    ) -> BalanceState:
        """Opening position of Q1."""
        prior = self._periods.previous_period(reporting_period_id)
        if prior is not None and self.quarters_with_data(facility_id, prior.id, project_type):
            prior_entries = self.entries_by_code(facility_id, prior.id, project_type)
            return read_closing_state(layout, prior_entries, Quarter.Q4).year_opening()

        if entries is None:
            entries = self.entries_by_code(facility_id, reporting_period_id, project_type)
        return read_declared_opening(layout, entries)

    def opening_state(
        self,
        layout: QuarterLayout,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
        entries: dict[str, ExecutionEntryData] | None = None,
    ) -> BalanceState:
        """Closing position of the latest earlier quarter with data."""
        if entries is None:
            entries = self.entries_by_code(facility_id, reporting_period_id, project_type)
        year_open = self.year_opening_state(
            layout, facility_id, reporting_period_id, project_type, entries
        )

        earlier = [
            q
            for q in self.quarters_with_data(facility_id, reporting_period_id, project_type)
            if q.number < quarter.number
        ]
        if not earlier:
            return year_open

        state = read_closing_state(layout, entries, earlier[-1])
        return replace(state, accumulated_surplus=year_open.accumulated_surplus)

    def current_state(
        self,
        layout: QuarterLayout,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
    ) -> BalanceState:
        """Closing position of ``quarter`` recomputed from stored inputs, without writing."""
        entries = self.entries_by_code(facility_id, reporting_period_id, project_type)
        opening = self.opening_state(
            layout, facility_id, reporting_period_id, project_type, quarter, entries
        )
        transactions = extract_transactions(layout, entries, quarter)
        return close_quarter(opening=opening, transactions=transactions).state

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def close(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
        actor_id: UUID,
    ) -> CloseOutcome:
        """
        Recompute and store the derived values of one quarter.

        Returns:
            CloseOutcome with ``changed`` set when any stored value moved.
        """
        layout = self.layout_for(facility_id, project_type)
        entries = self.entries_by_code(facility_id, reporting_period_id, project_type)
        opening = self.opening_state(
            layout, facility_id, reporting_period_id, project_type, quarter, entries
        )
        transactions = extract_transactions(layout, entries, quarter)
        result = close_quarter(opening=opening, transactions=transactions)

        values = closing_entry_values(layout, result, quarter)
        changed = False
        for code, value in sorted(values.items()):
            changed |= self._ledger.upsert_execution_entry(
                facility_id,
                reporting_period_id,
                layout.project_type,
                layout.facility_type,
                code,
                quarter,
                value,
                actor_id,
            )
        if layout.accumulated_code and quarter is not Quarter.Q1:
            changed |= self._ledger.upsert_execution_entry(
                facility_id,
                reporting_period_id,
                layout.project_type,
                layout.facility_type,
                layout.accumulated_code,
                Quarter.Q1,
                result.state.accumulated_surplus,
                actor_id,
            )

        checksum = hash_payload(
            {
                "quarter": quarter.value,
                "values": {code: value for code, value in values.items()},
                "accumulated_surplus": result.state.accumulated_surplus,
            }
        )
        logger.info(
            "quarter_closed",
            extra={
                "project_type": layout.project_type,
                "quarter": quarter.value,
                "changed": changed,
                "net_financial_assets": str(result.state.net_financial_assets),
                "closing_balance": str(result.state.closing_balance),
            },
        )
        return CloseOutcome(quarter=quarter, result=result, changed=changed, checksum=checksum)

    def recalculate(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
        actor_id: UUID,
    ) -> bool:
        """
        Re-close a quarter that already holds data.

        Returns:
            True when stored values changed (and the version was bumped).
        """
        project_type = self._catalog.resolve_project(project_type)
        if (
            self._executions.quarter_version(
                facility_id, reporting_period_id, project_type, quarter
            )
            is None
        ):
            logger.info(
                "quarter_recalculation_skipped_no_data",
                extra={"project_type": project_type, "quarter": quarter.value},
            )
            return False

        row, observed = self._ledger.acquire_quarter(
            facility_id, reporting_period_id, project_type, quarter, actor_id
        )
        outcome = self.close(facility_id, reporting_period_id, project_type, quarter, actor_id)

        if outcome.changed:
            self._ledger.commit_quarter(
                row, observed, outcome.checksum, actor_id, status=QuarterStatus.RECALCULATED
            )
        elif QuarterStatus(row.status) is QuarterStatus.PENDING_RECALCULATION:
            self._ledger.mark_quarter_status(row, QuarterStatus.RECALCULATED)

        logger.info(
            "quarter_recalculated",
            extra={
                "project_type": project_type,
                "quarter": quarter.value,
                "changed": outcome.changed,
            },
        )
        return outcome.changed

    def cascade_from(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        edited: Quarter,
        actor_id: UUID,
    ) -> CascadeResult:
        """
        Propagate an edit of ``edited`` to the later quarters with data.

        The next quarter is recalculated now; the rest are queued for the
        sweep and flagged ``pending_recalculation``.
        """
        project_type = self._catalog.resolve_project(project_type)
        plan = plan_cascade(
            edited, self.quarters_with_data(facility_id, reporting_period_id, project_type)
        )

        for quarter in plan.immediate:
            self.recalculate(facility_id, reporting_period_id, project_type, quarter, actor_id)

        for quarter in plan.queued:
            self._enqueue(facility_id, reporting_period_id, project_type, quarter, edited, actor_id)

        result = plan.result()
        logger.info(
            "execution_cascade_completed",
            extra={
                "project_type": project_type,
                "edited_quarter": edited.value,
                **result.to_dict(),
            },
        )
        return result

    def requeue_after(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        changed: Quarter,
        actor_id: UUID,
    ) -> list[Quarter]:
        """
        Queue every later quarter with data after ``changed`` was re-closed
        with new values.  A later quarter already pending is refreshed.
        """
        project_type = self._catalog.resolve_project(project_type)
        later = [
            quarter
            for quarter in self.quarters_with_data(facility_id, reporting_period_id, project_type)
            if quarter.number > changed.number
        ]
        for quarter in later:
            self._enqueue(
                facility_id, reporting_period_id, project_type, quarter, changed, actor_id
            )

        if later:
            logger.info(
                "recalculation_requeued",
                extra={
                    "project_type": project_type,
                    "changed_quarter": changed.value,
                    "queued": [quarter.value for quarter in later],
                },
            )
        return later

    def _enqueue(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
        trigger: Quarter,
        actor_id: UUID,
    ) -> None:
        row, observed = self._ledger.acquire_quarter(
            facility_id, reporting_period_id, project_type, quarter, actor_id
        )
        self._queue.enqueue(
            facility_id,
            reporting_period_id,
            project_type,
            quarter,
            trigger,
            actor_id,
            expected_source_version=observed,
        )
        self._ledger.mark_quarter_status(row, QuarterStatus.PENDING_RECALCULATION)
