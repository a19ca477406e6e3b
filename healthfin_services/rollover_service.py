"""
RolloverService -- previous-quarter balances and quarter navigation.

Responsibility:
    Answers "what did the quarter before this one close at?" for a
    facility and project, crossing into the prior fiscal year for Q1,
    and reports the quarter sequence around a quarter.

Architecture position:
    Services -- read-only shell over QuarterCloseService reads and the
    pure rollover helpers in healthfin_engines.rollover.

Invariants enforced:
    - For Q2..Q4 the balances are the stored closing position of the
      previous quarter of the same period.
    - For Q1 they are the prior fiscal year's Q4 closing position, with
      the prior year's total G carried as the accumulated surplus.
    - Without a previous quarter the result has ``exists=False`` and
      zero totals.

Failure modes:
    - ReportingPeriodNotFoundError: unknown period.
    - ValidationError: unknown facility or quarter label.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from healthfin_engines import (
    PreviousQuarterBalances,
    QuarterSequence,
    build_previous_balances,
    empty_previous_balances,
    get_quarter_sequence,
    read_closing_state,
)
from healthfin_kernel.domain.catalog import ActivityCatalog
from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import Quarter
from healthfin_kernel.exceptions import ValidationError
from healthfin_kernel.logging_config import get_logger
from healthfin_kernel.selectors.execution_selector import ExecutionSelector
from healthfin_kernel.selectors.period_selector import PeriodSelector
from healthfin_services.quarter_close_service import QuarterCloseService

logger = get_logger("services.rollover")


def _quarter(value: Quarter | str | int) -> Quarter:
    try:
        return Quarter.from_value(value)
    except ValueError as exc:
        raise ValidationError(
            str(exc), field_errors=[{"field": "quarter", "message": str(exc)}]
        ) from None


class RolloverService:
    """
    Read side of the quarterly rollover.

    Non-goals:
        - Does NOT write balances; quarter close does.
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
        self._periods = PeriodSelector(session)
        self._executions = ExecutionSelector(session)
        self._closer = QuarterCloseService(session, catalog, self._clock)

    def get_quarter_sequence(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str | int,
    ) -> QuarterSequence:
        quarter = _quarter(quarter)
        project = self._catalog.resolve_project(project_type)
        period = self._periods.get_period(reporting_period_id)
        prior = self._periods.previous_period(reporting_period_id)
        has_prior = prior is not None and bool(
            self._closer.quarters_with_data(facility_id, prior.id, project)
        )
        return get_quarter_sequence(quarter, period.year, has_cross_fiscal_year_previous=has_prior)

    def get_previous_quarter_balances(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str | int,
    ) -> PreviousQuarterBalances:
        """
        Closing balances of the quarter before ``quarter``.

        Returns:
            PreviousQuarterBalances; ``exists`` is False when there is no
            previous quarter with data.
        """
        quarter = _quarter(quarter)
        project = self._catalog.resolve_project(project_type)
        period = self._periods.get_period(reporting_period_id)
        layout = self._closer.layout_for(facility_id, project)

        if quarter is Quarter.Q1:
            prior = self._periods.previous_period(reporting_period_id)
            if prior is None or not self._closer.quarters_with_data(
                facility_id, prior.id, project
            ):
                logger.info(
                    "previous_quarter_balances_not_found",
                    extra={"project_type": project, "quarter": quarter.value},
                )
                return empty_previous_balances()
            entries = self._closer.entries_by_code(facility_id, prior.id, project)
            state = read_closing_state(layout, entries, Quarter.Q4).year_opening()
            return build_previous_balances(
                layout,
                state,
                Quarter.Q4,
                prior.year,
                self._executions.quarter_id(facility_id, prior.id, project, Quarter.Q4),
            )

        previous = Quarter.from_value(quarter.number - 1)
        if previous not in self._closer.quarters_with_data(
            facility_id, reporting_period_id, project
        ):
            logger.info(
                "previous_quarter_balances_not_found",
                extra={"project_type": project, "quarter": quarter.value},
            )
            return empty_previous_balances()

        entries = self._closer.entries_by_code(facility_id, reporting_period_id, project)
        state = read_closing_state(layout, entries, previous)
        return build_previous_balances(
            layout,
            state,
            previous,
            period.year,
            self._executions.quarter_id(facility_id, reporting_period_id, project, previous),
        )

