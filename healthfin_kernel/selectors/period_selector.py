"""
Module: healthfin_kernel.selectors.period_selector
Responsibility: Read access to reporting periods and period lock state.
Architecture position: Kernel > Selectors.

Failure modes:
    - ReportingPeriodNotFoundError from ``get_period`` on an unknown id.
"""

from uuid import UUID

from sqlalchemy import select

from healthfin_kernel.domain.dtos import ReportingPeriodInfo
from healthfin_kernel.exceptions import ReportingPeriodNotFoundError
from healthfin_kernel.models.reporting_period import PeriodLock, ReportingPeriod
from healthfin_kernel.selectors.base import BaseSelector


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class PeriodSelector(BaseSelector[ReportingPeriod]):
    """Read-only queries over ReportingPeriod and PeriodLock."""

    def get_period(self, reporting_period_id: str | UUID) -> ReportingPeriodInfo:
        period = self.session.get(ReportingPeriod, _as_uuid(reporting_period_id))
        if period is None:
            raise ReportingPeriodNotFoundError(str(reporting_period_id))
        return ReportingPeriodInfo.from_model(period)

    def find_by_year(self, year: int) -> ReportingPeriodInfo | None:
        period = self.session.scalars(
            select(ReportingPeriod).where(ReportingPeriod.year == year)
        ).one_or_none()
        return ReportingPeriodInfo.from_model(period) if period else None

    def previous_period(self, reporting_period_id: str | UUID) -> ReportingPeriodInfo | None:
        """The fiscal year immediately before the given period, if any."""
        current = self.get_period(reporting_period_id)
        return self.find_by_year(current.year - 1)

    def is_locked(
        self,
        reporting_period_id: str | UUID,
        facility_id: str | UUID | None = None,
        project_type: str | None = None,
    ) -> bool:
        """
        True when the whole period is locked, or when an active lock exists
        for the facility/project scope.
        """
        period = self.session.get(ReportingPeriod, _as_uuid(reporting_period_id))
        if period is None:
            raise ReportingPeriodNotFoundError(str(reporting_period_id))
        if period.is_locked:
            return True
        if facility_id is None:
            return False

        stmt = select(PeriodLock.is_locked).where(
            PeriodLock.reporting_period_id == period.id,
            PeriodLock.facility_id == _as_uuid(facility_id),
        )
        if project_type is not None:
            stmt = stmt.where(PeriodLock.project_type == project_type.upper())
        return any(self.session.scalars(stmt).all())
