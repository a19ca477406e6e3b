"""
PeriodService -- reporting periods and the lock gate on every write.

Responsibility:
    Creates reporting periods (fiscal years), locks and unlocks a whole
    period or a single facility/project inside it, and provides the
    synchronous ``assert_unlocked`` check that execution updates and
    adjustments call before touching any row.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by ExecutionService and AdjustmentService at the start of
    every write, and by administrative tooling for lock/unlock.

Invariants enforced:
    - A LOCKED period, or an active PeriodLock for the scope, rejects
      writes with PeriodLockedError before any mutation.  No retry or
      backoff applies.
    - Every lock/unlock appends a PeriodLockAudit row.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - ReportingPeriodNotFoundError: unknown period id.
    - PeriodLockedError: write attempted against a locked scope.
    - ValueError: start_date after end_date on creation.

Audit relevance:
    Lock and unlock actions are logged with actor and reason, and
    persisted in PeriodLockAudit.  Rejected writes are logged at WARNING.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import ReportingPeriodInfo
from healthfin_kernel.exceptions import PeriodLockedError, ReportingPeriodNotFoundError
from healthfin_kernel.logging_config import get_logger
from healthfin_kernel.models.reporting_period import (
    LockAction,
    PeriodLock,
    PeriodLockAudit,
    PeriodStatus,
    ReportingPeriod,
)
from healthfin_kernel.selectors.period_selector import PeriodSelector
from healthfin_kernel.services.base import BaseService

logger = get_logger("services.period")


class PeriodService(BaseService[ReportingPeriod]):
    """
    Service for reporting period lifecycle and lock gating.

    Contract:
        Returns frozen ``ReportingPeriodInfo`` DTOs.  Lock state is read
        through PeriodSelector so that the gate and the query agree.

    Guarantees:
        - ``assert_unlocked`` raises before the caller mutates anything.
        - Lock rows are toggled, never deleted.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT implement the approval workflow.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._selector = PeriodSelector(session)

    def create_period(
        self,
        year: int,
        start_date: date,
        end_date: date,
        actor_id: UUID,
    ) -> ReportingPeriodInfo:
        """
        Create a reporting period for a fiscal year.

        Raises:
            ValueError: If start_date > end_date.
        """
        if start_date > end_date:
            raise ValueError(
                f"start_date ({start_date}) cannot be after end_date ({end_date})"
            )

        period = ReportingPeriod(
            year=year,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN,
            created_by_id=actor_id,
        )
        self.session.add(period)
        self.session.flush()

        logger.info(
            "reporting_period_created",
            extra={"year": year, "start_date": str(start_date), "end_date": str(end_date)},
        )
        return ReportingPeriodInfo.from_model(period)

    def is_locked(
        self,
        reporting_period_id: str | UUID,
        facility_id: str | UUID | None = None,
        project_type: str | None = None,
    ) -> bool:
        return self._selector.is_locked(reporting_period_id, facility_id, project_type)

    def assert_unlocked(
        self,
        reporting_period_id: str | UUID,
        facility_id: str | UUID | None = None,
        project_type: str | None = None,
        operation: str | None = None,
    ) -> None:
        """
        Fail fast when the scope is locked.

        Raises:
            PeriodLockedError: If the period or the facility/project
                scope is locked.
        """
        if self.is_locked(reporting_period_id, facility_id, project_type):
            logger.warning(
                "period_locked_write_rejected",
                extra={
                    "reporting_period_id": str(reporting_period_id),
                    "facility_id": str(facility_id) if facility_id else None,
                    "project_type": project_type,
                    "operation": operation,
                },
            )
            raise PeriodLockedError(
                str(reporting_period_id),
                facility_id=str(facility_id) if facility_id else None,
                project_type=project_type,
                operation=operation,
            )

    def lock_period(self, reporting_period_id: str | UUID, actor_id: UUID) -> ReportingPeriodInfo:
        """Lock the whole period for every facility and project."""
        period = self._get_period(reporting_period_id)
        period.status = PeriodStatus.LOCKED
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info("reporting_period_locked", extra={"year": period.year})
        return ReportingPeriodInfo.from_model(period)

    def unlock_period(self, reporting_period_id: str | UUID, actor_id: UUID) -> ReportingPeriodInfo:
        period = self._get_period(reporting_period_id)
        period.status = PeriodStatus.OPEN
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info("reporting_period_unlocked", extra={"year": period.year})
        return ReportingPeriodInfo.from_model(period)

    def lock(
        self,
        reporting_period_id: str | UUID,
        facility_id: str | UUID,
        project_type: str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> PeriodLock:
        """
        Lock one facility/project inside a period.

        Postconditions:
            - The PeriodLock row for the scope exists with is_locked=True.
            - A PeriodLockAudit row records the action.
        """
        return self._set_lock(
            reporting_period_id, facility_id, project_type, actor_id, reason, locked=True
        )

    def unlock(
        self,
        reporting_period_id: str | UUID,
        facility_id: str | UUID,
        project_type: str,
        actor_id: UUID,
        reason: str | None = None,
    ) -> PeriodLock:
        return self._set_lock(
            reporting_period_id, facility_id, project_type, actor_id, reason, locked=False
        )

    def lock_history(self, lock_id: UUID) -> list[PeriodLockAudit]:
        return list(
            self.session.scalars(
                select(PeriodLockAudit)
                .where(PeriodLockAudit.period_lock_id == lock_id)
                .order_by(PeriodLockAudit.performed_at)
            ).all()
        )

    def _set_lock(
        self,
        reporting_period_id: str | UUID,
        facility_id: str | UUID,
        project_type: str,
        actor_id: UUID,
        reason: str | None,
        locked: bool,
    ) -> PeriodLock:
        period = self._get_period(reporting_period_id)
        facility_uuid = facility_id if isinstance(facility_id, UUID) else UUID(str(facility_id))
        project = project_type.upper()
        now = self._clock.now()

        lock = self.session.scalars(
            select(PeriodLock).where(
                PeriodLock.reporting_period_id == period.id,
                PeriodLock.facility_id == facility_uuid,
                PeriodLock.project_type == project,
            )
        ).one_or_none()

        if lock is None:
            lock = PeriodLock(
                reporting_period_id=period.id,
                facility_id=facility_uuid,
                project_type=project,
                is_locked=locked,
                created_by_id=actor_id,
            )
            self.session.add(lock)

        lock.is_locked = locked
        lock.reason = reason
        lock.updated_by_id = actor_id
        if locked:
            lock.locked_by_id = actor_id
            lock.locked_at = now
        self.session.flush()

        self.session.add(
            PeriodLockAudit(
                period_lock_id=lock.id,
                action=LockAction.LOCKED if locked else LockAction.UNLOCKED,
                actor_id=actor_id,
                reason=reason,
                performed_at=now,
                created_by_id=actor_id,
            )
        )
        self.session.flush()

        logger.info(
            "period_lock_changed",
            extra={
                "year": period.year,
                "facility_id": str(facility_uuid),
                "project_type": project,
                "action": "locked" if locked else "unlocked",
                "reason": reason,
            },
        )
        return lock

    def _get_period(self, reporting_period_id: str | UUID) -> ReportingPeriod:
        period_uuid = (
            reporting_period_id
            if isinstance(reporting_period_id, UUID)
            else UUID(str(reporting_period_id))
        )
        period = self.session.get(ReportingPeriod, period_uuid)
        if period is None:
            raise ReportingPeriodNotFoundError(str(reporting_period_id))
        return period
