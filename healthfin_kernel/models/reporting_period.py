"""
Module: healthfin_kernel.models.reporting_period
Responsibility: ORM persistence for reporting periods (fiscal years) and
    the per-facility period locks that gate every write in the core.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - year is unique; one reporting period per fiscal year.
    - At most one PeriodLock per (reporting_period, facility, project_type).
    - A LOCKED period, or an active PeriodLock, rejects execution updates
      and adjustments before any mutation (PeriodLockedError).

Failure modes:
    - IntegrityError on duplicate year or duplicate lock key.

Audit relevance:
    PeriodLockAudit rows record every lock and unlock with the acting user
    and reason, so a reviewer can tell why a submitted report was frozen.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from healthfin_kernel.db.base import TrackedBase, UUIDString


class PeriodStatus(str, Enum):
    """Lock status of a reporting period as a whole."""

    OPEN = "open"
    LOCKED = "locked"


class LockAction(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class ReportingPeriod(TrackedBase):
    """
    Fiscal year for which execution entries are recorded.

    Contract:
        Quarters Q1..Q4 fall inside [start_date, end_date].  The previous
        fiscal year is found by ``year - 1``.

    Non-goals:
        - Calendar maintenance of periods is external reference data.
    """

    __tablename__ = "reporting_periods"

    __table_args__ = (
        UniqueConstraint("year", name="uq_reporting_period_year"),
    )

    year: Mapped[int] = mapped_column(Integer, nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PeriodStatus] = mapped_column(
        String(20),
        default=PeriodStatus.OPEN,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ReportingPeriod FY{self.year}: {self.status}>"

    @property
    def is_locked(self) -> bool:
        return self.status == PeriodStatus.LOCKED


class PeriodLock(TrackedBase):
    """
    Lock of one facility/project inside a reporting period.

    Guarantees:
        - Unique on (reporting_period_id, facility_id, project_type).
        - ``is_locked`` toggles; rows are never deleted so the history in
          PeriodLockAudit always has an owner.
    """

    __tablename__ = "period_locks"

    __table_args__ = (
        UniqueConstraint(
            "reporting_period_id",
            "facility_id",
            "project_type",
            name="uq_period_lock_scope",
        ),
        Index("idx_period_lock_period", "reporting_period_id"),
    )

    reporting_period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reporting_periods.id"),
        nullable=False,
    )

    facility_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("facilities.id"),
        nullable=False,
    )

    project_type: Mapped[str] = mapped_column(String(20), nullable=False)

    is_locked: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    locked_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    def __repr__(self) -> str:
        state = "locked" if self.is_locked else "unlocked"
        return f"<PeriodLock {self.project_type} facility={self.facility_id}: {state}>"


class PeriodLockAudit(TrackedBase):
    """Append-only record of a lock or unlock action."""

    __tablename__ = "period_lock_audits"

    __table_args__ = (
        Index("idx_period_lock_audit_lock", "period_lock_id"),
    )

    period_lock_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("period_locks.id"),
        nullable=False,
    )

    action: Mapped[LockAction] = mapped_column(String(20), nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    performed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
