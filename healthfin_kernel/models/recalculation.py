"""
Module: healthfin_kernel.models.recalculation
Responsibility: ORM persistence for deferred cascade recalculation work.
    When an edited quarter has downstream quarters two or more steps away,
    one RecalculationJob per downstream quarter is queued here and
    completed by the recalculation sweep.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - At most one PENDING job per (facility, period, project, quarter);
      enforced by RecalculationQueue before insert.
    - State transitions follow VALID_TRANSITIONS.

Failure modes:
    - ValueError on invalid state transition.

Audit relevance:
    last_error and attempts explain why a quarter was left inconsistent;
    ABANDONED jobs are surfaced for manual follow-up.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from healthfin_kernel.db.base import TrackedBase, UUIDString


class JobStatus(str, Enum):
    """
    Status of a recalculation job.

    State machine:
        PENDING -> RUNNING
        RUNNING -> COMPLETED | FAILED
        FAILED -> RUNNING | ABANDONED
        COMPLETED: terminal
        ABANDONED: terminal
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING, JobStatus.ABANDONED}),
    # Terminal states
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ABANDONED: frozenset(),
}


class RecalculationJob(TrackedBase):
    """
    One queued recalculation of a downstream quarter.

    Guarantees:
        - ``expected_source_version`` is the quarter version seen at enqueue
          time.  A mismatch at run time is not an error: recalculation is a
          pure function of the stored data and is simply re-run.
    """

    __tablename__ = "recalculation_jobs"

    __table_args__ = (
        Index(
            "idx_recalc_job_scope",
            "facility_id",
            "reporting_period_id",
            "project_type",
            "quarter",
        ),
        Index("idx_recalc_job_status", "status"),
    )

    facility_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("facilities.id"),
        nullable=False,
    )

    reporting_period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reporting_periods.id"),
        nullable=False,
    )

    project_type: Mapped[str] = mapped_column(String(20), nullable=False)

    quarter: Mapped[str] = mapped_column(String(2), nullable=False)

    trigger_quarter: Mapped[str] = mapped_column(String(2), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        String(20),
        default=JobStatus.PENDING,
        nullable=False,
    )

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    expected_source_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    last_error: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<RecalculationJob {self.project_type} {self.quarter}: {self.status}>"

    @property
    def status_enum(self) -> JobStatus:
        return JobStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS.get(self.status_enum, frozenset())

    def validate_transition(self, target: JobStatus) -> None:
        """Validate that a state transition is allowed.

        Raises: ValueError if the transition is not in VALID_TRANSITIONS.
        """
        allowed = VALID_TRANSITIONS.get(self.status_enum, frozenset())
        if target not in allowed:
            raise ValueError(
                f"Invalid transition: {self.status_enum.value} -> {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
