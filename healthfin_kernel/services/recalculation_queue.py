"""
RecalculationQueue -- deferred cascade recalculation lifecycle.

Responsibility:
    Enqueues downstream quarters that an execution update could not
    recalculate synchronously, hands pending work to the sweep, and
    records success, failure and abandonment.

Architecture position:
    Kernel > Services -- imperative shell.
    Written to by ExecutionService/AdjustmentService; drained by
    RecalculationWorker in healthfin_services.

Invariants enforced:
    MAX_ATTEMPTS -- a job failing this many times is ABANDONED.
    - At most one PENDING job per (facility, period, project, quarter):
      enqueueing an already pending quarter refreshes the existing job.
    - Transitions follow RecalculationJob VALID_TRANSITIONS.

Failure modes:
    - RecalculationNotAllowedError: job is terminal or over its limit.
    - ValueError: invalid state transition.

Audit relevance:
    Every enqueue, completion, failure and abandonment is logged with
    the quarter, trigger quarter and attempt count.

Retry contract:
    Recalculation is a pure function of the stored ledger, so a retried
    job recomputes from the current data.  A job whose quarter version
    moved since enqueue is not an error.
"""

from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import Quarter
from healthfin_kernel.exceptions import RecalculationNotAllowedError
from healthfin_kernel.logging_config import get_logger
from healthfin_kernel.models.recalculation import JobStatus, RecalculationJob
from healthfin_kernel.services.base import BaseService

logger = get_logger("services.recalculation_queue")


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class RecalculationQueue(BaseService[RecalculationJob]):
    """
    Database-backed queue of downstream quarter recalculations.

    Contract:
        ``enqueue`` during the update transaction; ``claim_pending`` /
        ``start`` / ``complete`` / ``fail`` from the sweep.

    Guarantees:
        - Claim order is oldest-first, then quarter order.
        - Failed jobs stay claimable until MAX_ATTEMPTS.
    """

    MAX_ATTEMPTS = 5

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def enqueue(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
        trigger_quarter: Quarter,
        actor_id: UUID,
        expected_source_version: int | None = None,
    ) -> RecalculationJob:
        existing = self.session.scalars(
            select(RecalculationJob).where(
                RecalculationJob.facility_id == _as_uuid(facility_id),
                RecalculationJob.reporting_period_id == _as_uuid(reporting_period_id),
                RecalculationJob.project_type == project_type.upper(),
                RecalculationJob.quarter == quarter.value,
                RecalculationJob.status == JobStatus.PENDING,
            )
        ).one_or_none()

        if existing is not None:
            existing.trigger_quarter = trigger_quarter.value
            existing.expected_source_version = expected_source_version
            existing.updated_by_id = actor_id
            self.session.flush()
            logger.info(
                "recalculation_job_refreshed",
                extra={"job_id": str(existing.id), "quarter": quarter.value},
            )
            return existing

        job = RecalculationJob(
            facility_id=_as_uuid(facility_id),
            reporting_period_id=_as_uuid(reporting_period_id),
            project_type=project_type.upper(),
            quarter=quarter.value,
            trigger_quarter=trigger_quarter.value,
            status=JobStatus.PENDING,
            attempts=0,
            expected_source_version=expected_source_version,
            enqueued_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self.session.add(job)
        self.session.flush()

        logger.info(
            "recalculation_job_enqueued",
            extra={
                "job_id": str(job.id),
                "project_type": job.project_type,
                "quarter": quarter.value,
                "trigger_quarter": trigger_quarter.value,
            },
        )
        return job

    def claim_pending(self, limit: int = 100) -> list[RecalculationJob]:
        """Pending jobs, and failed jobs still under MAX_ATTEMPTS."""
        jobs = self.session.scalars(
            select(RecalculationJob)
            .where(
                or_(
                    RecalculationJob.status == JobStatus.PENDING,
                    (RecalculationJob.status == JobStatus.FAILED)
                    & (RecalculationJob.attempts < self.MAX_ATTEMPTS),
                )
            )
            .order_by(RecalculationJob.enqueued_at, RecalculationJob.quarter)
            .limit(limit)
        ).all()
        return list(jobs)

    def pending_for(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
    ) -> list[RecalculationJob]:
        return list(
            self.session.scalars(
                select(RecalculationJob)
                .where(
                    RecalculationJob.facility_id == _as_uuid(facility_id),
                    RecalculationJob.reporting_period_id == _as_uuid(reporting_period_id),
                    RecalculationJob.project_type == project_type.upper(),
                    RecalculationJob.status.in_([JobStatus.PENDING, JobStatus.FAILED]),
                )
                .order_by(RecalculationJob.quarter)
            ).all()
        )

    def start(self, job: RecalculationJob) -> RecalculationJob:
        """
        Transition a job to RUNNING.

        Raises:
            RecalculationNotAllowedError: terminal job, or attempts
                exhausted.
        """
        if job.is_terminal:
            raise RecalculationNotAllowedError(
                str(job.id), f"job is {job.status_enum.value}"
            )
        if job.attempts >= self.MAX_ATTEMPTS:
            raise RecalculationNotAllowedError(
                str(job.id), f"maximum attempts ({self.MAX_ATTEMPTS}) exceeded"
            )

        job.validate_transition(JobStatus.RUNNING)
        job.status = JobStatus.RUNNING
        job.attempts = job.attempts + 1
        self.session.flush()
        return job

    def complete(self, job: RecalculationJob) -> RecalculationJob:
        job.validate_transition(JobStatus.COMPLETED)
        job.status = JobStatus.COMPLETED
        job.completed_at = self._clock.now()
        job.last_error = None
        self.session.flush()

        logger.info(
            "recalculation_job_completed",
            extra={"job_id": str(job.id), "quarter": job.quarter, "attempts": job.attempts},
        )
        return job

    def fail(self, job: RecalculationJob, error: str) -> RecalculationJob:
        """
        Record a failed attempt; abandon once MAX_ATTEMPTS is reached.
        """
        job.validate_transition(JobStatus.FAILED)
        job.status = JobStatus.FAILED
        job.last_error = error[:2000]
        self.session.flush()

        if job.attempts >= self.MAX_ATTEMPTS:
            job.validate_transition(JobStatus.ABANDONED)
            job.status = JobStatus.ABANDONED
            job.completed_at = self._clock.now()
            self.session.flush()
            logger.error(
                "recalculation_job_abandoned",
                extra={
                    "job_id": str(job.id),
                    "quarter": job.quarter,
                    "attempts": job.attempts,
                    "last_error": job.last_error,
                },
            )
        else:
            logger.warning(
                "recalculation_job_failed",
                extra={
                    "job_id": str(job.id),
                    "quarter": job.quarter,
                    "attempts": job.attempts,
                    "error": job.last_error,
                },
            )
        return job
