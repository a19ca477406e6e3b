"""
RecalculationWorker -- sweep over deferred cascade recalculations.

Responsibility:
    Drains the RecalculationQueue: each claimed job re-closes one
    downstream quarter through QuarterCloseService.recalculate.

Architecture position:
    Services -- imperative shell.  Invoked by a scheduler or test, never
    from inside an update command.

Invariants enforced:
    - Each job's recalculation runs inside its own SAVEPOINT; a failing
      job rolls back only its own writes.
    - The attempt counter is recorded outside the savepoint, so a failed
      attempt still counts toward MAX_ATTEMPTS.
    - A job whose quarter version moved since enqueue is recomputed from
      the current data.
    - A job that changed stored values re-queues the later quarters with
      data, so a quarter closed from a stale predecessor is closed again.
    - After a failure, later quarters of the same scope wait for the next
      sweep.

Failure modes:
    - Job errors are recorded on the job (FAILED / ABANDONED), not raised.

Audit relevance:
    The sweep summary and per-job transitions are logged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.orm import Session

from healthfin_kernel.domain.catalog import ActivityCatalog
from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import Quarter
from healthfin_kernel.exceptions import RecalculationNotAllowedError
from healthfin_kernel.logging_config import LogContext, get_logger
from healthfin_kernel.models.recalculation import JobStatus, RecalculationJob
from healthfin_kernel.services.recalculation_queue import RecalculationQueue
from healthfin_services.config import StatementConfig
from healthfin_services.quarter_close_service import QuarterCloseService

logger = get_logger("services.recalculation_worker")


@dataclass
class SweepSummary:
    """Counts of one sweep."""

    claimed: int = 0
    completed: int = 0
    changed: int = 0
    failed: int = 0
    abandoned: int = 0
    deferred: int = 0
    job_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, int]:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "changed": self.changed,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "deferred": self.deferred,
        }


class RecalculationWorker:
    """
    Runs pending recalculation jobs.

    Contract:
        ``run_pending`` flushes; the caller owns the transaction.

    Non-goals:
        - Does NOT check period locks.  A locked period has no editable
          quarters, so nothing new is queued for it.
    """

    def __init__(
        self,
        session: Session,
        catalog: ActivityCatalog,
        clock: Clock | None = None,
        config: StatementConfig | None = None,
        actor_id: UUID | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or StatementConfig.with_defaults()
        self._queue = RecalculationQueue(session, self._clock)
        self._closer = QuarterCloseService(session, catalog, self._clock)
        self._actor_id = actor_id

    def run_pending(self, limit: int | None = None) -> SweepSummary:
        """
        Process up to ``limit`` claimable jobs, oldest first.

        Once a quarter fails, later quarters of the same facility, period
        and project are deferred to the next sweep.

        Returns:
            SweepSummary of the jobs touched by this sweep.
        """
        jobs = self._queue.claim_pending(limit or self._config.sweep_limit)
        summary = SweepSummary(claimed=len(jobs))
        failed_at: dict[tuple[str, str, str], int] = {}

        logger.info("recalculation_sweep_started", extra={"claimed": len(jobs)})

        for job in jobs:
            summary.job_ids.append(str(job.id))
            scope = _scope(job)
            quarter = Quarter(job.quarter)
            if scope in failed_at and quarter.number > failed_at[scope]:
                summary.deferred += 1
                logger.info(
                    "recalculation_job_deferred",
                    extra={"job_id": str(job.id), "quarter": quarter.value},
                )
                continue
            if not self._run_job(job, summary):
                failed_at[scope] = min(failed_at.get(scope, quarter.number), quarter.number)

        logger.info("recalculation_sweep_completed", extra=summary.to_dict())
        return summary

    def _run_job(self, job: RecalculationJob, summary: SweepSummary) -> bool:
        """Run one job; False when it failed or was abandoned."""
        actor_id = self._actor_id or job.created_by_id
        quarter = Quarter(job.quarter)

        try:
            self._queue.start(job)
        except RecalculationNotAllowedError as exc:
            logger.warning(
                "recalculation_job_skipped",
                extra={"job_id": str(job.id), "reason": exc.reason},
            )
            return True

        with LogContext.bind(
            actor_id=str(actor_id),
            facility_id=str(job.facility_id),
            reporting_period_id=str(job.reporting_period_id),
            project_type=job.project_type,
        ):
            savepoint = self._session.begin_nested()
            try:
                changed = self._closer.recalculate(
                    job.facility_id,
                    job.reporting_period_id,
                    job.project_type,
                    quarter,
                    actor_id,
                )
                if changed:
                    self._closer.requeue_after(
                        job.facility_id,
                        job.reporting_period_id,
                        job.project_type,
                        quarter,
                        actor_id,
                    )
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                self._queue.fail(job, f"{type(exc).__name__}: {exc}")
                if JobStatus(job.status) is JobStatus.ABANDONED:
                    summary.abandoned += 1
                else:
                    summary.failed += 1
                return False

            self._queue.complete(job)
            summary.completed += 1
            if changed:
                summary.changed += 1
            return True


def _scope(job: RecalculationJob) -> tuple[str, str, str]:
    return (str(job.facility_id), str(job.reporting_period_id), job.project_type)
