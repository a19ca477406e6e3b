"""
ExecutionLedgerService -- the only writer of execution entries.

Responsibility:
    Upserts execution entries (quarter value, per-quarter details,
    comment), keeps ``cumulative_balance`` consistent with the section's
    stock/flow rule, and owns the per-quarter compare-and-swap token
    (ExecutionQuarter.version) that serialises writers.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by ExecutionService, AdjustmentService and the recalculation
    sweep in healthfin_services.  The quarter close arithmetic lives in
    healthfin_engines; this service only persists its results.

Invariants enforced:
    - Single writer per (facility, period, project, quarter): the quarter
      row is bumped with ``UPDATE ... WHERE version = :observed``.  Zero
      affected rows raises OptimisticLockError; edits are never merged.
      On PostgreSQL the row is additionally selected FOR UPDATE.
    - cumulative_balance: sum of entered quarters for flow sections
      (A, B, G, X); latest entered quarter for stock sections (D, E) and
      for the derived F line.  An explicit zero counts as entered.
    - An entry's ``version`` is bumped only when a stored value changed,
      which keeps recalculation idempotent.
    - Flush-only.

Failure modes:
    - OptimisticLockError: stale expected version, or a concurrent
      creator won the race for the same quarter row.
    - UnknownActivityError: activity code carries no section letter.

Audit relevance:
    Each accepted quarter write logs ``execution_quarter_committed`` with
    the old and new version and the quarter checksum.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from healthfin_kernel.db.engine import is_postgres
from healthfin_kernel.domain.catalog import extract_section
from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import Quarter, Section
from healthfin_kernel.exceptions import OptimisticLockError, UnknownActivityError
from healthfin_kernel.logging_config import get_logger
from healthfin_kernel.models.execution import (
    ExecutionEntry,
    ExecutionQuarter,
    QuarterStatus,
)
from healthfin_kernel.services.base import BaseService
from healthfin_kernel.utils.hashing import to_json_native

logger = get_logger("services.ledger")

_UNSET: Any = object()


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def compute_cumulative_balance(
    section: Section,
    quarters: dict[Quarter, Decimal | None],
) -> Decimal | None:
    """
    Stock/flow rule for the stored cumulative balance.

    Returns None when no quarter has been entered.
    """
    entered = [(q, quarters[q]) for q in Quarter.ordered() if quarters.get(q) is not None]
    if not entered:
        return None
    if section.is_flow:
        return sum((value for _, value in entered), Decimal("0"))
    # D, E and the derived F line carry the latest balance
    return entered[-1][1]


class ExecutionLedgerService(BaseService[ExecutionEntry]):
    """
    Writes execution entries and quarter tokens.

    Contract:
        ``acquire_quarter`` first, then any number of
        ``upsert_execution_entry`` calls, then ``commit_quarter``.  All
        within the caller's transaction.

    Guarantees:
        - ``commit_quarter`` bumps the version by exactly one, or raises.
        - Re-writing identical values reports ``changed=False`` and does
          not touch the entry version.

    Non-goals:
        - Does NOT validate activity codes against the catalog (the
          calling service does, at the boundary).
        - Does NOT compute closing balances.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Quarter token (compare-and-swap)
    # ------------------------------------------------------------------

    def acquire_quarter(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> tuple[ExecutionQuarter, int]:
        """
        Load (or create) the quarter row and check the caller's version.

        A quarter that has never been written is created with version 0.

        Returns:
            (quarter_row, observed_version) -- pass the observed version
            to ``commit_quarter``.

        Raises:
            OptimisticLockError: expected_version does not match.
        """
        row = self._load_quarter(facility_id, reporting_period_id, project_type, quarter)

        if row is None:
            if expected_version not in (None, 0):
                raise OptimisticLockError(
                    "ExecutionQuarter",
                    f"{facility_id}/{project_type}/{quarter.value}",
                    expected_version=expected_version,
                    actual_version=None,
                )
            row = ExecutionQuarter(
                facility_id=_as_uuid(facility_id),
                reporting_period_id=_as_uuid(reporting_period_id),
                project_type=project_type.upper(),
                quarter=quarter.value,
                version=0,
                status=QuarterStatus.SUBMITTED,
                created_by_id=actor_id,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(row)
                    self.session.flush()
            except IntegrityError:
                logger.warning(
                    "execution_quarter_create_conflict",
                    extra={"project_type": project_type, "quarter": quarter.value},
                )
                raise OptimisticLockError(
                    "ExecutionQuarter",
                    f"{facility_id}/{project_type}/{quarter.value}",
                    expected_version=expected_version,
                ) from None

        if expected_version is not None and row.version != expected_version:
            logger.warning(
                "execution_quarter_version_conflict",
                extra={
                    "quarter": quarter.value,
                    "expected_version": expected_version,
                    "actual_version": row.version,
                },
            )
            raise OptimisticLockError(
                "ExecutionQuarter",
                str(row.id),
                expected_version=expected_version,
                actual_version=row.version,
            )

        return row, row.version

    def commit_quarter(
        self,
        row: ExecutionQuarter,
        observed_version: int,
        checksum: str,
        actor_id: UUID,
        status: QuarterStatus = QuarterStatus.SUBMITTED,
    ) -> int:
        """
        Compare-and-swap the quarter version.

        Returns:
            The new version.

        Raises:
            OptimisticLockError: another writer bumped the version since
                ``observed_version`` was read.
        """
        result = self.session.execute(
            update(ExecutionQuarter)
            .where(
                ExecutionQuarter.id == row.id,
                ExecutionQuarter.version == observed_version,
            )
            .values(
                version=observed_version + 1,
                checksum=checksum,
                status=status,
                updated_by_id=actor_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            self.session.refresh(row)
            raise OptimisticLockError(
                "ExecutionQuarter",
                str(row.id),
                expected_version=observed_version,
                actual_version=row.version,
            )

        logger.info(
            "execution_quarter_committed",
            extra={
                "project_type": row.project_type,
                "quarter": row.quarter,
                "old_version": observed_version,
                "new_version": observed_version + 1,
                "checksum": checksum,
                "status": QuarterStatus(status).value,
            },
        )
        return observed_version + 1

    def mark_quarter_status(self, row: ExecutionQuarter, status: QuarterStatus) -> None:
        """Status-only change; does not bump the version."""
        row.status = status
        self.session.flush()

    def _load_quarter(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
    ) -> ExecutionQuarter | None:
        stmt = select(ExecutionQuarter).where(
            ExecutionQuarter.facility_id == _as_uuid(facility_id),
            ExecutionQuarter.reporting_period_id == _as_uuid(reporting_period_id),
            ExecutionQuarter.project_type == project_type.upper(),
            ExecutionQuarter.quarter == quarter.value,
        )
        if is_postgres():
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).one_or_none()

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def get_entry(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        activity_code: str,
    ) -> ExecutionEntry | None:
        return self.session.scalars(
            select(ExecutionEntry).where(
                ExecutionEntry.facility_id == _as_uuid(facility_id),
                ExecutionEntry.reporting_period_id == _as_uuid(reporting_period_id),
                ExecutionEntry.activity_code == activity_code,
            )
        ).one_or_none()

    def upsert_execution_entry(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        facility_type: str,
        activity_code: str,
        quarter: Quarter,
        value: Decimal | None,
        actor_id: UUID,
        details: dict[str, Any] | None = _UNSET,
        comment: str | None = _UNSET,
    ) -> bool:
        """
        Write one activity's value (and optionally details) for a quarter.

        ``details=None`` removes the quarter's details; leaving it unset
        keeps them.  Returns True when any stored value changed.

        Raises:
            UnknownActivityError: the code has no section letter.
        """
        section = extract_section(activity_code)
        if section is None:
            raise UnknownActivityError(activity_code)

        entry = self.get_entry(facility_id, reporting_period_id, activity_code)
        created = entry is None
        if entry is None:
            entry = ExecutionEntry(
                facility_id=_as_uuid(facility_id),
                reporting_period_id=_as_uuid(reporting_period_id),
                project_type=project_type.upper(),
                facility_type=facility_type.lower(),
                activity_code=activity_code,
                quarter_details={},
                version=1,
                created_by_id=actor_id,
            )
            self.session.add(entry)

        changed = created

        current = getattr(entry, quarter.field_name)
        if (current is None) != (value is None) or (
            current is not None and value is not None and Decimal(current) != value
        ):
            setattr(entry, quarter.field_name, value)
            changed = True

        if details is not _UNSET:
            stored = dict(entry.quarter_details or {})
            before = stored.get(quarter.value)
            if details is None:
                stored.pop(quarter.value, None)
                after = None
            else:
                after = to_json_native(details)
                stored[quarter.value] = after
            if before != after:
                # JSON columns only detect reassignment
                entry.quarter_details = stored
                changed = True

        if comment is not _UNSET and comment != entry.comment:
            entry.comment = comment
            changed = True

        cumulative = compute_cumulative_balance(
            section, {q: getattr(entry, q.field_name) for q in Quarter.ordered()}
        )
        if (entry.cumulative_balance is None) != (cumulative is None) or (
            cumulative is not None and Decimal(entry.cumulative_balance) != cumulative
        ):
            entry.cumulative_balance = cumulative
            changed = True

        if changed:
            if not created:
                entry.version = entry.version + 1
            entry.updated_by_id = actor_id
            self.session.flush()

        return changed
