"""
Module: healthfin_kernel.models.execution
Responsibility: ORM persistence for the execution ledger: one row per
    (facility, reporting period, activity) holding the four quarter
    amounts, the stock balance and per-quarter payment/VAT details, plus
    one ExecutionQuarter row per (facility, period, project, quarter)
    used as the compare-and-swap token.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Unique (facility_id, reporting_period_id, activity_code).
    - Unique (facility_id, reporting_period_id, project_type, quarter).
    - q1..q4 are NULL until the quarter is entered; an explicit zero is a
      value.  Stock sections (D, E) store the end-of-quarter balance in
      the quarter column; flow sections store the quarter's movement.
    - ExecutionQuarter.version increases by exactly one per accepted write.

Failure modes:
    - IntegrityError on duplicate natural keys.
    - OptimisticLockError (raised by the ledger service) when the
      quarter version moved under a writer.

Audit relevance:
    Rows are superseded in place as quarters roll forward; the per-quarter
    checksum and version let a reviewer detect drift between the ledger
    and an approved report snapshot.
"""

from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from healthfin_kernel.db.base import TrackedBase, UUIDString


class QuarterStatus(str, Enum):
    SUBMITTED = "submitted"
    RECALCULATED = "recalculated"
    PENDING_RECALCULATION = "pending_recalculation"


class ExecutionEntry(TrackedBase):
    """
    Quarterly execution amounts for one activity.

    Contract:
        Mutated only through ExecutionLedgerService.  ``quarter_details``
        is a JSON column; writers must assign a new dict rather than
        mutating the loaded one in place.

    Guarantees:
        - ``cumulative_balance`` is recomputed on every write: the sum of
          quarters for flow sections, the latest entered quarter for stock
          sections.
    """

    __tablename__ = "execution_entries"

    __table_args__ = (
        UniqueConstraint(
            "facility_id",
            "reporting_period_id",
            "activity_code",
            name="uq_execution_entry_activity",
        ),
        Index("idx_execution_entry_scope", "reporting_period_id", "project_type"),
        Index("idx_execution_entry_facility", "facility_id", "reporting_period_id"),
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

    facility_type: Mapped[str] = mapped_column(String(20), nullable=False)

    activity_code: Mapped[str] = mapped_column(String(120), nullable=False)

    q1: Mapped[Decimal | None] = mapped_column(nullable=True)
    q2: Mapped[Decimal | None] = mapped_column(nullable=True)
    q3: Mapped[Decimal | None] = mapped_column(nullable=True)
    q4: Mapped[Decimal | None] = mapped_column(nullable=True)

    cumulative_balance: Mapped[Decimal | None] = mapped_column(nullable=True)

    # {"Q2": {"payment_status": "partial", "amount_paid": "300", ...}}
    quarter_details: Mapped[dict[str, Any]] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )

    comment: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def __repr__(self) -> str:
        return f"<ExecutionEntry {self.activity_code} facility={self.facility_id}>"


class ExecutionQuarter(TrackedBase):
    """
    Compare-and-swap token and "has data" marker for one quarter.

    Guarantees:
        - ``version`` is bumped with a conditional UPDATE; a writer holding
          a stale version is rejected, never merged.
        - ``checksum`` is the hash of the quarter's closing values, so an
          idempotent recalculation can be detected without a version bump.
    """

    __tablename__ = "execution_quarters"

    __table_args__ = (
        UniqueConstraint(
            "facility_id",
            "reporting_period_id",
            "project_type",
            "quarter",
            name="uq_execution_quarter",
        ),
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

    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    status: Mapped[QuarterStatus] = mapped_column(
        String(30),
        default=QuarterStatus.SUBMITTED,
        nullable=False,
    )

    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ExecutionQuarter {self.project_type} {self.quarter} "
            f"v{self.version} ({self.status})>"
        )
