"""
Module: healthfin_kernel.models.financial_report
Responsibility: ORM persistence for financial reports and their immutable,
    checksummed snapshot versions.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One FinancialReport per (statement_code, reporting_period, project,
      facility).  facility_id is NULL for project-wide reports.
    - ReportVersion rows are append-only.  version_number increases by one
      per snapshot.
    - ReportVersion.checksum == SHA-256 of the canonical snapshot JSON.

Failure modes:
    - SnapshotCorruptedError (raised by SnapshotService) when the stored
      checksum does not match the recomputed one.

Audit relevance:
    Approved reports are served from their snapshot, so the numbers a
    reviewer signed off on never drift when the ledger changes later.
    source_data_version records which ledger state the snapshot came from.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from healthfin_kernel.db.base import TrackedBase, UUIDString


class ApprovalStatus(str, Enum):
    """Approval state of a report.  The workflow itself is external."""

    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


SNAPSHOT_STATUSES = frozenset({ApprovalStatus.PENDING_APPROVAL, ApprovalStatus.APPROVED})


class FinancialReport(TrackedBase):
    """Report header for one statement of one facility (or project) and year."""

    __tablename__ = "financial_reports"

    __table_args__ = (
        UniqueConstraint(
            "statement_code",
            "reporting_period_id",
            "project_type",
            "facility_id",
            name="uq_financial_report_key",
        ),
    )

    statement_code: Mapped[str] = mapped_column(String(40), nullable=False)

    reporting_period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reporting_periods.id"),
        nullable=False,
    )

    project_type: Mapped[str] = mapped_column(String(20), nullable=False)

    facility_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("facilities.id"),
        nullable=True,
    )

    approval_status: Mapped[ApprovalStatus] = mapped_column(
        String(30),
        default=ApprovalStatus.DRAFT,
        nullable=False,
    )

    current_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    versions: Mapped[list["ReportVersion"]] = relationship(
        back_populates="report",
        order_by="ReportVersion.version_number",
    )

    @property
    def serves_snapshot(self) -> bool:
        return ApprovalStatus(self.approval_status) in SNAPSHOT_STATUSES

    def __repr__(self) -> str:
        return (
            f"<FinancialReport {self.statement_code} "
            f"v{self.current_version} ({self.approval_status})>"
        )


class ReportVersion(TrackedBase):
    """Immutable checksummed snapshot of a rendered statement."""

    __tablename__ = "report_versions"

    __table_args__ = (
        UniqueConstraint("report_id", "version_number", name="uq_report_version"),
        Index("idx_report_version_report", "report_id"),
    )

    report_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("financial_reports.id"),
        nullable=False,
    )

    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # {"lines": [...], "totals": {...}, "metadata": {...}}
    snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    checksum: Mapped[str] = mapped_column(String(64), nullable=False)

    source_data_version: Mapped[str] = mapped_column(String(64), nullable=False)

    captured_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    report: Mapped[FinancialReport] = relationship(back_populates="versions")

    def __repr__(self) -> str:
        return f"<ReportVersion report={self.report_id} v{self.version_number}>"
