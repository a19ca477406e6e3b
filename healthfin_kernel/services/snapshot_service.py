"""
SnapshotService -- checksummed report versions.

Responsibility:
    Finds or creates the FinancialReport header for a statement key,
    appends immutable ReportVersion snapshots with a SHA-256 checksum and
    the source data version they were computed from, and verifies a
    stored snapshot before it is served.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by StatementService (approval gate, submit_for_approval).

Invariants enforced:
    - ReportVersion rows are append-only; version_number increases by one.
    - checksum == hash_snapshot(snapshot); the snapshot is stored in its
      JSON-native form so that the checksum survives a database round
      trip.
    - A checksum mismatch raises SnapshotCorruptedError and is never
      repaired.

Failure modes:
    - SnapshotCorruptedError from ``verify``.
    - ReportNotFoundError from ``latest_version`` when no version exists.

Audit relevance:
    Every captured version and every failed verification is logged.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.exceptions import ReportNotFoundError, SnapshotCorruptedError
from healthfin_kernel.logging_config import get_logger
from healthfin_kernel.models.financial_report import (
    ApprovalStatus,
    FinancialReport,
    ReportVersion,
)
from healthfin_kernel.services.base import BaseService
from healthfin_kernel.utils.hashing import hash_snapshot, to_json_native

logger = get_logger("services.snapshot")


def _as_uuid(value: str | UUID | None) -> UUID | None:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))


class SnapshotService(BaseService[FinancialReport]):
    """
    Persistence of report headers and their snapshot versions.

    Contract:
        ``save_report_version`` returns the new ReportVersion; the caller
        decides the approval status transition.

    Non-goals:
        - Does NOT render statements.
        - Does NOT implement the approval workflow itself.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    def find_report(
        self,
        statement_code: str,
        reporting_period_id: str | UUID,
        project_type: str,
        facility_id: str | UUID | None = None,
    ) -> FinancialReport | None:
        stmt = select(FinancialReport).where(
            FinancialReport.statement_code == statement_code,
            FinancialReport.reporting_period_id == _as_uuid(reporting_period_id),
            FinancialReport.project_type == project_type.upper(),
        )
        if facility_id is None:
            stmt = stmt.where(FinancialReport.facility_id.is_(None))
        else:
            stmt = stmt.where(FinancialReport.facility_id == _as_uuid(facility_id))
        return self.session.scalars(stmt).one_or_none()

    def get_or_create_report(
        self,
        statement_code: str,
        reporting_period_id: str | UUID,
        project_type: str,
        actor_id: UUID,
        facility_id: str | UUID | None = None,
    ) -> FinancialReport:
        report = self.find_report(statement_code, reporting_period_id, project_type, facility_id)
        if report is not None:
            return report

        report = FinancialReport(
            statement_code=statement_code,
            reporting_period_id=_as_uuid(reporting_period_id),
            project_type=project_type.upper(),
            facility_id=_as_uuid(facility_id),
            approval_status=ApprovalStatus.DRAFT,
            current_version=0,
            created_by_id=actor_id,
        )
        self.session.add(report)
        self.session.flush()
        return report

    def save_report_version(
        self,
        report: FinancialReport,
        snapshot: dict[str, Any],
        source_data_version: str,
        actor_id: UUID,
    ) -> ReportVersion:
        """
        Append a checksummed snapshot to the report.

        Postconditions:
            - report.current_version == returned version_number.
        """
        stored = to_json_native(snapshot)
        checksum = hash_snapshot(stored)
        version_number = report.current_version + 1

        version = ReportVersion(
            report_id=report.id,
            version_number=version_number,
            snapshot=stored,
            checksum=checksum,
            source_data_version=source_data_version,
            captured_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self.session.add(version)
        report.current_version = version_number
        report.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "report_version_saved",
            extra={
                "statement_code": report.statement_code,
                "report_id": str(report.id),
                "version_number": version_number,
                "checksum": checksum,
                "source_data_version": source_data_version,
            },
        )
        return version

    def latest_version(self, report: FinancialReport) -> ReportVersion:
        version = self.session.scalars(
            select(ReportVersion)
            .where(ReportVersion.report_id == report.id)
            .order_by(ReportVersion.version_number.desc())
            .limit(1)
        ).one_or_none()
        if version is None:
            raise ReportNotFoundError(f"{report.statement_code} (no snapshot)")
        return version

    def verify(self, version: ReportVersion) -> dict[str, Any]:
        """
        Recompute the checksum of a stored snapshot.

        Returns:
            The snapshot dict when the checksum matches.

        Raises:
            SnapshotCorruptedError: On mismatch.
        """
        computed = hash_snapshot(version.snapshot)
        if computed != version.checksum:
            logger.error(
                "report_snapshot_corrupted",
                extra={
                    "report_id": str(version.report_id),
                    "version_number": version.version_number,
                    "stored_checksum": version.checksum,
                    "computed_checksum": computed,
                },
            )
            raise SnapshotCorruptedError(
                str(version.report_id),
                version.version_number,
                version.checksum,
                computed,
            )
        return version.snapshot

    def set_status(
        self,
        report: FinancialReport,
        status: ApprovalStatus,
        actor_id: UUID,
    ) -> FinancialReport:
        previous = report.approval_status
        report.approval_status = status
        report.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "report_status_changed",
            extra={
                "report_id": str(report.id),
                "from_status": ApprovalStatus(previous).value,
                "to_status": status.value,
            },
        )
        return report
