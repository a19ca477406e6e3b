"""
Module: healthfin_kernel.selectors.execution_selector
Responsibility: Read access to the execution ledger: entries as DTOs, which
    quarters hold data, quarter versions, the source data version used to
    detect outdated snapshots, facilities of a project, and budget buckets.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Returns ExecutionEntryData DTOs, never ORM rows.
    - ``source_data_version`` is a deterministic hash of (facility,
      activity, entry version) tuples.

Audit relevance:
    source_data_version lets a served snapshot report ``is_outdated``
    without recomputing the statement.
"""

from collections import defaultdict
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from healthfin_kernel.domain.dtos import ExecutionEntryData, Quarter
from healthfin_kernel.models.budget import BudgetAllocation
from healthfin_kernel.models.execution import ExecutionEntry, ExecutionQuarter
from healthfin_kernel.models.facility import Facility, FacilityType
from healthfin_kernel.selectors.base import BaseSelector
from healthfin_kernel.utils.hashing import hash_payload


def _as_uuid(value: str | UUID) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class ExecutionSelector(BaseSelector[ExecutionEntry]):
    """Read-only queries over the execution ledger."""

    def get_execution_entries(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str | None = None,
    ) -> list[ExecutionEntryData]:
        stmt = select(ExecutionEntry).where(
            ExecutionEntry.facility_id == _as_uuid(facility_id),
            ExecutionEntry.reporting_period_id == _as_uuid(reporting_period_id),
        )
        if project_type is not None:
            stmt = stmt.where(ExecutionEntry.project_type == project_type.upper())
        rows = self.session.scalars(stmt.order_by(ExecutionEntry.activity_code)).all()
        return [ExecutionEntryData.from_model(row) for row in rows]

    def get_project_entries(
        self,
        reporting_period_id: str | UUID,
        project_type: str,
    ) -> list[ExecutionEntryData]:
        """Entries of every facility of a project in a period."""
        rows = self.session.scalars(
            select(ExecutionEntry)
            .where(
                ExecutionEntry.reporting_period_id == _as_uuid(reporting_period_id),
                ExecutionEntry.project_type == project_type.upper(),
            )
            .order_by(ExecutionEntry.facility_id, ExecutionEntry.activity_code)
        ).all()
        return [ExecutionEntryData.from_model(row) for row in rows]

    def facilities_with_data(
        self,
        reporting_period_id: str | UUID,
        project_type: str,
    ) -> list[str]:
        ids = self.session.scalars(
            select(ExecutionEntry.facility_id)
            .where(
                ExecutionEntry.reporting_period_id == _as_uuid(reporting_period_id),
                ExecutionEntry.project_type == project_type.upper(),
            )
            .distinct()
        ).all()
        return sorted(str(i) for i in ids)

    def facility_type(self, facility_id: str | UUID) -> str | None:
        facility = self.session.get(Facility, _as_uuid(facility_id))
        if facility is None:
            return None
        return FacilityType(facility.facility_type).value

    def quarters_with_data(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
    ) -> list[Quarter]:
        labels = self.session.scalars(
            select(ExecutionQuarter.quarter).where(
                ExecutionQuarter.facility_id == _as_uuid(facility_id),
                ExecutionQuarter.reporting_period_id == _as_uuid(reporting_period_id),
                ExecutionQuarter.project_type == project_type.upper(),
            )
        ).all()
        return sorted((Quarter(label) for label in labels), key=lambda q: q.number)

    def quarter_version(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
    ) -> int | None:
        return self.session.scalars(
            select(ExecutionQuarter.version).where(
                ExecutionQuarter.facility_id == _as_uuid(facility_id),
                ExecutionQuarter.reporting_period_id == _as_uuid(reporting_period_id),
                ExecutionQuarter.project_type == project_type.upper(),
                ExecutionQuarter.quarter == quarter.value,
            )
        ).one_or_none()

    def quarter_id(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter,
    ) -> str | None:
        row_id = self.session.scalars(
            select(ExecutionQuarter.id).where(
                ExecutionQuarter.facility_id == _as_uuid(facility_id),
                ExecutionQuarter.reporting_period_id == _as_uuid(reporting_period_id),
                ExecutionQuarter.project_type == project_type.upper(),
                ExecutionQuarter.quarter == quarter.value,
            )
        ).one_or_none()
        return str(row_id) if row_id is not None else None

    def source_data_version(
        self,
        reporting_period_id: str | UUID,
        project_type: str,
        facility_id: str | UUID | None = None,
    ) -> str:
        stmt = select(
            ExecutionEntry.facility_id,
            ExecutionEntry.activity_code,
            ExecutionEntry.version,
        ).where(
            ExecutionEntry.reporting_period_id == _as_uuid(reporting_period_id),
            ExecutionEntry.project_type == project_type.upper(),
        )
        if facility_id is not None:
            stmt = stmt.where(ExecutionEntry.facility_id == _as_uuid(facility_id))
        rows = sorted(
            (str(fac), code, version) for fac, code, version in self.session.execute(stmt)
        )
        return hash_payload({"entries": [list(r) for r in rows]})

    def budget_buckets(
        self,
        reporting_period_id: str | UUID,
        project_type: str,
        facility_id: str | UUID | None = None,
    ) -> dict[str, Decimal]:
        stmt = select(BudgetAllocation.event_code, BudgetAllocation.amount).where(
            BudgetAllocation.reporting_period_id == _as_uuid(reporting_period_id),
            BudgetAllocation.project_type == project_type.upper(),
        )
        if facility_id is not None:
            stmt = stmt.where(BudgetAllocation.facility_id == _as_uuid(facility_id))
        buckets: dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
        for event_code, amount in self.session.execute(stmt):
            buckets[event_code] += amount
        return dict(buckets)
