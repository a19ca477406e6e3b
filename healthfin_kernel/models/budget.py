"""
Module: healthfin_kernel.models.budget
Responsibility: Planned budget per event code, consumed by the Budget vs
    Actual statement.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Unique (facility_id, reporting_period_id, project_type, event_code).
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from healthfin_kernel.db.base import TrackedBase, UUIDString


class BudgetAllocation(TrackedBase):
    """Budgeted amount for one event code in a facility's fiscal year."""

    __tablename__ = "budget_allocations"

    __table_args__ = (
        UniqueConstraint(
            "facility_id",
            "reporting_period_id",
            "project_type",
            "event_code",
            name="uq_budget_allocation",
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

    event_code: Mapped[str] = mapped_column(String(80), nullable=False)

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<BudgetAllocation {self.event_code}: {self.amount}>"
