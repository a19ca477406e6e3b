"""
Module: healthfin_kernel.models.facility
Responsibility: Minimal facility reference row.  Execution entries and
    locks reference a facility; the facility type selects which activity
    list applies.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - facility_type is one of ``hospital`` / ``health_center``.

Non-goals:
    Districts, provinces and the facility hierarchy are maintained by an
    external collaborator.
"""

from enum import Enum

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from healthfin_kernel.db.base import TrackedBase


class FacilityType(str, Enum):
    HOSPITAL = "hospital"
    HEALTH_CENTER = "health_center"


class Facility(TrackedBase):
    """A health facility reporting execution data."""

    __tablename__ = "facilities"

    __table_args__ = (
        Index("idx_facility_type", "facility_type"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    facility_type: Mapped[FacilityType] = mapped_column(String(20), nullable=False)

    def __repr__(self) -> str:
        return f"<Facility {self.name} ({self.facility_type})>"
