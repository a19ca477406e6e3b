"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable structures that cross the boundary between persistence and
    the pure engines: quarter/section vocabularies, the execution entry
    view used by aggregation, and the cascade response returned to
    callers of execution updates.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked only from
    the service and selector layers.

Invariants enforced:
    - Engines accept and return DTOs, never ORM entities.
    - Monetary fields are Decimal (never float).
    - quarter_details is deep-frozen so engines cannot mutate it.

Failure modes:
    - ValueError from Quarter.from_value on an unknown quarter label.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from healthfin_kernel.models.execution import ExecutionEntry as ExecutionEntryModel
    from healthfin_kernel.models.reporting_period import (
        ReportingPeriod as ReportingPeriodModel,
    )


def _deep_freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _deep_freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_deep_freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Convert a deep-frozen structure back into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


class Quarter(str, Enum):
    """Fiscal quarter within a reporting period."""

    Q1 = "Q1"
    Q2 = "Q2"
    Q3 = "Q3"
    Q4 = "Q4"

    @property
    def number(self) -> int:
        return int(self.value[1])

    @property
    def field_name(self) -> str:
        """Column name on ExecutionEntry (``q1``..``q4``)."""
        return self.value.lower()

    @classmethod
    def from_value(cls, value: str | int | Quarter) -> Quarter:
        if isinstance(value, Quarter):
            return value
        if isinstance(value, int):
            if 1 <= value <= 4:
                return cls(f"Q{value}")
            raise ValueError(f"Invalid quarter number: {value}")
        normalized = str(value).strip().upper()
        if normalized in ("1", "2", "3", "4"):
            normalized = f"Q{normalized}"
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Invalid quarter: {value!r}") from None

    @classmethod
    def ordered(cls) -> tuple[Quarter, ...]:
        return (cls.Q1, cls.Q2, cls.Q3, cls.Q4)


class Section(str, Enum):
    """
    Single-letter accounting role of an activity.

    A=Revenue, B=Expense, D=Financial Assets, E=Financial Liabilities,
    F=Net Financial Assets (computed), G=Closing Balance, X=Misc adjustments.
    """

    A = "A"
    B = "B"
    D = "D"
    E = "E"
    F = "F"
    G = "G"
    X = "X"

    @property
    def is_stock(self) -> bool:
        return self in STOCK_SECTIONS

    @property
    def is_flow(self) -> bool:
        return self in FLOW_SECTIONS


STOCK_SECTIONS = frozenset({Section.D, Section.E})
FLOW_SECTIONS = frozenset({Section.A, Section.B, Section.G, Section.X})


class PaymentStatus(str, Enum):
    """Payment state of an expense in a quarter."""

    PAID = "paid"
    UNPAID = "unpaid"
    PARTIAL = "partial"


class CascadeStatus(str, Enum):
    NONE = "none"
    PARTIAL_COMPLETE = "partial_complete"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ReportingPeriodInfo:
    """Reporting period (fiscal year) as seen by the services."""

    id: str
    year: int
    start_date: date
    end_date: date
    is_locked: bool

    @classmethod
    def from_model(cls, model: ReportingPeriodModel) -> ReportingPeriodInfo:
        return cls(
            id=str(model.id),
            year=model.year,
            start_date=model.start_date,
            end_date=model.end_date,
            is_locked=model.is_locked,
        )


@dataclass(frozen=True)
class ExecutionEntryData:
    """
    Read-only view of one execution entry row.

    q1..q4 are ``None`` when the quarter was never entered, which lets the
    stock rule distinguish "no value" from an explicit zero.
    """

    activity_code: str
    facility_id: str
    reporting_period_id: str
    project_type: str
    q1: Decimal | None = None
    q2: Decimal | None = None
    q3: Decimal | None = None
    q4: Decimal | None = None
    cumulative_balance: Decimal | None = None
    quarter_details: Mapping[str, Any] = field(default_factory=dict)
    comment: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.quarter_details, MappingProxyType):
            object.__setattr__(
                self, "quarter_details", _deep_freeze(dict(self.quarter_details))
            )

    def quarter_value(self, quarter: Quarter) -> Decimal | None:
        return getattr(self, quarter.field_name)

    def details_for(self, quarter: Quarter) -> Mapping[str, Any]:
        return self.quarter_details.get(quarter.value, MappingProxyType({}))

    @classmethod
    def from_model(cls, model: ExecutionEntryModel) -> ExecutionEntryData:
        return cls(
            activity_code=model.activity_code,
            facility_id=str(model.facility_id),
            reporting_period_id=str(model.reporting_period_id),
            project_type=model.project_type,
            q1=model.q1,
            q2=model.q2,
            q3=model.q3,
            q4=model.q4,
            cumulative_balance=model.cumulative_balance,
            quarter_details=model.quarter_details or {},
            comment=model.comment,
        )


@dataclass(frozen=True)
class CascadeResult:
    """
    Outcome of an execution update and its downstream recalculation.

    ``status`` is ``none`` when nothing downstream has data,
    ``partial_complete`` when anything was queued, ``complete`` otherwise.
    """

    affected_quarters: tuple[Quarter, ...]
    immediately_recalculated: tuple[Quarter, ...]
    queued_for_recalculation: tuple[Quarter, ...]
    status: CascadeStatus

    @classmethod
    def build(
        cls,
        affected: tuple[Quarter, ...],
        immediate: tuple[Quarter, ...],
        queued: tuple[Quarter, ...],
    ) -> CascadeResult:
        if not affected:
            status = CascadeStatus.NONE
        elif queued:
            status = CascadeStatus.PARTIAL_COMPLETE
        else:
            status = CascadeStatus.COMPLETE
        return cls(
            affected_quarters=affected,
            immediately_recalculated=immediate,
            queued_for_recalculation=queued,
            status=status,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "affected_quarters": [q.value for q in self.affected_quarters],
            "immediately_recalculated": [q.value for q in self.immediately_recalculated],
            "queued_for_recalculation": [q.value for q in self.queued_for_recalculation],
            "status": self.status.value,
        }
