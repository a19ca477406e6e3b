"""
Catalog -- Compiled activity catalog and statement template types.

Responsibility:
    Frozen runtime types for the activity catalog (concrete activity
    definitions per project and facility type), the activity/event
    adjacency structure, and the statement line templates.  Produced by
    ``healthfin_config`` and consumed by the pure engines.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Engines import these types
    instead of reaching into the configuration layer.

Invariants enforced:
    - Adjacency is explicit and bidirectional: ``activity_events`` and
      ``event_activities`` are built once and never resolved lazily.
    - Activity codes are unique within a catalog.
    - Line codes are unique within a statement.

Failure modes:
    - KeyError from ``get_activity`` / ``get_statement`` on unknown codes
      (services translate to typed errors).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from healthfin_kernel.domain.dtos import Quarter, Section

# Section letter: first single-letter segment after EXEC matching [A-GX]
_SECTION_PATTERN = re.compile(r"_EXEC_(?:[A-Z0-9\-]+_)*?([A-GX])(?:_|$)")


def extract_section(activity_code: str) -> Section | None:
    """
    Extract the section letter from an activity code.

    ``HIV_EXEC_HEALTH_CENTER_D_1`` -> D, ``HIV_EXEC_HOSPITAL_B_B-04_1`` -> B.
    Returns None when no section segment is present.
    """
    match = _SECTION_PATTERN.search(activity_code)
    if match is None:
        return None
    try:
        return Section(match.group(1))
    except ValueError:
        # C is a display-only section with no stored activities
        return None


class ActivityRole:
    """Role tags consumed by the quarter close computation."""

    CASH = "cash"
    VAT_RECEIVABLE = "vat_receivable"
    OTHER_RECEIVABLE = "other_receivable"
    PAYABLE = "payable"
    ACCUMULATED_SURPLUS = "accumulated_surplus"
    PRIOR_YEAR_ADJUSTMENT_CASH = "prior_year_adjustment_cash"
    PRIOR_YEAR_ADJUSTMENT_PAYABLE = "prior_year_adjustment_payable"
    PRIOR_YEAR_ADJUSTMENT_RECEIVABLE = "prior_year_adjustment_receivable"
    SURPLUS_PERIOD = "surplus_period"
    MISC_OTHER_RECEIVABLE = "misc_other_receivable"

    ALL: frozenset[str] = frozenset({
        CASH,
        VAT_RECEIVABLE,
        OTHER_RECEIVABLE,
        PAYABLE,
        ACCUMULATED_SURPLUS,
        PRIOR_YEAR_ADJUSTMENT_CASH,
        PRIOR_YEAR_ADJUSTMENT_PAYABLE,
        PRIOR_YEAR_ADJUSTMENT_RECEIVABLE,
        SURPLUS_PERIOD,
        MISC_OTHER_RECEIVABLE,
    })


@dataclass(frozen=True)
class ActivityDef:
    """One concrete activity for a project and facility type."""

    code: str
    key: str
    name: str
    section: Section
    project_type: str
    facility_type: str
    display_order: int
    subsection: str | None = None
    applicable_quarters: frozenset[Quarter] = frozenset(Quarter.ordered())
    is_computed: bool = False
    computation_formula: str | None = None
    is_total_row: bool = False
    vat_category: str | None = None
    payable_code: str | None = None
    role: str | None = None
    reported: bool = True
    module_type: str = "execution"


@dataclass(frozen=True)
class EventDef:
    """A declared event code that statement lines aggregate over."""

    code: str
    name: str
    description: str = ""
    note_number: int | None = None
    event_type: str = "REVENUE"
    balance_type: str = "BOTH"


@dataclass(frozen=True)
class WorkingCapitalRule:
    """``sign * (current - previous)`` over the listed events."""

    events: tuple[str, ...]
    sign: int = 1


@dataclass(frozen=True)
class LineTemplate:
    """
    One line of a statement template.

    Value precedence: formula, cross_ref, working_capital, event sum,
    children sum.
    """

    line_code: str
    description: str
    level: int
    display_order: int
    event_codes: tuple[str, ...] = ()
    formula: str | None = None
    is_total: bool = False
    is_subtotal: bool = False
    is_section: bool = False
    children: tuple[str, ...] = ()
    parent: str | None = None
    cross_ref: str | None = None
    working_capital: WorkingCapitalRule | None = None
    basis: str = "current"
    outflow: bool = False

    @property
    def is_computed(self) -> bool:
        return bool(self.formula or self.cross_ref or self.working_capital)


@dataclass(frozen=True)
class StatementTemplate:
    """Ordered line tree for one statement code."""

    statement_code: str
    name: str
    lines: tuple[LineTemplate, ...]

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "_by_code",
            MappingProxyType({line.line_code: line for line in self.lines}),
        )

    def get_line(self, line_code: str) -> LineTemplate:
        return self._by_code[line_code]  # type: ignore[attr-defined]

    def has_line(self, line_code: str) -> bool:
        return line_code in self._by_code  # type: ignore[attr-defined]

    def ordered_lines(self) -> list[LineTemplate]:
        return sorted(self.lines, key=lambda line: line.display_order)


@dataclass(frozen=True)
class ActivityCatalog:
    """
    Runtime catalog: activities, events, adjacency and templates.

    Contract:
        Built once per request by ``healthfin_config.get_active_catalog``.
        Never mutated.

    Guarantees:
        - ``activity_events[code]`` is the frozenset of event codes an
          activity fans out to (empty when unmapped).
        - ``event_activities[event]`` is the inverse relation (fan-in).
    """

    name: str
    version: str
    activities: tuple[ActivityDef, ...]
    events: Mapping[str, EventDef]
    activity_events: Mapping[str, frozenset[str]]
    event_activities: Mapping[str, frozenset[str]]
    statements: Mapping[str, StatementTemplate]
    fingerprint: str = ""
    project_aliases: Mapping[str, str] = field(default_factory=dict)
    _by_code: Mapping[str, ActivityDef] = field(
        default_factory=dict, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "_by_code",
            MappingProxyType({a.code: a for a in self.activities}),
        )

    def resolve_project(self, project_type: str) -> str:
        """Canonical project code for a code or alias (``MALARIA`` -> ``MAL``)."""
        normalized = project_type.strip().upper()
        return self.project_aliases.get(normalized, normalized)

    @property
    def project_types(self) -> tuple[str, ...]:
        return tuple(sorted({a.project_type for a in self.activities}))

    def get_activity(self, code: str) -> ActivityDef:
        return self._by_code[code]

    def has_activity(self, code: str) -> bool:
        return code in self._by_code

    def events_for(self, activity_code: str) -> frozenset[str]:
        return self.activity_events.get(activity_code, frozenset())

    def get_statement(self, statement_code: str) -> StatementTemplate:
        return self.statements[statement_code]

    def list_activities(
        self,
        project_type: str,
        facility_type: str,
        module_type: str = "execution",
    ) -> list[ActivityDef]:
        """Activities for one project and facility type, in display order."""
        project = self.resolve_project(project_type)
        facility = facility_type.lower()
        return sorted(
            (
                a for a in self.activities
                if a.project_type == project
                and a.facility_type == facility
                and a.module_type == module_type
            ),
            key=lambda a: (a.section.value, a.subsection or "", a.display_order),
        )

