"""
Catalog configuration schema.

Defines the human-authored, reviewable source artifact for the activity
catalog, event mappings and statement templates.  YAML files are parsed
into these types by the loader, validated by the validator and compiled
into an ActivityCatalog by the compiler.

Key distinction:
  CatalogConfigSet = source artifact (human-authored, one entry per
                     project activity, nested statement lines)
  ActivityCatalog  = runtime artifact (concrete codes per facility type,
                     explicit adjacency, flat line templates)
"""

from __future__ import annotations

from dataclasses import dataclass, field

APPLICABLE_BOTH = "both"


@dataclass(frozen=True)
class ActivitySource:
    """
    One activity as declared for a project.

    ``key`` is the facility-independent part of the code, e.g. ``A_1``,
    ``B_B-04_1`` or ``D_VAT_FUEL``.  ``payable`` is the key of the
    Section E line that receives the unpaid part of an expense.
    """

    key: str
    name: str
    section: str
    display_order: int
    subsection: str | None = None
    applicable_to: str = APPLICABLE_BOTH
    applicable_quarters: tuple[str, ...] = ("Q1", "Q2", "Q3", "Q4")
    is_total_row: bool = False
    is_computed: bool = False
    computation_formula: str | None = None
    vat_category: str | None = None
    payable: str | None = None
    role: str | None = None
    reported: bool = True


@dataclass(frozen=True)
class ProjectSource:
    project_type: str
    name: str
    aliases: tuple[str, ...] = ()
    activities: tuple[ActivitySource, ...] = ()


@dataclass(frozen=True)
class EventSource:
    code: str
    name: str
    description: str = ""
    note_number: int | None = None
    event_type: str = "REVENUE"
    balance_type: str = "BOTH"


@dataclass(frozen=True)
class MappingSource:
    """
    Fan-out rule: every selected activity maps to ``event``.

    Activities are selected by explicit key, subsection, section or role.
    Selectors other than explicit keys skip total rows and unreported
    activities.  ``projects`` restricts the rule; empty means all.
    """

    event: str
    activities: tuple[str, ...] = ()
    subsections: tuple[str, ...] = ()
    sections: tuple[str, ...] = ()
    roles: tuple[str, ...] = ()
    projects: tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkingCapitalSource:
    events: tuple[str, ...]
    sign: int = 1


@dataclass(frozen=True)
class LineSource:
    """A statement line; ``children`` nest lines that sum into it."""

    code: str
    description: str
    level: int | None = None
    event_codes: tuple[str, ...] = ()
    formula: str | None = None
    is_total: bool = False
    is_subtotal: bool = False
    is_section: bool = False
    cross_ref: str | None = None
    working_capital: WorkingCapitalSource | None = None
    basis: str | None = None
    outflow: bool = False
    children: tuple[LineSource, ...] = ()


@dataclass(frozen=True)
class StatementSource:
    code: str
    name: str
    lines: tuple[LineSource, ...] = ()


@dataclass(frozen=True)
class CatalogConfigSet:
    """Complete source artifact of one configuration set."""

    name: str
    version: str
    facility_types: dict[str, str] = field(default_factory=dict)
    projects: tuple[ProjectSource, ...] = ()
    events: tuple[EventSource, ...] = ()
    mappings: tuple[MappingSource, ...] = ()
    statements: tuple[StatementSource, ...] = ()
