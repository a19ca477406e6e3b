"""
Catalog Compiler -- CatalogConfigSet -> ActivityCatalog.

Expands each project's activities into concrete codes per facility type,
compiles the mapping rules into an explicit bidirectional adjacency, and
flattens the nested statement lines into ordered line templates.  The
ActivityCatalog is the only object the engines and services accept.

Code scheme:
    ``{PROJECT}_EXEC_{FACILITY}_{KEY}``, e.g. ``HIV_EXEC_HOSPITAL_D_1`` or
    ``MAL_EXEC_HEALTH_CENTER_B_B-04_1``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from types import MappingProxyType

from healthfin_config.schema import (
    APPLICABLE_BOTH,
    ActivitySource,
    CatalogConfigSet,
    LineSource,
    MappingSource,
    ProjectSource,
    StatementSource,
)
from healthfin_kernel.domain.catalog import (
    ActivityCatalog,
    ActivityDef,
    EventDef,
    LineTemplate,
    StatementTemplate,
    WorkingCapitalRule,
)
from healthfin_kernel.domain.dtos import Quarter, Section


def activity_code(project_type: str, facility_code: str, key: str) -> str:
    return f"{project_type}_EXEC_{facility_code}_{key}"


def applies_to(activity: ActivitySource, facility_type: str) -> bool:
    return activity.applicable_to in (APPLICABLE_BOTH, facility_type)


def mapping_applies(mapping: MappingSource, project: ProjectSource) -> bool:
    return not mapping.projects or project.project_type in mapping.projects


def select_activities(mapping: MappingSource, project: ProjectSource) -> list[ActivitySource]:
    """
    Activities of ``project`` selected by a mapping rule.

    Explicit keys are returned as declared (the validator rejects bad
    ones); the broad selectors skip total rows and unreported activities.
    """
    if not mapping_applies(mapping, project):
        return []
    by_key = {a.key: a for a in project.activities}
    selected: dict[str, ActivitySource] = {}

    for key in mapping.activities:
        if key in by_key:
            selected[key] = by_key[key]

    for activity in project.activities:
        if activity.is_total_row or not activity.reported:
            continue
        if (
            (activity.subsection and activity.subsection in mapping.subsections)
            or activity.section in mapping.sections
            or (activity.role and activity.role in mapping.roles)
        ):
            selected[activity.key] = activity

    return list(selected.values())


def _compile_activities(config: CatalogConfigSet) -> list[ActivityDef]:
    activities: list[ActivityDef] = []
    for project in config.projects:
        for facility_type, facility_code in sorted(config.facility_types.items()):
            for source in project.activities:
                if not applies_to(source, facility_type):
                    continue
                activities.append(
                    ActivityDef(
                        code=activity_code(project.project_type, facility_code, source.key),
                        key=source.key,
                        name=source.name,
                        section=Section(source.section),
                        project_type=project.project_type,
                        facility_type=facility_type,
                        display_order=source.display_order,
                        subsection=source.subsection,
                        applicable_quarters=frozenset(
                            Quarter.from_value(q) for q in source.applicable_quarters
                        ),
                        is_computed=source.is_computed,
                        computation_formula=source.computation_formula,
                        is_total_row=source.is_total_row,
                        vat_category=source.vat_category,
                        payable_code=(
                            activity_code(project.project_type, facility_code, source.payable)
                            if source.payable
                            else None
                        ),
                        role=source.role,
                        reported=source.reported,
                    )
                )
    return activities


def _compile_adjacency(
    config: CatalogConfigSet,
) -> tuple[dict[str, frozenset[str]], dict[str, frozenset[str]]]:
    forward: dict[str, set[str]] = {}
    for mapping in config.mappings:
        for project in config.projects:
            for source in select_activities(mapping, project):
                for facility_type, facility_code in config.facility_types.items():
                    if not applies_to(source, facility_type):
                        continue
                    code = activity_code(project.project_type, facility_code, source.key)
                    forward.setdefault(code, set()).add(mapping.event)

    inverse: dict[str, set[str]] = {}
    for code, events in forward.items():
        for event in events:
            inverse.setdefault(event, set()).add(code)

    return (
        {code: frozenset(events) for code, events in sorted(forward.items())},
        {event: frozenset(codes) for event, codes in sorted(inverse.items())},
    )


def flatten_lines(statement: StatementSource) -> list[LineTemplate]:
    """
    Pre-order flattening of nested lines.

    Display order follows declaration order.  Level defaults to nesting
    depth + 1, and ``basis`` is inherited from the parent line.
    """
    flat: list[LineTemplate] = []

    def _walk(line: LineSource, depth: int, parent: str | None, basis: str) -> None:
        own_basis = line.basis or basis
        flat.append(
            LineTemplate(
                line_code=line.code,
                description=line.description,
                level=line.level if line.level is not None else depth + 1,
                display_order=(len(flat) + 1) * 10,
                event_codes=line.event_codes,
                formula=line.formula,
                is_total=line.is_total,
                is_subtotal=line.is_subtotal,
                is_section=line.is_section,
                children=tuple(child.code for child in line.children),
                parent=parent,
                cross_ref=line.cross_ref,
                working_capital=(
                    WorkingCapitalRule(line.working_capital.events, line.working_capital.sign)
                    if line.working_capital
                    else None
                ),
                basis=own_basis,
                outflow=line.outflow,
            )
        )
        for child in line.children:
            _walk(child, depth + 1, line.code, own_basis)

    for line in statement.lines:
        _walk(line, 0, None, "current")
    return flat


def _compute_fingerprint(config: CatalogConfigSet) -> str:
    """Deterministic SHA-256 over the full source definitions."""
    canonical = json.dumps(asdict(config), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def compile_catalog(config: CatalogConfigSet) -> ActivityCatalog:
    """
    Compile a validated configuration set.

    Preconditions:
        - ``config`` passed ``validate_configuration``.
    """
    activity_events, event_activities = _compile_adjacency(config)

    aliases: dict[str, str] = {}
    for project in config.projects:
        for alias in project.aliases:
            aliases[alias] = project.project_type

    return ActivityCatalog(
        name=config.name,
        version=config.version,
        activities=tuple(_compile_activities(config)),
        events=MappingProxyType(
            {
                e.code: EventDef(
                    code=e.code,
                    name=e.name,
                    description=e.description,
                    note_number=e.note_number,
                    event_type=e.event_type,
                    balance_type=e.balance_type,
                )
                for e in config.events
            }
        ),
        activity_events=MappingProxyType(activity_events),
        event_activities=MappingProxyType(event_activities),
        statements=MappingProxyType(
            {
                s.code: StatementTemplate(
                    statement_code=s.code,
                    name=s.name,
                    lines=tuple(flatten_lines(s)),
                )
                for s in config.statements
            }
        ),
        fingerprint=_compute_fingerprint(config),
        project_aliases=MappingProxyType(aliases),
    )


def restrict_catalog(
    catalog: ActivityCatalog,
    project_type: str | None = None,
    facility_type: str | None = None,
) -> ActivityCatalog:
    """Narrow a compiled catalog to one project and/or facility type."""
    if project_type is None and facility_type is None:
        return catalog

    project = catalog.resolve_project(project_type) if project_type else None
    facility = facility_type.lower() if facility_type else None
    activities = tuple(
        a for a in catalog.activities
        if (project is None or a.project_type == project)
        and (facility is None or a.facility_type == facility)
    )
    kept = {a.code for a in activities}
    activity_events = {c: e for c, e in catalog.activity_events.items() if c in kept}
    event_activities: dict[str, frozenset[str]] = {}
    for event, codes in catalog.event_activities.items():
        narrowed = frozenset(c for c in codes if c in kept)
        if narrowed:
            event_activities[event] = narrowed

    return ActivityCatalog(
        name=catalog.name,
        version=catalog.version,
        activities=activities,
        events=catalog.events,
        activity_events=MappingProxyType(activity_events),
        event_activities=MappingProxyType(event_activities),
        statements=catalog.statements,
        fingerprint=catalog.fingerprint,
        project_aliases=catalog.project_aliases,
    )
