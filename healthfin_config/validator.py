"""
Configuration Validator (``healthfin_config.validator``).

Responsibility
--------------
Validates a ``CatalogConfigSet`` at load time, before compilation, so a
catalog with dangling references never reaches the engines.

Invariants enforced
-------------------
* Activity keys are unique per project; payable keys resolve to a
  Section E activity; roles are known.
* Every mapped activity exists in the projects the rule applies to.
* Every mapped event is declared.
* Total rows and unreported activities are never mapped explicitly.
* Every statement event reference is declared.
* Every formula passes the restricted grammar (``healthfin_engines.formula``).
* Line codes are unique within a statement.
* Every ``{line_X}`` placeholder references a line of the same statement.
* Every cross-statement reference resolves.

Failure modes
-------------
* Errors (``ConfigValidationResult.errors``)  -> the catalog MUST NOT be
  compiled; ``get_active_catalog`` raises CatalogIntegrityError listing
  every error.
* Warnings  -> compiled, but should be reviewed (e.g. a mapping rule
  that selects nothing for a project).
"""

from __future__ import annotations

from dataclasses import dataclass, field

from healthfin_config.compiler import mapping_applies, select_activities
from healthfin_config.schema import (
    APPLICABLE_BOTH,
    CatalogConfigSet,
    LineSource,
    StatementSource,
)
from healthfin_engines.formula import parse_formula, validate_formula
from healthfin_kernel.domain.catalog import ActivityRole

VALID_BASES = frozenset({"current", "previous"})


@dataclass
class ConfigValidationResult:
    """
    Result of configuration validation.

    Contract
    --------
    * ``is_valid`` returns ``True`` only when ``errors`` is empty.
    * Warnings do not block compilation but should be reviewed.
    """

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def add_error(self, msg: str) -> None:
        self.errors.append(msg)

    def add_warning(self, msg: str) -> None:
        self.warnings.append(msg)


def validate_configuration(config: CatalogConfigSet) -> ConfigValidationResult:
    """
    Validate a configuration set.

    Postconditions:
        - A configuration with errors MUST NOT be compiled.
    """
    result = ConfigValidationResult()

    _validate_facility_types(config, result)
    _validate_activities(config, result)
    _validate_event_uniqueness(config, result)
    _validate_mappings(config, result)
    _validate_statements(config, result)

    return result


def _validate_facility_types(config: CatalogConfigSet, result: ConfigValidationResult) -> None:
    if not config.facility_types:
        result.add_error("No facility types declared")


def _validate_activities(config: CatalogConfigSet, result: ConfigValidationResult) -> None:
    """Key uniqueness, applicability, payable links and roles."""
    seen_projects: set[str] = set()
    aliases: dict[str, str] = {}
    for project in config.projects:
        if project.project_type in seen_projects:
            result.add_error(f"Duplicate project: {project.project_type}")
        seen_projects.add(project.project_type)
        for alias in project.aliases:
            if alias in aliases and aliases[alias] != project.project_type:
                result.add_error(
                    f"Alias {alias} claimed by {aliases[alias]} and {project.project_type}"
                )
            aliases[alias] = project.project_type

        by_key: dict[str, int] = {}
        for activity in project.activities:
            by_key[activity.key] = by_key.get(activity.key, 0) + 1
        for key, count in by_key.items():
            if count > 1:
                result.add_error(f"Project {project.project_type}: duplicate activity key {key}")

        keys = {a.key: a for a in project.activities}
        for activity in project.activities:
            where = f"Project {project.project_type} activity {activity.key}"
            if (
                activity.applicable_to != APPLICABLE_BOTH
                and activity.applicable_to not in config.facility_types
            ):
                result.add_error(f"{where}: unknown facility type {activity.applicable_to!r}")
            if activity.role is not None and activity.role not in ActivityRole.ALL:
                result.add_error(f"{where}: unknown role {activity.role!r}")
            if activity.payable is not None:
                target = keys.get(activity.payable)
                if target is None:
                    result.add_error(f"{where}: payable {activity.payable} does not exist")
                elif target.section != "E" or target.is_total_row:
                    result.add_error(f"{where}: payable {activity.payable} is not a Section E line")
            if activity.role == ActivityRole.VAT_RECEIVABLE and not activity.vat_category:
                result.add_error(f"{where}: VAT receivable without vat_category")


def _validate_event_uniqueness(config: CatalogConfigSet, result: ConfigValidationResult) -> None:
    seen: set[str] = set()
    for event in config.events:
        if event.code in seen:
            result.add_error(f"Duplicate event: {event.code}")
        seen.add(event.code)


def _validate_mappings(config: CatalogConfigSet, result: ConfigValidationResult) -> None:
    declared = {e.code for e in config.events}
    project_types = {p.project_type for p in config.projects}

    for mapping in config.mappings:
        where = f"Mapping to {mapping.event}"
        if mapping.event not in declared:
            result.add_error(f"{where}: event is not declared")
        for project_type in mapping.projects:
            if project_type not in project_types:
                result.add_error(f"{where}: unknown project {project_type}")
        for role in mapping.roles:
            if role not in ActivityRole.ALL:
                result.add_error(f"{where}: unknown role {role!r}")

        for project in config.projects:
            if not mapping_applies(mapping, project):
                continue
            keys = {a.key: a for a in project.activities}
            for key in mapping.activities:
                activity = keys.get(key)
                if activity is None:
                    result.add_error(
                        f"{where}: activity {key} does not exist in {project.project_type}"
                    )
                elif activity.is_total_row:
                    result.add_error(
                        f"{where}: total row {project.project_type} {key} cannot be mapped"
                    )
                elif not activity.reported:
                    result.add_error(
                        f"{where}: {project.project_type} {key} is marked reported: false"
                    )
            if not select_activities(mapping, project):
                result.add_warning(f"{where}: selects no activity in {project.project_type}")


def _walk(lines: tuple[LineSource, ...]) -> list[LineSource]:
    flat: list[LineSource] = []
    for line in lines:
        flat.append(line)
        flat.extend(_walk(line.children))
    return flat


def _validate_statements(config: CatalogConfigSet, result: ConfigValidationResult) -> None:
    declared = {e.code for e in config.events}
    lines_by_statement: dict[str, set[str]] = {}
    seen_statements: set[str] = set()

    for statement in config.statements:
        if statement.code in seen_statements:
            result.add_error(f"Duplicate statement: {statement.code}")
        seen_statements.add(statement.code)
        lines_by_statement[statement.code] = {line.code for line in _walk(statement.lines)}

    for statement in config.statements:
        _validate_statement(statement, declared, lines_by_statement, result)


def _validate_statement(
    statement: StatementSource,
    declared_events: set[str],
    lines_by_statement: dict[str, set[str]],
    result: ConfigValidationResult,
) -> None:
    lines = _walk(statement.lines)
    own_codes = lines_by_statement[statement.code]

    counts: dict[str, int] = {}
    for line in lines:
        counts[line.code] = counts.get(line.code, 0) + 1
    for code, count in counts.items():
        if count > 1:
            result.add_error(f"Statement {statement.code}: duplicate line code {code}")

    for line in lines:
        where = f"Statement {statement.code} line {line.code}"

        for event in line.event_codes:
            if event not in declared_events:
                result.add_error(f"{where}: undeclared event {event}")

        if line.working_capital is not None:
            for event in line.working_capital.events:
                if event not in declared_events:
                    result.add_error(f"{where}: undeclared working capital event {event}")
            if line.working_capital.sign not in (1, -1):
                result.add_error(f"{where}: working capital sign must be 1 or -1")

        if line.basis is not None and line.basis not in VALID_BASES:
            result.add_error(f"{where}: invalid basis {line.basis!r}")

        if line.formula is not None:
            for err in validate_formula(line.formula):
                result.add_error(f"{where}: formula: {err.message} [{line.formula}]")
            parsed = parse_formula(line.formula)
            for ref in parsed.line_refs:
                if ref not in own_codes:
                    result.add_error(f"{where}: formula references unknown line {ref}")
                elif ref == line.code:
                    result.add_error(f"{where}: formula references itself")
            for ref in parsed.event_refs:
                if ref not in declared_events:
                    result.add_error(f"{where}: formula references undeclared event {ref}")

        if line.cross_ref is not None:
            target_statement, _, target_line = line.cross_ref.partition(".")
            if not target_line:
                result.add_error(f"{where}: cross_ref must be STATEMENT.LINE")
            elif target_statement not in lines_by_statement:
                result.add_error(f"{where}: cross_ref to unknown statement {target_statement}")
            elif target_line not in lines_by_statement[target_statement]:
                result.add_error(f"{where}: cross_ref to unknown line {line.cross_ref}")
