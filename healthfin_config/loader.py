"""
Configuration Loader (``healthfin_config.loader``).

Responsibility
--------------
Loads the YAML files of a configuration set and parses them into typed
``healthfin_config.schema`` dataclass instances.  This is build/test
tooling: runtime callers obtain the compiled catalog through
``healthfin_config.get_active_catalog()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields have no silent defaults.
* Every parsed object is a frozen dataclass from ``schema.py``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Unparseable activity key without an explicit ``order``  -> ``ValueError``.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from healthfin_config.schema import (
    APPLICABLE_BOTH,
    ActivitySource,
    CatalogConfigSet,
    EventSource,
    LineSource,
    MappingSource,
    ProjectSource,
    StatementSource,
    WorkingCapitalSource,
)

ACTIVITIES_FILE = "activities.yaml"
EVENT_MAPPINGS_FILE = "event_mappings.yaml"
STATEMENTS_FILE = "statements.yaml"

# A_1, B_B-04_1, G_G-01_2, D_VAT_FUEL
_KEY_PATTERN = re.compile(r"^([A-GX])(?:_([A-Z]-\d{2}))?_([A-Z0-9_]+)$")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


def parse_activity(data: dict[str, Any]) -> ActivitySource:
    """Parse one activity; section, subsection and order come from the key."""
    key = str(data["key"])
    match = _KEY_PATTERN.match(key)
    if match is None:
        raise ValueError(f"Invalid activity key: {key!r}")
    section, subsection, tail = match.groups()

    if "order" in data:
        display_order = int(data["order"])
    elif tail.isdigit():
        display_order = int(tail)
    else:
        raise ValueError(f"Activity {key!r} needs an explicit order")

    return ActivitySource(
        key=key,
        name=data["name"],
        section=section,
        display_order=display_order,
        subsection=data.get("subsection", subsection),
        applicable_to=data.get("applicable_to", APPLICABLE_BOTH),
        applicable_quarters=_tuple(data.get("applicable_quarters")) or ("Q1", "Q2", "Q3", "Q4"),
        is_total_row=bool(data.get("total", False)),
        is_computed=bool(data.get("computed", data.get("total", False))),
        computation_formula=data.get("formula"),
        vat_category=data.get("vat_category"),
        payable=data.get("payable"),
        role=data.get("role"),
        reported=bool(data.get("reported", True)),
    )


def parse_project(data: dict[str, Any]) -> ProjectSource:
    return ProjectSource(
        project_type=str(data["project_type"]).upper(),
        name=data.get("name", data["project_type"]),
        aliases=tuple(str(a).upper() for a in _tuple(data.get("aliases"))),
        activities=tuple(parse_activity(a) for a in data.get("activities", [])),
    )


def parse_event(data: dict[str, Any]) -> EventSource:
    return EventSource(
        code=data["code"],
        name=data["name"],
        description=data.get("description", ""),
        note_number=data.get("note"),
        event_type=data.get("event_type", "REVENUE"),
        balance_type=data.get("balance_type", "BOTH"),
    )


def parse_mapping(data: dict[str, Any]) -> MappingSource:
    return MappingSource(
        event=data["event"],
        activities=_tuple(data.get("activities")),
        subsections=_tuple(data.get("subsections")),
        sections=_tuple(data.get("sections")),
        roles=_tuple(data.get("roles")),
        projects=tuple(str(p).upper() for p in _tuple(data.get("projects"))),
    )


def parse_line(data: dict[str, Any]) -> LineSource:
    working_capital = None
    if data.get("working_capital"):
        wc = data["working_capital"]
        working_capital = WorkingCapitalSource(
            events=_tuple(wc["events"]),
            sign=int(wc.get("sign", 1)),
        )
    return LineSource(
        code=data["code"],
        description=data["description"],
        level=data.get("level"),
        event_codes=_tuple(data.get("events")),
        formula=data.get("formula"),
        is_total=bool(data.get("total", False)),
        is_subtotal=bool(data.get("subtotal", False)),
        is_section=bool(data.get("section", False)),
        cross_ref=data.get("cross_ref"),
        working_capital=working_capital,
        basis=data.get("basis"),
        outflow=bool(data.get("outflow", False)),
        children=tuple(parse_line(c) for c in data.get("children", [])),
    )


def parse_statement(code: str, data: dict[str, Any]) -> StatementSource:
    return StatementSource(
        code=code,
        name=data["name"],
        lines=tuple(parse_line(line) for line in data.get("lines", [])),
    )


def load_config_set(set_dir: Path) -> CatalogConfigSet:
    """
    Load a configuration set directory.

    Raises:
        FileNotFoundError: a required file is missing.
    """
    activities = load_yaml_file(set_dir / ACTIVITIES_FILE)
    mappings = load_yaml_file(set_dir / EVENT_MAPPINGS_FILE)
    statements = load_yaml_file(set_dir / STATEMENTS_FILE)

    catalog = activities.get("catalog", {})
    return CatalogConfigSet(
        name=catalog.get("name", set_dir.name),
        version=str(catalog.get("version", "0")),
        facility_types={
            str(k).lower(): str(v).upper()
            for k, v in activities.get("facility_types", {}).items()
        },
        projects=tuple(parse_project(p) for p in activities.get("projects", [])),
        events=tuple(parse_event(e) for e in mappings.get("events", [])),
        mappings=tuple(parse_mapping(m) for m in mappings.get("mappings", [])),
        statements=tuple(
            parse_statement(code, body)
            for code, body in statements.get("statements", {}).items()
        ),
    )
