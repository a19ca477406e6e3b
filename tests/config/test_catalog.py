"""
Tests for catalog loading, validation and compilation.

Tests cover:
- The default configuration set: activities, adjacency, templates
- Narrowing to one project / facility type
- Load-time validation errors reported all at once
- Loader parse errors and missing sets
- HEALTHFIN_CATALOG_TRACE audit record

All tests are pure: NO database.
"""

import copy
from pathlib import Path

import pytest
import yaml

from healthfin_config import get_active_catalog
from healthfin_config.loader import load_config_set, parse_activity
from healthfin_config.validator import validate_configuration
from healthfin_kernel.domain.dtos import Section
from healthfin_kernel.exceptions import CatalogIntegrityError

HIV = "HIV_EXEC_HOSPITAL_"
DEFAULT_SET = Path(__file__).resolve().parents[2] / "healthfin_config" / "sets" / "default"


# =============================================================================
# Fixtures
# =============================================================================


MINI_ACTIVITIES = {
    "catalog": {"name": "mini", "version": "1"},
    "facility_types": {"hospital": "HOSPITAL"},
    "projects": [
        {
            "project_type": "HIV",
            "activities": [
                {"key": "A_1", "name": "Other Incomes"},
                {"key": "A_2", "name": "A. Receipts", "total": True},
                {"key": "B_B-01_1", "name": "Salaries", "payable": "E_1"},
                {"key": "D_1", "name": "Cash at bank", "role": "cash"},
                {"key": "E_1", "name": "Payable 1: Salaries", "role": "payable"},
            ],
        }
    ],
}

MINI_MAPPINGS = {
    "events": [
        {"code": "OTHER_REVENUE", "name": "Other revenue"},
        {"code": "COMPENSATION_EMPLOYEES", "name": "Compensation of employees"},
        {"code": "CASH_EQUIVALENTS_END", "name": "Cash at end of period"},
        {"code": "PAYABLES", "name": "Payables"},
    ],
    "mappings": [
        {"event": "OTHER_REVENUE", "activities": ["A_1"]},
        {"event": "COMPENSATION_EMPLOYEES", "subsections": ["B-01"]},
        {"event": "CASH_EQUIVALENTS_END", "roles": ["cash"]},
        {"event": "PAYABLES", "roles": ["payable"]},
    ],
}

MINI_STATEMENTS = {
    "statements": {
        "REV_EXP": {
            "name": "Revenue and Expenditure",
            "lines": [
                {"code": "REVENUE", "description": "Revenue", "events": ["OTHER_REVENUE"]},
                {
                    "code": "EXPENSES",
                    "description": "Expenses",
                    "events": ["COMPENSATION_EMPLOYEES"],
                },
                {
                    "code": "SURPLUS",
                    "description": "Surplus",
                    "total": True,
                    "formula": "{line_REVENUE} - {line_EXPENSES}",
                },
            ],
        }
    }
}


@pytest.fixture
def mini_set():
    """Deep copies of a minimal valid configuration set, ready to break."""
    return {
        "activities": copy.deepcopy(MINI_ACTIVITIES),
        "mappings": copy.deepcopy(MINI_MAPPINGS),
        "statements": copy.deepcopy(MINI_STATEMENTS),
    }


@pytest.fixture
def write_set(tmp_path):
    """Write a configuration set under ``tmp_path/<name>`` and return the sets dir."""

    def _write(config: dict, name: str = "mini") -> Path:
        set_dir = tmp_path / name
        set_dir.mkdir()
        for filename, key in (
            ("activities.yaml", "activities"),
            ("event_mappings.yaml", "mappings"),
            ("statements.yaml", "statements"),
        ):
            (set_dir / filename).write_text(yaml.safe_dump(config[key], sort_keys=False))
        return tmp_path

    return _write


def _errors(config_dir: Path) -> list[str]:
    with pytest.raises(CatalogIntegrityError) as exc_info:
        get_active_catalog(config_dir=config_dir, set_name="mini")
    return exc_info.value.errors


# =============================================================================
# Default set
# =============================================================================


class TestDefaultCatalog:
    """The shipped configuration set."""

    def test_default_set_validates(self):
        result = validate_configuration(load_config_set(DEFAULT_SET))

        assert result.is_valid, result.errors

    def test_projects_and_aliases(self, catalog):
        assert catalog.project_types == ("HIV", "MAL", "TB")
        assert catalog.resolve_project("malaria") == "MAL"
        assert catalog.resolve_project(" hiv ") == "HIV"

    def test_codes_per_facility_type(self, catalog):
        assert catalog.has_activity(HIV + "D_1")
        assert catalog.has_activity("HIV_EXEC_HEALTH_CENTER_D_1")
        assert catalog.get_activity(HIV + "B_B-04_3").section is Section.B

    def test_payable_links_are_concrete_codes(self, catalog):
        assert catalog.get_activity(HIV + "B_B-01_1").payable_code == HIV + "E_1"
        assert catalog.get_activity(HIV + "B_B-04_3").payable_code == HIV + "E_14"
        assert catalog.get_activity(HIV + "B_B-04_5").payable_code is None

    @pytest.mark.parametrize(
        "key, events",
        [
            ("A_1", {"OTHER_REVENUE"}),
            ("A_2", {"TRANSFERS_PUBLIC_ENTITIES"}),
            ("B_B-01_2", {"COMPENSATION_EMPLOYEES"}),
            ("B_B-03_1", {"GOODS_SERVICES"}),
            ("B_B-05_1", {"GRANTS_TRANSFERS"}),
            ("D_1", {"CASH_EQUIVALENTS_END"}),
            ("D_VAT_FUEL", {"ADVANCE_PAYMENTS"}),
            ("D_D-01_5", {"ADVANCE_PAYMENTS"}),
            ("E_7", {"PAYABLES"}),
            ("G_1", {"ACCUMULATED_SURPLUS_DEFICITS"}),
            ("G_G-01_1", {"PRIOR_YEAR_ADJUSTMENTS_CASH", "PRIOR_YEAR_ADJUSTMENTS"}),
            ("G_G-01_2", {"PRIOR_YEAR_ADJUSTMENTS_PAYABLES", "PRIOR_YEAR_ADJUSTMENTS"}),
        ],
    )
    def test_event_mapping(self, catalog, key, events):
        assert catalog.events_for(HIV + key) == frozenset(events)

    @pytest.mark.parametrize("key", ["A_3", "B_99", "E_16", "F_1", "G_4", "G_5", "X_1"])
    def test_totals_and_unreported_are_unmapped(self, catalog, key):
        assert catalog.events_for(HIV + key) == frozenset()

    def test_adjacency_is_bidirectional(self, catalog):
        for code, events in catalog.activity_events.items():
            for event in events:
                assert code in catalog.event_activities[event]

    def test_tb_other_receivable(self, catalog):
        assert catalog.events_for("TB_EXEC_HOSPITAL_D_D-01_4") == frozenset({"ADVANCE_PAYMENTS"})

    def test_statement_lines_are_flattened(self, catalog):
        rev_exp = catalog.get_statement("REV_EXP")

        line = rev_exp.get_line("TRANSFERS_PUBLIC")
        assert line.parent == "REVENUE_NON_EXCHANGE_HEADER"
        assert line.level == 3
        assert rev_exp.get_line("REVENUES_HEADER").children[0] == "REVENUE_NON_EXCHANGE_HEADER"

    def test_basis_is_inherited(self, catalog):
        changes = catalog.get_statement("NET_ASSETS_CHANGES")

        assert changes.get_line("PRIOR_YEAR_ADJUSTMENTS_PREV_CURRENT").basis == "previous"
        assert changes.get_line("CASH_EQUIVALENT_PREV_CURRENT").basis == "previous"
        assert changes.get_line("CASH_EQUIVALENT_CURRENT_NEXT").basis == "current"

    def test_cash_beginning_reads_opening_cash(self, catalog):
        line = catalog.get_statement("CASH_FLOW").get_line("CASH_BEGINNING")

        assert line.event_codes == ("CASH_EQUIVALENTS_BEGIN",)
        assert line.basis == "current"

    def test_get_line_unknown_code(self, catalog):
        with pytest.raises(KeyError):
            catalog.get_statement("REV_EXP").get_line("NOT_A_LINE")

    def test_all_five_statements(self, catalog):
        assert set(catalog.statements) == {
            "REV_EXP",
            "ASSETS_LIAB",
            "CASH_FLOW",
            "NET_ASSETS_CHANGES",
            "BUDGET_VS_ACTUAL",
        }

    def test_fingerprint_is_deterministic(self):
        assert get_active_catalog().fingerprint == get_active_catalog().fingerprint

    def test_catalog_trace_logged(self, captured_logs):
        catalog = get_active_catalog()

        traces = [r for r in captured_logs() if r["message"] == "HEALTHFIN_CATALOG_TRACE"]
        assert traces[-1]["fingerprint"] == catalog.fingerprint
        assert traces[-1]["statement_count"] == 5


class TestRestrictCatalog:
    """Narrowing to one project and facility type."""

    def test_alias_and_facility(self):
        narrowed = get_active_catalog("MALARIA", "health_center")

        assert narrowed.activities
        assert {a.project_type for a in narrowed.activities} == {"MAL"}
        assert {a.facility_type for a in narrowed.activities} == {"health_center"}

    def test_templates_and_fingerprint_are_kept(self, catalog):
        narrowed = get_active_catalog("TB")

        assert narrowed.fingerprint == catalog.fingerprint
        assert set(narrowed.statements) == set(catalog.statements)
        assert not narrowed.has_activity(HIV + "A_1")
        assert all(code.startswith("TB_") for codes in narrowed.event_activities.values()
                   for code in codes)

    def test_list_activities_orders_by_section(self, catalog):
        activities = catalog.list_activities("HIV", "hospital")

        sections = [a.section.value for a in activities]
        assert sections == sorted(sections)
        assert activities[0].code == HIV + "A_1"


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    """Every integrity error is reported before compilation."""

    def test_minimal_set_compiles(self, mini_set, write_set):
        catalog = get_active_catalog(config_dir=write_set(mini_set), set_name="mini")

        assert catalog.name == "mini"
        assert catalog.events_for(HIV + "B_B-01_1") == frozenset({"COMPENSATION_EMPLOYEES"})

    def test_undeclared_event_in_mapping(self, mini_set, write_set):
        mini_set["mappings"]["mappings"].append({"event": "GHOST", "activities": ["A_1"]})

        errors = _errors(write_set(mini_set))

        assert "Mapping to GHOST: event is not declared" in errors

    def test_mapping_a_total_row(self, mini_set, write_set):
        mini_set["mappings"]["mappings"].append({"event": "OTHER_REVENUE", "activities": ["A_2"]})

        errors = _errors(write_set(mini_set))

        assert any("total row HIV A_2 cannot be mapped" in e for e in errors)

    def test_unknown_payable(self, mini_set, write_set):
        activities = mini_set["activities"]["projects"][0]["activities"]
        activities[2]["payable"] = "E_9"

        errors = _errors(write_set(mini_set))

        assert any("payable E_9 does not exist" in e for e in errors)

    def test_formula_outside_grammar(self, mini_set, write_set):
        lines = mini_set["statements"]["statements"]["REV_EXP"]["lines"]
        lines[2]["formula"] = "{line_REVENUE} ** 2"

        errors = _errors(write_set(mini_set))

        assert any("Operator not allowed: Pow" in e for e in errors)

    def test_unknown_line_and_cross_ref(self, mini_set, write_set):
        lines = mini_set["statements"]["statements"]["REV_EXP"]["lines"]
        lines[2]["formula"] = "{line_MISSING}"
        lines.append({"code": "X", "description": "X", "cross_ref": "OTHER.LINE"})

        errors = _errors(write_set(mini_set))

        assert any("formula references unknown line MISSING" in e for e in errors)
        assert any("cross_ref to unknown statement OTHER" in e for e in errors)

    def test_all_errors_reported_at_once(self, mini_set, write_set):
        mini_set["mappings"]["mappings"].append({"event": "GHOST", "activities": ["A_1"]})
        mini_set["activities"]["projects"][0]["activities"][2]["payable"] = "E_9"

        assert len(_errors(write_set(mini_set))) >= 2

    def test_empty_rule_is_only_a_warning(self, mini_set, write_set):
        mini_set["mappings"]["mappings"].append(
            {"event": "OTHER_REVENUE", "subsections": ["B-09"]}
        )
        config = load_config_set(write_set(mini_set) / "mini")

        result = validate_configuration(config)

        assert result.is_valid
        assert any("selects no activity in HIV" in w for w in result.warnings)


class TestLoader:
    """Parse errors and missing sets."""

    def test_missing_set(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_catalog(config_dir=tmp_path, set_name="nope")

    def test_invalid_key(self):
        with pytest.raises(ValueError, match="Invalid activity key"):
            parse_activity({"key": "Z_1", "name": "Bad"})

    def test_key_without_numeric_tail_needs_order(self):
        with pytest.raises(ValueError, match="explicit order"):
            parse_activity({"key": "D_VAT_FUEL", "name": "VAT"})

    def test_key_parsing(self):
        activity = parse_activity({"key": "B_B-04_3", "name": "Fuel", "vat_category": "FUEL"})

        assert activity.section == "B"
        assert activity.subsection == "B-04"
        assert activity.display_order == 3
