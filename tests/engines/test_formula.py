"""
Tests for the restricted statement formula grammar.

Covers:
- Placeholder parsing ({line_X}, {event_N})
- Grammar validation (operators, literals, names, calls, syntax)
- Evaluation with a resolver, including division by zero
- Nothing outside the grammar is ever evaluated

All tests are pure: NO database.
"""

from decimal import Decimal

import pytest

from healthfin_engines.formula import evaluate_formula, parse_formula, validate_formula
from healthfin_kernel.exceptions import FormulaError


def _resolver(values: dict[tuple[str, str], Decimal], calls: list | None = None):
    def _resolve(kind: str, ref: str) -> Decimal:
        if calls is not None:
            calls.append((kind, ref))
        return values[(kind, ref)]

    return _resolve


class TestParseFormula:
    """Placeholder substitution."""

    def test_line_and_event_refs(self):
        parsed = parse_formula("{line_TOTAL_REVENUE} - {event_GOODS_SERVICES}")

        assert parsed.line_refs == ("TOTAL_REVENUE",)
        assert parsed.event_refs == ("GOODS_SERVICES",)
        assert "{" not in parsed.expression

    def test_repeated_placeholder_shares_one_name(self):
        parsed = parse_formula("{line_A} + {line_A} * 2")

        assert len(parsed.references) == 1


class TestValidateFormula:
    """Anything outside the grammar is reported."""

    @pytest.mark.parametrize(
        "formula",
        [
            "{line_A} + {line_B}",
            "-({line_A} - {event_X}) / 2",
            "{line_A} * 0.5",
            "+{event_X}",
        ],
    )
    def test_valid(self, formula):
        assert validate_formula(formula) == []

    @pytest.mark.parametrize(
        "formula, message",
        [
            ("", "Empty formula"),
            ("   ", "Empty formula"),
            ("{line_A} ** 2", "Operator not allowed: Pow"),
            ("{line_A} % 2", "Operator not allowed: Mod"),
            ("not {line_A}", "Operator not allowed: Not"),
            ("foo + 1", "Bare name not allowed: foo"),
            ("'a'", "Literal not allowed: 'a'"),
            ("True", "Literal not allowed: True"),
            ("{line_A} < 2", "Expression not allowed: Compare"),
            ("{line_A", "Malformed placeholder"),
        ],
    )
    def test_invalid(self, formula, message):
        errors = validate_formula(formula)

        assert errors
        assert errors[0].message == message

    def test_calls_are_rejected(self):
        errors = validate_formula("__import__('os').system('ls')")

        assert any("Expression not allowed" in e.message for e in errors)

    def test_syntax_error(self):
        errors = validate_formula("{line_A} +")

        assert errors[0].message.startswith("Syntax error")


class TestEvaluateFormula:
    """Evaluation against a resolver."""

    def test_arithmetic(self):
        resolve = _resolver({("line", "A"): Decimal("100"), ("event", "B"): Decimal("40")})

        assert evaluate_formula("{line_A} - {event_B} * 2", resolve) == Decimal("20")

    def test_each_placeholder_resolved_once(self):
        calls: list = []
        resolve = _resolver({("line", "A"): Decimal("3")}, calls)

        assert evaluate_formula("{line_A} + {line_A}", resolve) == Decimal("6")
        assert calls == [("line", "A")]

    def test_float_literals_are_exact(self):
        assert evaluate_formula("0.1 + 0.2", _resolver({})) == Decimal("0.3")

    def test_unary_minus(self):
        resolve = _resolver({("line", "A"): Decimal("7")})

        assert evaluate_formula("-{line_A}", resolve) == Decimal("-7")

    def test_division_by_zero_yields_zero_and_warning(self):
        warnings: list[str] = []
        resolve = _resolver({("event", "X"): Decimal("10"), ("event", "Y"): Decimal("0")})

        value = evaluate_formula("{event_X} / {event_Y}", resolve, "RATIO", warnings)

        assert value == Decimal("0")
        assert warnings == ["Division by zero in RATIO: {event_X} / {event_Y}"]

    def test_invalid_formula_raises_with_line_code(self):
        with pytest.raises(FormulaError) as exc_info:
            evaluate_formula("__import__('os')", _resolver({}), "EVIL")

        assert exc_info.value.line_code == "EVIL"
        assert exc_info.value.formula == "__import__('os')"

    def test_invalid_formula_never_calls_resolver(self):
        calls: list = []

        with pytest.raises(FormulaError):
            evaluate_formula("{line_A} ** 2", _resolver({}, calls))

        assert calls == []
