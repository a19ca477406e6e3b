"""
Restricted formula grammar for statement line templates.

Statement formulas reference other lines and event buckets through
placeholders and combine them with plain arithmetic.  This module
parses, validates and evaluates such formulas without ever handing
text to ``eval``.

Allowed:
  - Binary operators: + - * /
  - Unary operators: - +
  - Parentheses
  - Decimal literals (floats are converted through ``Decimal(str(x))``)
  - Placeholders: ``{line_X}`` (another line of the same statement)
    and ``{event_N}`` (an event bucket)

Rejected:
  - names, calls, attributes, subscripts, comparisons, boolean logic,
    strings, power, modulo and anything else the walker does not know
"""

from __future__ import annotations

import ast
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal, DivisionByZero, InvalidOperation

from healthfin_kernel.exceptions import FormulaError

PLACEHOLDER_PATTERN = re.compile(r"\{(line|event)_([A-Za-z0-9_\-]+)\}")

LINE = "line"
EVENT = "event"

_ALLOWED_BINOPS = (ast.Add, ast.Sub, ast.Mult, ast.Div)
_ALLOWED_UNARYOPS = (ast.USub, ast.UAdd)

ZERO = Decimal("0")


@dataclass(frozen=True)
class FormulaASTError:
    """A validation error found in a formula."""

    formula: str
    message: str
    node_type: str = ""
    col_offset: int = 0


@dataclass(frozen=True)
class ParsedFormula:
    """
    A formula with placeholders replaced by safe identifiers.

    ``references`` maps each identifier to its ``(kind, ref)`` pair.
    """

    formula: str
    expression: str
    references: dict[str, tuple[str, str]] = field(default_factory=dict)

    @property
    def line_refs(self) -> tuple[str, ...]:
        return tuple(ref for kind, ref in self.references.values() if kind == LINE)

    @property
    def event_refs(self) -> tuple[str, ...]:
        return tuple(ref for kind, ref in self.references.values() if kind == EVENT)


def parse_formula(formula: str) -> ParsedFormula:
    """Substitute placeholders; identical placeholders share one name."""
    references: dict[str, tuple[str, str]] = {}
    by_placeholder: dict[tuple[str, str], str] = {}

    def _substitute(match: re.Match[str]) -> str:
        key = (match.group(1), match.group(2))
        name = by_placeholder.get(key)
        if name is None:
            name = f"__ref_{len(by_placeholder)}"
            by_placeholder[key] = name
            references[name] = key
        return name

    expression = PLACEHOLDER_PATTERN.sub(_substitute, formula)
    return ParsedFormula(formula=formula, expression=expression, references=references)


def validate_formula(formula: str) -> list[FormulaASTError]:
    """
    Validate a formula against the restricted grammar.

    Returns a list of errors. Empty list means the formula is valid.
    """
    if not formula or not formula.strip():
        return [FormulaASTError(formula=formula, message="Empty formula")]

    parsed = parse_formula(formula)
    if "{" in parsed.expression or "}" in parsed.expression:
        return [FormulaASTError(formula=formula, message="Malformed placeholder")]

    try:
        tree = ast.parse(parsed.expression.strip(), mode="eval")
    except SyntaxError as e:
        return [
            FormulaASTError(
                formula=formula,
                message=f"Syntax error: {e.msg}",
                col_offset=e.offset or 0,
            )
        ]

    errors: list[FormulaASTError] = []
    _validate_node(tree.body, parsed, errors)
    return errors


def _validate_node(
    node: ast.AST, parsed: ParsedFormula, errors: list[FormulaASTError]
) -> None:
    if isinstance(node, ast.BinOp):
        if not isinstance(node.op, _ALLOWED_BINOPS):
            errors.append(_error(parsed, node, f"Operator not allowed: {type(node.op).__name__}"))
        _validate_node(node.left, parsed, errors)
        _validate_node(node.right, parsed, errors)
        return

    if isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, _ALLOWED_UNARYOPS):
            errors.append(_error(parsed, node, f"Operator not allowed: {type(node.op).__name__}"))
        _validate_node(node.operand, parsed, errors)
        return

    if isinstance(node, ast.Constant):
        # bool is an int subclass
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            errors.append(_error(parsed, node, f"Literal not allowed: {node.value!r}"))
        return

    if isinstance(node, ast.Name):
        if node.id not in parsed.references:
            errors.append(_error(parsed, node, f"Bare name not allowed: {node.id}"))
        return

    errors.append(_error(parsed, node, f"Expression not allowed: {type(node).__name__}"))


def _error(parsed: ParsedFormula, node: ast.AST, message: str) -> FormulaASTError:
    return FormulaASTError(
        formula=parsed.formula,
        message=message,
        node_type=type(node).__name__,
        col_offset=getattr(node, "col_offset", 0),
    )


def evaluate_formula(
    formula: str,
    resolve: Callable[[str, str], Decimal],
    line_code: str | None = None,
    warnings: list[str] | None = None,
) -> Decimal:
    """
    Evaluate a formula.

    Args:
        formula: Formula text with ``{line_X}`` / ``{event_N}`` placeholders.
        resolve: Called with ``(kind, ref)`` for every placeholder; may
            recurse into other lines.
        line_code: Owning line, for error messages.
        warnings: Receives a message for each division by zero.

    Raises:
        FormulaError: The formula is outside the grammar.
    """
    errors = validate_formula(formula)
    if errors:
        raise FormulaError(formula, errors[0].message, line_code)

    parsed = parse_formula(formula)
    tree = ast.parse(parsed.expression.strip(), mode="eval")
    values: dict[str, Decimal] = {}

    def _value(name: str) -> Decimal:
        if name not in values:
            kind, ref = parsed.references[name]
            values[name] = Decimal(resolve(kind, ref))
        return values[name]

    def _eval(node: ast.AST) -> Decimal:
        if isinstance(node, ast.BinOp):
            left = _eval(node.left)
            right = _eval(node.right)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if right == ZERO:
                if warnings is not None:
                    warnings.append(
                        f"Division by zero in {line_code or 'formula'}: {formula}"
                    )
                return ZERO
            try:
                return left / right
            except (DivisionByZero, InvalidOperation):
                raise FormulaError(formula, "invalid division", line_code) from None
        if isinstance(node, ast.UnaryOp):
            operand = _eval(node.operand)
            return -operand if isinstance(node.op, ast.USub) else operand
        if isinstance(node, ast.Constant):
            return Decimal(str(node.value))
        if isinstance(node, ast.Name):
            return _value(node.id)
        raise FormulaError(formula, f"unsupported node {type(node).__name__}", line_code)

    return _eval(tree.body)
