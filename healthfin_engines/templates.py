"""
Statement Template Engine -- event buckets into statement lines.

Responsibility:
    Render a statement template against current and previous period
    event buckets: resolve every line value (formula, cross-statement
    reference, working-capital change, event sum, children sum), format
    display values, attach budget/variance data for Budget vs Actual and
    collect the totals map.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Templates are the frozen StatementTemplate types compiled by
    healthfin_config; buckets come from the aggregation engine.

Invariants enforced:
    - Value precedence: formula, cross_ref, working_capital, event sum,
      children sum.  A header with nothing to sum is 0.
    - Formulas go through the restricted grammar; nothing is passed to
      ``eval``.  ``{line_X}`` is evaluated on demand; cycles raise.
    - The current column reads its baseline (the prior year close, or the
      declared Q1 openings of a first year) for ``basis: previous`` lines
      and working-capital changes, whether or not comparatives are shown.
    - The comparative column reads the previous period and its own
      baseline; without a baseline its working-capital lines are 0.
    - Outflow lines keep a positive value but display in parentheses;
      totals and subtotals are exempt.
    - Output is ordered by display_order.

Failure modes:
    - StatementTemplateNotFoundError: unknown statement or cross_ref target.
    - FormulaError: invalid formula or circular line reference.
    - Division by zero is not an error: it yields 0 and a warning.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from healthfin_kernel.domain.catalog import LineTemplate, StatementTemplate
from healthfin_kernel.exceptions import FormulaError, StatementTemplateNotFoundError
from healthfin_engines.formula import LINE, evaluate_formula
from healthfin_engines.tracer import traced_engine

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")

BUDGET_VS_ACTUAL = "BUDGET_VS_ACTUAL"


def format_statement_value(
    value: Decimal,
    negative_format: str = "parentheses",
    show_zero_values: bool = True,
) -> str:
    """
    Display string for a statement amount.

    Rounds HALF_UP to two places.  Zero shows ``0`` (or ``-`` when zero
    values are hidden); negatives show ``(1200.00)`` or ``-1200.00``.
    """
    rounded = Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded == ZERO:
        return "0" if show_zero_values else "-"
    magnitude = f"{abs(rounded):.2f}"
    if rounded < ZERO:
        return f"({magnitude})" if negative_format == "parentheses" else f"-{magnitude}"
    return magnitude


@dataclass(frozen=True)
class LineFormatting:
    indent: int
    bold: bool
    is_section: bool
    is_subtotal: bool
    is_total: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "indent": self.indent,
            "bold": self.bold,
            "is_section": self.is_section,
            "is_subtotal": self.is_subtotal,
            "is_total": self.is_total,
        }


@dataclass(frozen=True)
class LineMetadata:
    line_code: str
    event_codes: tuple[str, ...]
    is_computed: bool
    display_order: int
    budget: Decimal | None = None
    actual: Decimal | None = None
    variance: Decimal | None = None
    variance_percentage: Decimal | None = None
    is_favorable: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "line_code": self.line_code,
            "event_codes": list(self.event_codes),
            "is_computed": self.is_computed,
            "display_order": self.display_order,
        }
        if self.budget is not None:
            data.update(
                budget=str(self.budget),
                actual=str(self.actual),
                variance=str(self.variance),
                variance_percentage=str(self.variance_percentage),
                is_favorable=self.is_favorable,
            )
        return data


@dataclass(frozen=True)
class StatementLine:
    """One rendered statement line; produced fresh for every call."""

    id: str
    description: str
    current_period_value: Decimal
    previous_period_value: Decimal
    display_value: str
    formatting: LineFormatting
    metadata: LineMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "current_period_value": str(self.current_period_value),
            "previous_period_value": str(self.previous_period_value),
            "display_value": self.display_value,
            "formatting": self.formatting.to_dict(),
            "metadata": self.metadata.to_dict(),
        }


@dataclass(frozen=True)
class RenderedStatement:
    statement_code: str
    name: str
    lines: tuple[StatementLine, ...]
    totals: dict[str, Decimal] = field(default_factory=dict)
    warnings: tuple[str, ...] = ()

    def line(self, line_code: str) -> StatementLine:
        for line in self.lines:
            if line.metadata.line_code == line_code:
                return line
        raise KeyError(line_code)

    def value(self, line_code: str) -> Decimal:
        return self.line(line_code).current_period_value


class _LineEvaluator:
    """
    Memoised line evaluation over a chain of bucket sets.

    Frame ``k`` reads ``chain[k]`` as its buckets and ``chain[k + 1]`` as
    its prior period; a ``basis: previous`` line moves to frame ``k + 1``.
    """

    def __init__(
        self,
        templates: Mapping[str, StatementTemplate],
        chain: list[Mapping[str, Decimal] | None],
        warnings: list[str],
    ):
        self._templates = templates
        self._chain = chain + [None]
        self._warnings = warnings
        self._memo: dict[tuple[str, str, int], Decimal] = {}
        self._in_progress: set[tuple[str, str, int]] = set()

    def _buckets(self, frame: int) -> Mapping[str, Decimal] | None:
        if frame >= len(self._chain):
            return None
        return self._chain[frame]

    def template(self, statement_code: str) -> StatementTemplate:
        try:
            return self._templates[statement_code]
        except KeyError:
            raise StatementTemplateNotFoundError(statement_code) from None

    def value(self, statement_code: str, line_code: str, frame: int) -> Decimal:
        key = (statement_code, line_code, frame)
        if key in self._memo:
            return self._memo[key]
        template = self.template(statement_code)
        if not template.has_line(line_code):
            raise FormulaError(line_code, "unknown line reference", line_code)
        line = template.get_line(line_code)
        if key in self._in_progress:
            raise FormulaError(line.formula or line_code, "circular line reference", line_code)

        self._in_progress.add(key)
        try:
            result = self._compute(template, line, frame)
        finally:
            self._in_progress.discard(key)
        self._memo[key] = result
        return result

    def _compute(self, template: StatementTemplate, line: LineTemplate, frame: int) -> Decimal:
        # children inherit basis, so they are summed from the unshifted frame
        base_frame = frame
        if line.basis == "previous":
            frame += 1
        buckets = self._buckets(frame)
        if buckets is None:
            return ZERO
        prior = self._buckets(frame + 1)

        if line.formula:
            def _resolve(kind: str, ref: str) -> Decimal:
                if kind == LINE:
                    return self.value(template.statement_code, ref, frame)
                return buckets.get(ref, ZERO)

            return evaluate_formula(line.formula, _resolve, line.line_code, self._warnings)

        if line.cross_ref:
            statement_code, _, line_code = line.cross_ref.partition(".")
            return self.value(statement_code, line_code, frame)

        if line.working_capital is not None:
            if prior is None:
                return ZERO
            change = sum(
                (buckets.get(e, ZERO) - prior.get(e, ZERO) for e in line.working_capital.events),
                ZERO,
            )
            return change * line.working_capital.sign

        if line.event_codes:
            return sum((buckets.get(e, ZERO) for e in line.event_codes), ZERO)

        if line.children:
            return sum(
                (self.value(template.statement_code, child, base_frame) for child in line.children),
                ZERO,
            )

        return ZERO


def _display_value(
    line: LineTemplate,
    value: Decimal,
    negative_format: str,
    show_zero_values: bool,
) -> str:
    exempt = line.is_total or line.is_subtotal
    if line.outflow and not exempt and value > ZERO:
        return f"({format_statement_value(value, show_zero_values=show_zero_values)})"
    return format_statement_value(value, negative_format, show_zero_values)


def _variance(budget: Decimal, actual: Decimal) -> tuple[Decimal, Decimal, bool]:
    variance = budget - actual
    if budget == ZERO:
        percentage = ZERO
    else:
        percentage = (variance / budget * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    return variance, percentage, variance >= ZERO


@traced_engine("statement_template", "1.0", fingerprint_fields=("statement_code",))
def render(
    statement_code: str,
    event_buckets: Mapping[str, Decimal],
    previous_period_buckets: Mapping[str, Decimal] | None = None,
    *,
    templates: Mapping[str, StatementTemplate],
    baseline_buckets: Mapping[str, Decimal] | None = None,
    previous_baseline_buckets: Mapping[str, Decimal] | None = None,
    budget_buckets: Mapping[str, Decimal] | None = None,
    negative_format: str = "parentheses",
    show_zero_values: bool = True,
) -> RenderedStatement:
    """
    Render one statement.

    Args:
        statement_code: Key into ``templates``.
        event_buckets: Current period buckets.
        previous_period_buckets: Prior period buckets; ``None`` when there
            are no comparatives.
        templates: All compiled templates (cross_ref targets included).
        baseline_buckets: Position the current period started from;
            defaults to ``previous_period_buckets``, then to all zeros.
        previous_baseline_buckets: Baseline of the previous period.
        budget_buckets: Planned amounts per event, used by Budget vs
            Actual.  Missing budgets count as zero.
    """
    warnings: list[str] = []
    if baseline_buckets is None:
        baseline_buckets = previous_period_buckets or {}
    current = _LineEvaluator(templates, [event_buckets, baseline_buckets], warnings)
    comparative = _LineEvaluator(
        templates, [previous_period_buckets, previous_baseline_buckets], warnings
    )
    template = current.template(statement_code)

    is_bva = statement_code == BUDGET_VS_ACTUAL
    budget_eval = _LineEvaluator(templates, [budget_buckets or {}], warnings) if is_bva else None

    lines: list[StatementLine] = []
    totals: dict[str, Decimal] = {}

    for line in template.ordered_lines():
        value = current.value(statement_code, line.line_code, 0)
        previous = comparative.value(statement_code, line.line_code, 0)

        budget = actual = variance = percentage = None
        favorable = None
        if budget_eval is not None:
            budget = budget_eval.value(statement_code, line.line_code, 0)
            actual = value
            variance, percentage, favorable = _variance(budget, actual)

        lines.append(
            StatementLine(
                id=f"{statement_code}.{line.line_code}",
                description=line.description,
                current_period_value=value,
                previous_period_value=previous,
                display_value=_display_value(line, value, negative_format, show_zero_values),
                formatting=LineFormatting(
                    indent=max(line.level - 1, 0),
                    bold=line.is_total or line.is_subtotal or line.is_section,
                    is_section=line.is_section,
                    is_subtotal=line.is_subtotal,
                    is_total=line.is_total,
                ),
                metadata=LineMetadata(
                    line_code=line.line_code,
                    event_codes=line.event_codes,
                    is_computed=line.is_computed,
                    display_order=line.display_order,
                    budget=budget,
                    actual=actual,
                    variance=variance,
                    variance_percentage=percentage,
                    is_favorable=favorable,
                ),
            )
        )
        if line.is_total or line.is_subtotal:
            totals[line.line_code] = value

    return RenderedStatement(
        statement_code=statement_code,
        name=template.name,
        lines=tuple(lines),
        totals=totals,
        warnings=tuple(warnings),
    )
