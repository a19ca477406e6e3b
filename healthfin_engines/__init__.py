"""
Module: healthfin_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines.  This is the canonical import surface for
    healthfin_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import healthfin_kernel (domain types, exceptions, logging)
    and sibling engine modules.  MUST NOT import healthfin_config or
    healthfin_services.

Invariants enforced:
    - Purity: engines never read the clock or the database.
    - Decimal-only arithmetic: monetary amounts are ``Decimal``.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Aggregation, statement rendering and quarter close are traced via
    ``@traced_engine`` (HEALTHFIN_ENGINE_TRACE).
"""

from healthfin_kernel.logging_config import get_logger

logger = get_logger("engines")

from healthfin_engines.adjustments import (
    AdjustmentDirection,
    AdjustmentEntry,
    AdjustmentResult,
    AdjustmentTarget,
    ValidationResult,
    apply_prior_year_adjustment,
    apply_prior_year_cash_adjustment,
    clear_other_receivable,
    clear_payable,
    clear_vat,
    record_other_receivable,
    validate_adjustment,
)
from healthfin_engines.aggregation import (
    AggregationResult,
    SkippedEntry,
    UnmappedActivity,
    aggregate,
    declared_opening_buckets,
    entry_contribution,
    with_opening_cash,
)
from healthfin_engines.cascade import (
    AccountingEquationResult,
    CascadePlan,
    check_accounting_equation,
    plan_cascade,
)
from healthfin_engines.formula import (
    FormulaASTError,
    evaluate_formula,
    parse_formula,
    validate_formula,
)
from healthfin_engines.quarter_close import (
    BalanceState,
    ExpenseLine,
    QuarterClose,
    QuarterLayout,
    QuarterTransactions,
    build_layout,
    close_quarter,
    closing_entry_values,
    extract_transactions,
    read_closing_state,
    read_declared_opening,
)
from healthfin_engines.rollover import (
    PreviousQuarterBalances,
    QuarterRef,
    QuarterSequence,
    build_previous_balances,
    empty_previous_balances,
    get_quarter_sequence,
)
from healthfin_engines.templates import (
    RenderedStatement,
    StatementLine,
    format_statement_value,
    render,
)

__all__ = [
    "AccountingEquationResult",
    "AdjustmentDirection",
    "AdjustmentEntry",
    "AdjustmentResult",
    "AdjustmentTarget",
    "AggregationResult",
    "BalanceState",
    "CascadePlan",
    "ExpenseLine",
    "FormulaASTError",
    "PreviousQuarterBalances",
    "QuarterClose",
    "QuarterLayout",
    "QuarterRef",
    "QuarterSequence",
    "QuarterTransactions",
    "RenderedStatement",
    "SkippedEntry",
    "StatementLine",
    "UnmappedActivity",
    "ValidationResult",
    "aggregate",
    "apply_prior_year_adjustment",
    "apply_prior_year_cash_adjustment",
    "build_layout",
    "build_previous_balances",
    "check_accounting_equation",
    "clear_other_receivable",
    "clear_payable",
    "clear_vat",
    "close_quarter",
    "closing_entry_values",
    "declared_opening_buckets",
    "empty_previous_balances",
    "entry_contribution",
    "evaluate_formula",
    "extract_transactions",
    "format_statement_value",
    "get_quarter_sequence",
    "parse_formula",
    "plan_cascade",
    "read_closing_state",
    "read_declared_opening",
    "record_other_receivable",
    "render",
    "validate_adjustment",
    "validate_formula",
    "with_opening_cash",
]
