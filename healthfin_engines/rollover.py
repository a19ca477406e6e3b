"""
Quarterly rollover -- quarter sequencing and carried-forward balances.

Responsibility:
    Navigate the quarter sequence across the fiscal-year boundary
    (Q4 of Y-1 rolls into Q1 of Y) and shape a closing position into the
    previous-quarter balances view consumed by callers.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    RolloverService supplies the ledger reads.

Invariants enforced:
    - previous(Q1, Y) == (Q4, Y-1); next(Q4, Y) == (Q1, Y+1).
    - Q1 has a previous quarter only when the prior fiscal year exists.
    - VAT balances are floored at zero and exposed both per category and
      under ``D["VAT_<CATEGORY>"]``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from healthfin_kernel.domain.dtos import Quarter
from healthfin_engines.quarter_close import BalanceState, QuarterLayout

ZERO = Decimal("0")


@dataclass(frozen=True)
class QuarterRef:
    quarter: Quarter
    year: int

    def to_dict(self) -> dict[str, Any]:
        return {"quarter": self.quarter.value, "year": self.year}


@dataclass(frozen=True)
class QuarterSequence:
    current: QuarterRef
    previous: QuarterRef | None
    next: QuarterRef | None
    has_previous: bool
    has_next: bool
    is_first_quarter: bool
    is_cross_fiscal_year_rollover: bool


def get_quarter_sequence(
    quarter: Quarter | str,
    year: int,
    has_cross_fiscal_year_previous: bool = False,
) -> QuarterSequence:
    """Neighbours of a quarter; Q4 always has a next quarter."""
    quarter = Quarter.from_value(quarter)
    current = QuarterRef(quarter, year)

    if quarter is Quarter.Q1:
        previous = QuarterRef(Quarter.Q4, year - 1) if has_cross_fiscal_year_previous else None
    else:
        previous = QuarterRef(Quarter.from_value(quarter.number - 1), year)

    if quarter is Quarter.Q4:
        nxt = QuarterRef(Quarter.Q1, year + 1)
    else:
        nxt = QuarterRef(Quarter.from_value(quarter.number + 1), year)

    return QuarterSequence(
        current=current,
        previous=previous,
        next=nxt,
        has_previous=previous is not None,
        has_next=True,
        is_first_quarter=quarter is Quarter.Q1,
        is_cross_fiscal_year_rollover=quarter is Quarter.Q1 and previous is not None,
    )


@dataclass(frozen=True)
class PreviousQuarterBalances:
    exists: bool
    quarter: Quarter | None
    year: int | None
    execution_id: str | None = None
    closing_balances: dict[str, dict[str, Decimal]] = field(default_factory=dict)
    totals: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exists": self.exists,
            "quarter": self.quarter.value if self.quarter else None,
            "year": self.year,
            "execution_id": self.execution_id,
            "closing_balances": {
                section: {k: str(v) for k, v in values.items()}
                for section, values in self.closing_balances.items()
            },
            "totals": {k: str(v) for k, v in self.totals.items()},
        }


def empty_previous_balances() -> PreviousQuarterBalances:
    return PreviousQuarterBalances(
        exists=False,
        quarter=None,
        year=None,
        closing_balances={"D": {}, "E": {}, "VAT": {}, "G": {}},
        totals={
            "financial_assets": ZERO,
            "financial_liabilities": ZERO,
            "net_financial_assets": ZERO,
        },
    )


def build_previous_balances(
    layout: QuarterLayout,
    state: BalanceState,
    quarter: Quarter,
    year: int,
    execution_id: str | None = None,
) -> PreviousQuarterBalances:
    """Shape a closing position into the previous-quarter balances view."""
    vat = {category: max(ZERO, amount) for category, amount in state.vat.items()}

    d: dict[str, Decimal] = {}
    if layout.cash_code:
        d[layout.cash_code] = state.cash
    for category, code in layout.vat_codes.items():
        d[code] = vat.get(category, ZERO)
    if layout.other_receivable_code:
        d[layout.other_receivable_code] = state.other_receivable
    for category, amount in vat.items():
        d[f"VAT_{category}"] = amount

    e = {code: state.payables.get(code, ZERO) for code in layout.payable_codes}

    g = {
        "accumulated_surplus": state.accumulated_surplus,
        "prior_year_adjustments": state.prior_year_adjustments,
        "surplus": state.surplus,
        "total": state.closing_balance,
    }

    return PreviousQuarterBalances(
        exists=True,
        quarter=quarter,
        year=year,
        execution_id=execution_id,
        closing_balances={"D": d, "E": e, "VAT": vat, "G": g},
        totals={
            "financial_assets": state.financial_assets,
            "financial_liabilities": state.financial_liabilities,
            "net_financial_assets": state.net_financial_assets,
        },
    )
