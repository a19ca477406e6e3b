"""
Cascade planning and the accounting equation.

Responsibility:
    Decide which later quarters an edit affects, which of them is
    recalculated synchronously and which are deferred; check that net
    financial assets equal the closing balance.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Affected quarters are the later quarters of the same period that
      already hold data, in quarter order.  Q4 edits never cascade.
    - Only the immediately next affected quarter runs synchronously.
    - Balanced means |(D - E) - G| <= tolerance.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from healthfin_kernel.domain.dtos import CascadeResult, Quarter

DEFAULT_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class CascadePlan:
    edited: Quarter
    affected: tuple[Quarter, ...]
    immediate: tuple[Quarter, ...]
    queued: tuple[Quarter, ...]

    def result(self) -> CascadeResult:
        return CascadeResult.build(self.affected, self.immediate, self.queued)


def plan_cascade(edited: Quarter, quarters_with_data: Iterable[Quarter]) -> CascadePlan:
    later = sorted(
        {q for q in quarters_with_data if q.number > edited.number},
        key=lambda q: q.number,
    )
    affected = tuple(later)
    return CascadePlan(
        edited=edited,
        affected=affected,
        immediate=affected[:1],
        queued=affected[1:],
    )


@dataclass(frozen=True)
class AccountingEquationResult:
    is_balanced: bool
    difference: Decimal
    tolerance: Decimal
    message: str
    details: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_balanced": self.is_balanced,
            "difference": str(self.difference),
            "tolerance": str(self.tolerance),
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


def check_accounting_equation(
    financial_assets: Decimal,
    financial_liabilities: Decimal,
    closing_balance: Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> AccountingEquationResult:
    net = financial_assets - financial_liabilities
    difference = net - closing_balance
    is_balanced = abs(difference) <= tolerance
    if is_balanced:
        message = "Net financial assets equal the closing balance"
    else:
        message = (
            f"Net financial assets ({net}) differ from the closing balance "
            f"({closing_balance}) by {difference}"
        )
    return AccountingEquationResult(
        is_balanced=is_balanced,
        difference=difference,
        tolerance=tolerance,
        message=message,
        details={
            "financial_assets": financial_assets,
            "financial_liabilities": financial_liabilities,
            "net_financial_assets": net,
            "closing_balance": closing_balance,
        },
    )
