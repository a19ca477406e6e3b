"""
Quarter close -- closing balances from opening balances and transactions.

Responsibility:
    Compute a quarter's closing financial position (cash, VAT
    receivables, other receivables, payables, and the G components) from
    its opening position and the quarter's user transactions, and map the
    result onto the derived ledger activities (D, E, F, G).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Used by ExecutionService, AdjustmentService and the recalculation
    sweep.  The layout is derived from the compiled ActivityCatalog.

Invariants enforced:
    - cash = opening + receipts - paid + vat_cleared - misc_receivable
      + other_receivable_cleared - payable_cleared + prior_year_cash.
    - payable = max(0, opening + unpaid - cleared + prior_year_payable).
    - vat = max(0, opening + incurred - cleared), per category.
    - other_receivable = opening + misc - cleared + prior_year_receivable.
    - quarter surplus = receipts - recorded expenses (net of VAT).
    - F = D - E; G = accumulated + prior year adjustments + surplus.
    - Closing the same inputs twice gives identical values.

Failure modes:
    - None at this layer: amounts are validated at the service boundary.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any

from healthfin_kernel.domain.catalog import ActivityCatalog, ActivityDef, ActivityRole
from healthfin_kernel.domain.dtos import ExecutionEntryData, PaymentStatus, Quarter, Section
from healthfin_engines.tracer import traced_engine

ZERO = Decimal("0")

# quarter_details keys
PAYMENT_STATUS = "payment_status"
AMOUNT_PAID = "amount_paid"
NET_AMOUNT = "net_amount"
VAT_AMOUNT = "vat_amount"
VAT_CLEARED = "vat_cleared"
PAYABLE_CLEARED = "payable_cleared"
OTHER_RECEIVABLE_CLEARED = "other_receivable_cleared"
PRIOR_YEAR_ADJUSTMENT = "prior_year_adjustment"
OPENING = "opening"


def _dec(value: Any) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class BalanceState:
    """
    Financial position at a point in time.

    ``prior_year_adjustments`` and ``surplus`` are year-to-date;
    ``accumulated_surplus`` is constant within the year.
    """

    cash: Decimal = ZERO
    vat: Mapping[str, Decimal] = field(default_factory=dict)
    payables: Mapping[str, Decimal] = field(default_factory=dict)
    other_receivable: Decimal = ZERO
    accumulated_surplus: Decimal = ZERO
    prior_year_adjustments: Decimal = ZERO
    surplus: Decimal = ZERO

    @property
    def total_vat(self) -> Decimal:
        return sum(self.vat.values(), ZERO)

    @property
    def financial_assets(self) -> Decimal:
        return self.cash + self.total_vat + self.other_receivable

    @property
    def financial_liabilities(self) -> Decimal:
        return sum(self.payables.values(), ZERO)

    @property
    def net_financial_assets(self) -> Decimal:
        return self.financial_assets - self.financial_liabilities

    @property
    def closing_balance(self) -> Decimal:
        return self.accumulated_surplus + self.prior_year_adjustments + self.surplus

    def with_vat(self, category: str, amount: Decimal) -> BalanceState:
        return replace(self, vat={**self.vat, category: amount})

    def with_payable(self, code: str, amount: Decimal) -> BalanceState:
        return replace(self, payables={**self.payables, code: amount})

    def year_opening(self) -> BalanceState:
        """Carry this closing position into the next fiscal year."""
        return replace(
            self,
            accumulated_surplus=self.closing_balance,
            prior_year_adjustments=ZERO,
            surplus=ZERO,
        )


@dataclass(frozen=True)
class ExpenseLine:
    """One Section B expense in a quarter."""

    code: str
    amount: Decimal
    payment_status: PaymentStatus = PaymentStatus.PAID
    amount_paid: Decimal | None = None
    vat_category: str | None = None
    vat_amount: Decimal = ZERO
    payable_code: str | None = None

    @property
    def gross(self) -> Decimal:
        return self.amount + self.vat_amount

    @property
    def paid(self) -> Decimal:
        # expenses with no payable line settle immediately
        if self.payable_code is None or self.payment_status is PaymentStatus.PAID:
            return self.gross
        if self.payment_status is PaymentStatus.UNPAID:
            return ZERO
        return min(max(_dec(self.amount_paid), ZERO), self.gross)

    @property
    def unpaid(self) -> Decimal:
        return self.gross - self.paid


@dataclass(frozen=True)
class QuarterTransactions:
    """User-entered movements of one quarter."""

    receipts: Decimal = ZERO
    expenses: tuple[ExpenseLine, ...] = ()
    misc_other_receivable: Decimal = ZERO
    vat_cleared: Mapping[str, Decimal] = field(default_factory=dict)
    payable_cleared: Mapping[str, Decimal] = field(default_factory=dict)
    other_receivable_cleared: Decimal = ZERO
    prior_year_cash_adjustment: Decimal = ZERO
    prior_year_payable_adjustments: Mapping[str, Decimal] = field(default_factory=dict)
    prior_year_receivable_adjustment: Decimal = ZERO

    @property
    def total_expenses(self) -> Decimal:
        return sum((e.amount for e in self.expenses), ZERO)

    @property
    def total_paid(self) -> Decimal:
        return sum((e.paid for e in self.expenses), ZERO)

    def vat_incurred(self) -> dict[str, Decimal]:
        incurred: dict[str, Decimal] = {}
        for expense in self.expenses:
            if expense.vat_category:
                incurred[expense.vat_category] = (
                    incurred.get(expense.vat_category, ZERO) + expense.vat_amount
                )
        return incurred

    def unpaid_by_payable(self) -> dict[str, Decimal]:
        unpaid: dict[str, Decimal] = {}
        for expense in self.expenses:
            if expense.payable_code and expense.unpaid:
                unpaid[expense.payable_code] = (
                    unpaid.get(expense.payable_code, ZERO) + expense.unpaid
                )
        return unpaid


@dataclass(frozen=True)
class QuarterClose:
    """Closing position plus the quarter's own G movements."""

    state: BalanceState
    quarter_surplus: Decimal
    prior_year_cash: Decimal
    prior_year_payable: Decimal
    prior_year_receivable: Decimal

    @property
    def quarter_prior_year_adjustments(self) -> Decimal:
        # a payable increase reduces net assets
        return self.prior_year_cash - self.prior_year_payable + self.prior_year_receivable


@traced_engine("quarter_close", "1.0")
def close_quarter(*, opening: BalanceState, transactions: QuarterTransactions) -> QuarterClose:
    """Close one quarter."""
    t = transactions
    cash = (
        opening.cash
        + t.receipts
        - t.total_paid
        + sum(t.vat_cleared.values(), ZERO)
        - t.misc_other_receivable
        + t.other_receivable_cleared
        - sum(t.payable_cleared.values(), ZERO)
        + t.prior_year_cash_adjustment
    )

    incurred = t.vat_incurred()
    vat: dict[str, Decimal] = {}
    for category in sorted(set(opening.vat) | set(incurred) | set(t.vat_cleared)):
        vat[category] = max(
            ZERO,
            opening.vat.get(category, ZERO)
            + incurred.get(category, ZERO)
            - t.vat_cleared.get(category, ZERO),
        )

    unpaid = t.unpaid_by_payable()
    payables: dict[str, Decimal] = {}
    codes = set(opening.payables) | set(unpaid) | set(t.payable_cleared) | set(
        t.prior_year_payable_adjustments
    )
    for code in sorted(codes):
        payables[code] = max(
            ZERO,
            opening.payables.get(code, ZERO)
            + unpaid.get(code, ZERO)
            - t.payable_cleared.get(code, ZERO)
            + t.prior_year_payable_adjustments.get(code, ZERO),
        )

    other_receivable = (
        opening.other_receivable
        + t.misc_other_receivable
        - t.other_receivable_cleared
        + t.prior_year_receivable_adjustment
    )

    prior_year_payable = sum(t.prior_year_payable_adjustments.values(), ZERO)
    quarter_surplus = t.receipts - t.total_expenses
    quarter_pya = (
        t.prior_year_cash_adjustment - prior_year_payable + t.prior_year_receivable_adjustment
    )

    state = BalanceState(
        cash=cash,
        vat=vat,
        payables=payables,
        other_receivable=other_receivable,
        accumulated_surplus=opening.accumulated_surplus,
        prior_year_adjustments=opening.prior_year_adjustments + quarter_pya,
        surplus=opening.surplus + quarter_surplus,
    )
    return QuarterClose(
        state=state,
        quarter_surplus=quarter_surplus,
        prior_year_cash=t.prior_year_cash_adjustment,
        prior_year_payable=prior_year_payable,
        prior_year_receivable=t.prior_year_receivable_adjustment,
    )


# ---------------------------------------------------------------------------
# Ledger layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuarterLayout:
    """Ledger activity codes of one project and facility type, by role."""

    project_type: str
    facility_type: str
    revenue_codes: tuple[str, ...] = ()
    expenses: tuple[ActivityDef, ...] = ()
    misc_codes: tuple[str, ...] = ()
    cash_code: str | None = None
    vat_codes: Mapping[str, str] = field(default_factory=dict)
    other_receivable_code: str | None = None
    payable_codes: tuple[str, ...] = ()
    net_assets_code: str | None = None
    accumulated_code: str | None = None
    pya_cash_code: str | None = None
    pya_payable_code: str | None = None
    pya_receivable_code: str | None = None
    surplus_code: str | None = None

    @property
    def user_codes(self) -> frozenset[str]:
        """Activities whose quarter value is entered by users."""
        return frozenset(
            self.revenue_codes + tuple(e.code for e in self.expenses) + self.misc_codes
        )

    @property
    def derived_codes(self) -> frozenset[str]:
        """Activities whose quarter value the close computes."""
        codes = {
            self.cash_code,
            self.other_receivable_code,
            self.net_assets_code,
            self.accumulated_code,
            self.pya_cash_code,
            self.pya_payable_code,
            self.pya_receivable_code,
            self.surplus_code,
            *self.vat_codes.values(),
            *self.payable_codes,
        }
        codes.discard(None)
        return frozenset(codes)  # type: ignore[arg-type]


def build_layout(catalog: ActivityCatalog, project_type: str, facility_type: str) -> QuarterLayout:
    activities = [
        a for a in catalog.list_activities(project_type, facility_type) if not a.is_total_row
    ]

    def _single(role: str) -> str | None:
        matches = [a.code for a in activities if a.role == role]
        return matches[0] if matches else None

    return QuarterLayout(
        project_type=project_type.upper(),
        facility_type=facility_type.lower(),
        revenue_codes=tuple(a.code for a in activities if a.section is Section.A),
        expenses=tuple(a for a in activities if a.section is Section.B),
        misc_codes=tuple(a.code for a in activities if a.section is Section.X),
        cash_code=_single(ActivityRole.CASH),
        vat_codes={
            a.vat_category: a.code
            for a in activities
            if a.role == ActivityRole.VAT_RECEIVABLE and a.vat_category
        },
        other_receivable_code=_single(ActivityRole.OTHER_RECEIVABLE),
        payable_codes=tuple(a.code for a in activities if a.role == ActivityRole.PAYABLE),
        net_assets_code=next((a.code for a in activities if a.section is Section.F), None),
        accumulated_code=_single(ActivityRole.ACCUMULATED_SURPLUS),
        pya_cash_code=_single(ActivityRole.PRIOR_YEAR_ADJUSTMENT_CASH),
        pya_payable_code=_single(ActivityRole.PRIOR_YEAR_ADJUSTMENT_PAYABLE),
        pya_receivable_code=_single(ActivityRole.PRIOR_YEAR_ADJUSTMENT_RECEIVABLE),
        surplus_code=_single(ActivityRole.SURPLUS_PERIOD),
    )


# ---------------------------------------------------------------------------
# Reading and writing ledger values
# ---------------------------------------------------------------------------


def stock_as_of(entry: ExecutionEntryData | None, quarter: Quarter) -> Decimal | None:
    """Latest entered balance up to and including ``quarter``."""
    if entry is None:
        return None
    for q in reversed(Quarter.ordered()[: quarter.number]):
        value = entry.quarter_value(q)
        if value is not None:
            return _dec(value)
    return None


def flow_through(entry: ExecutionEntryData | None, quarter: Quarter) -> Decimal:
    if entry is None:
        return ZERO
    return sum(
        (_dec(entry.quarter_value(q)) for q in Quarter.ordered()[: quarter.number]),
        ZERO,
    )


def read_closing_state(
    layout: QuarterLayout,
    entries: Mapping[str, ExecutionEntryData],
    quarter: Quarter,
) -> BalanceState:
    """Closing position of ``quarter`` as stored in the ledger."""

    def _stock(code: str | None) -> Decimal:
        return _dec(stock_as_of(entries.get(code), quarter)) if code else ZERO

    pya = sum(
        (
            flow_through(entries.get(code), quarter)
            for code in (layout.pya_cash_code, layout.pya_payable_code, layout.pya_receivable_code)
            if code
        ),
        ZERO,
    )
    accumulated = ZERO
    if layout.accumulated_code and layout.accumulated_code in entries:
        accumulated = _dec(entries[layout.accumulated_code].q1)

    return BalanceState(
        cash=_stock(layout.cash_code),
        vat={category: _stock(code) for category, code in layout.vat_codes.items()},
        payables={code: _stock(code) for code in layout.payable_codes},
        other_receivable=_stock(layout.other_receivable_code),
        accumulated_surplus=accumulated,
        prior_year_adjustments=pya,
        surplus=flow_through(entries.get(layout.surplus_code), quarter)
        if layout.surplus_code
        else ZERO,
    )


def read_declared_opening(
    layout: QuarterLayout,
    entries: Mapping[str, ExecutionEntryData],
) -> BalanceState:
    """
    Opening position declared in Q1 details, used when no prior fiscal
    year exists.  Accumulated surplus is the opening net assets.
    """

    def _opening(code: str | None) -> Decimal:
        if not code or code not in entries:
            return ZERO
        return _dec(entries[code].details_for(Quarter.Q1).get(OPENING))

    state = BalanceState(
        cash=_opening(layout.cash_code),
        vat={category: _opening(code) for category, code in layout.vat_codes.items()},
        payables={code: _opening(code) for code in layout.payable_codes},
        other_receivable=_opening(layout.other_receivable_code),
    )
    return replace(state, accumulated_surplus=state.net_financial_assets)


def extract_transactions(
    layout: QuarterLayout,
    entries: Mapping[str, ExecutionEntryData],
    quarter: Quarter,
) -> QuarterTransactions:
    """User transactions of one quarter, read from values and details."""

    def _value(code: str) -> Decimal:
        entry = entries.get(code)
        return _dec(entry.quarter_value(quarter)) if entry else ZERO

    def _detail(code: str | None, key: str) -> Decimal:
        if not code or code not in entries:
            return ZERO
        return _dec(entries[code].details_for(quarter).get(key))

    expenses: list[ExpenseLine] = []
    for activity in layout.expenses:
        entry = entries.get(activity.code)
        if entry is None or entry.quarter_value(quarter) is None:
            continue
        details = entry.details_for(quarter)
        amount = _dec(entry.quarter_value(quarter))
        vat_amount = ZERO
        if activity.vat_category:
            vat_amount = _dec(details.get(VAT_AMOUNT))
            if details.get(NET_AMOUNT) is not None:
                amount = _dec(details.get(NET_AMOUNT))
        status = details.get(PAYMENT_STATUS) or PaymentStatus.PAID.value
        expenses.append(
            ExpenseLine(
                code=activity.code,
                amount=amount,
                payment_status=PaymentStatus(status),
                amount_paid=(
                    _dec(details[AMOUNT_PAID]) if details.get(AMOUNT_PAID) is not None else None
                ),
                vat_category=activity.vat_category,
                vat_amount=vat_amount,
                payable_code=activity.payable_code,
            )
        )

    return QuarterTransactions(
        receipts=sum((_value(c) for c in layout.revenue_codes), ZERO),
        expenses=tuple(expenses),
        misc_other_receivable=sum((_value(c) for c in layout.misc_codes), ZERO),
        vat_cleared={
            category: _detail(code, VAT_CLEARED)
            for category, code in layout.vat_codes.items()
            if _detail(code, VAT_CLEARED)
        },
        payable_cleared={
            code: _detail(code, PAYABLE_CLEARED)
            for code in layout.payable_codes
            if _detail(code, PAYABLE_CLEARED)
        },
        other_receivable_cleared=_detail(layout.other_receivable_code, OTHER_RECEIVABLE_CLEARED),
        prior_year_cash_adjustment=_detail(layout.cash_code, PRIOR_YEAR_ADJUSTMENT),
        prior_year_payable_adjustments={
            code: _detail(code, PRIOR_YEAR_ADJUSTMENT)
            for code in layout.payable_codes
            if _detail(code, PRIOR_YEAR_ADJUSTMENT)
        },
        prior_year_receivable_adjustment=_detail(
            layout.other_receivable_code, PRIOR_YEAR_ADJUSTMENT
        ),
    )


def closing_entry_values(
    layout: QuarterLayout,
    result: QuarterClose,
    quarter: Quarter,
) -> dict[str, Decimal | None]:
    """
    Quarter values of the derived activities.

    The accumulated surplus is carried in Q1 only, so the flow rule sums
    it exactly once.
    """
    state = result.state
    values: dict[str, Decimal | None] = {}
    if layout.cash_code:
        values[layout.cash_code] = state.cash
    for category, code in layout.vat_codes.items():
        values[code] = state.vat.get(category, ZERO)
    if layout.other_receivable_code:
        values[layout.other_receivable_code] = state.other_receivable
    for code in layout.payable_codes:
        values[code] = state.payables.get(code, ZERO)
    if layout.net_assets_code:
        values[layout.net_assets_code] = state.net_financial_assets
    if layout.accumulated_code:
        values[layout.accumulated_code] = (
            state.accumulated_surplus if quarter is Quarter.Q1 else None
        )
    if layout.pya_cash_code:
        values[layout.pya_cash_code] = result.prior_year_cash
    if layout.pya_payable_code:
        values[layout.pya_payable_code] = ZERO - result.prior_year_payable
    if layout.pya_receivable_code:
        values[layout.pya_receivable_code] = result.prior_year_receivable
    if layout.surplus_code:
        values[layout.surplus_code] = result.quarter_surplus
    return values
