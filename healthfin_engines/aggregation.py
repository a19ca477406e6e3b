"""
Data Aggregation Engine -- execution entries into event buckets.

Responsibility:
    Fold facility execution entries into ``{event_code: Decimal}`` buckets
    through the catalog's activity/event adjacency.  Stock sections
    contribute their balance, flow sections their quarter sum.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Consumes ActivityCatalog and ExecutionEntryData from healthfin_kernel.

Invariants enforced:
    - D and E contribute ``cumulative_balance`` (or, with ``as_of``, the
      latest balance entered up to that quarter).  Never a quarter sum.
    - A, B, G and X contribute ``q1 + q2 + q3 + q4`` over entered quarters.
    - F is derived and total rows are display-only; neither contributes.
    - Zero contributions are still bucketed so the event exists.
    - Fan-out (one activity, many events) and fan-in are both legal.

Failure modes:
    - Never raises for bad entries: unknown activity codes, codes without
      a section and non-numeric amounts are skipped with a reason.
    - Unmapped reported activities produce UnmappedActivity warnings and
      a WARNING log record; aggregation continues.

Audit relevance:
    Every invocation emits HEALTHFIN_ENGINE_TRACE.  Skips and warnings are
    returned to the caller and surfaced in statement metadata.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from healthfin_kernel.domain.catalog import ActivityCatalog, extract_section
from healthfin_kernel.domain.dtos import ExecutionEntryData, Quarter, Section
from healthfin_kernel.logging_config import get_logger
from healthfin_engines.quarter_close import OPENING
from healthfin_engines.tracer import traced_engine

logger = get_logger("engines.aggregation")

ZERO = Decimal("0")

CASH_CLOSING_EVENT = "CASH_EQUIVALENTS_END"
CASH_OPENING_EVENT = "CASH_EQUIVALENTS_BEGIN"


@dataclass(frozen=True)
class UnmappedActivity:
    """Warning record: a reported activity with no event mapping."""

    activity_code: str
    facility_id: str
    amount: Decimal
    message: str = "Activity has no event mapping"

    def to_dict(self) -> dict[str, str]:
        return {
            "activity_code": self.activity_code,
            "facility_id": self.facility_id,
            "amount": str(self.amount),
            "message": self.message,
        }


@dataclass(frozen=True)
class SkippedEntry:
    """An entry left out of aggregation, with the reason."""

    activity_code: str
    facility_id: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {
            "activity_code": self.activity_code,
            "facility_id": self.facility_id,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AggregationResult:
    buckets: dict[str, Decimal] = field(default_factory=dict)
    warnings: tuple[UnmappedActivity, ...] = ()
    skipped: tuple[SkippedEntry, ...] = ()

    def bucket(self, event_code: str) -> Decimal:
        return self.buckets.get(event_code, ZERO)


class MalformedAmountError(ValueError):
    """An entry amount is not a finite number."""


def _to_decimal(value: object) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedAmountError(f"boolean amount {value!r}")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise MalformedAmountError(f"non-numeric amount {value!r}") from None
    if not result.is_finite():
        raise MalformedAmountError(f"non-finite amount {value!r}")
    return result


def entry_contribution(
    entry: ExecutionEntryData,
    section: Section,
    as_of: Quarter | None = None,
) -> Decimal:
    """
    Amount an entry contributes to each of its events.

    Raises:
        MalformedAmountError: a quarter or balance is not numeric.
    """
    quarters = Quarter.ordered()
    if as_of is not None:
        quarters = quarters[: as_of.number]
    values = [(q, _to_decimal(entry.quarter_value(q))) for q in quarters]

    if section.is_stock:
        if as_of is None:
            balance = _to_decimal(entry.cumulative_balance)
            if balance is not None:
                return balance
        entered = [v for _, v in values if v is not None]
        return entered[-1] if entered else ZERO

    return sum((v for _, v in values if v is not None), ZERO)


@traced_engine("aggregation", "1.0", fingerprint_fields=("as_of",))
def aggregate(
    *,
    catalog: ActivityCatalog,
    entries: Iterable[ExecutionEntryData],
    as_of: Quarter | None = None,
) -> AggregationResult:
    """
    Aggregate execution entries into event buckets.

    Args:
        catalog: Compiled catalog carrying the adjacency.
        entries: Execution entries (any number of facilities).
        as_of: Optional quarter bound; flows sum up to it and stocks take
            the latest balance up to it.
    """
    buckets: dict[str, Decimal] = {}
    warnings: list[UnmappedActivity] = []
    skipped: list[SkippedEntry] = []

    for entry in entries:
        code = entry.activity_code
        section = extract_section(code)
        if section is None:
            skipped.append(SkippedEntry(code, entry.facility_id, "no section in activity code"))
            continue
        if not catalog.has_activity(code):
            skipped.append(SkippedEntry(code, entry.facility_id, "unknown activity"))
            continue

        activity = catalog.get_activity(code)
        if section is Section.F or activity.is_total_row:
            continue

        try:
            amount = entry_contribution(entry, section, as_of)
        except MalformedAmountError as exc:
            skipped.append(SkippedEntry(code, entry.facility_id, str(exc)))
            continue

        events = catalog.events_for(code)
        if not events:
            if activity.reported:
                warning = UnmappedActivity(code, entry.facility_id, amount)
                warnings.append(warning)
                logger.warning(
                    "statement_unmapped_activity",
                    extra={
                        "activity_code": code,
                        "facility_id": entry.facility_id,
                        "amount": str(amount),
                    },
                )
            continue

        for event_code in sorted(events):
            buckets[event_code] = buckets.get(event_code, ZERO) + amount

    if skipped:
        logger.info(
            "aggregation_entries_skipped",
            extra={"skipped_count": len(skipped)},
        )

    return AggregationResult(
        buckets=buckets,
        warnings=tuple(warnings),
        skipped=tuple(skipped),
    )


@traced_engine("opening_balances", "1.0")
def declared_opening_buckets(
    *,
    catalog: ActivityCatalog,
    entries: Iterable[ExecutionEntryData],
) -> dict[str, Decimal]:
    """
    Q1 declared opening balances folded into event buckets.

    Only D and E carry a declared opening.  This is the baseline of a
    fiscal year with no prior year on record; without declarations every
    bucket is zero.
    """
    buckets: dict[str, Decimal] = {}
    for entry in entries:
        code = entry.activity_code
        section = extract_section(code)
        if section is None or not section.is_stock or not catalog.has_activity(code):
            continue
        if catalog.get_activity(code).is_total_row:
            continue
        try:
            amount = _to_decimal(entry.details_for(Quarter.Q1).get(OPENING))
        except MalformedAmountError:
            continue
        if amount is None:
            continue
        for event_code in sorted(catalog.events_for(code)):
            buckets[event_code] = buckets.get(event_code, ZERO) + amount
    return buckets


def with_opening_cash(
    buckets: dict[str, Decimal],
    baseline: dict[str, Decimal],
) -> dict[str, Decimal]:
    """Copy of ``buckets`` whose opening cash is the baseline's closing cash."""
    merged = dict(buckets)
    merged[CASH_OPENING_EVENT] = baseline.get(CASH_CLOSING_EVENT, ZERO)
    return merged
