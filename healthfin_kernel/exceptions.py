"""
Typed Exception Hierarchy for the health financing statement engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Statement generation and quarterly execution updates are consumed by
report views, export jobs and batch recalculation.  Callers must be able
to tell a locked period from a bad amount without parsing messages:

    try:
        execution_service.update_execution(...)
    except PeriodLockedError as e:          # fatal until an admin unlocks
        return {"error": e.code, "period": e.reporting_period_id}
    except ValidationError as e:            # recoverable, field-level detail
        return {"error": e.code, "fields": e.field_errors}

Every exception carries:
  1. A TYPED class (catch by type, not message)
  2. A ``code`` class attribute (machine-readable, API-safe)
  3. Structured attributes (not just a message string)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    HealthFinError (base)
    |
    +-- ValidationError
    |
    +-- PeriodError
    |   +-- PeriodLockedError
    |   +-- ReportingPeriodNotFoundError
    |
    +-- LedgerError
    |   +-- InsufficientBalanceError
    |   +-- UnknownActivityError
    |
    +-- StatementError
    |   +-- StatementTemplateNotFoundError
    |   +-- FormulaError
    |   +-- SnapshotCorruptedError
    |   +-- ReportNotFoundError
    |
    +-- CatalogError
    |   +-- CatalogIntegrityError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- RecalculationError
        +-- RecalculationNotAllowedError

``UnmappedActivity`` is NOT an exception: it is a warning
record (see ``healthfin_engines.aggregation``).  Aggregation continues and
the affected line omits the contribution.

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Input           | VALIDATION_ERROR            | Bad numeric input, unknown field
----------------|-----------------------------|-----------------------------------------
Period          | PERIOD_LOCKED               | Write attempted on a locked period
                | REPORTING_PERIOD_NOT_FOUND  | Period id does not exist
----------------|-----------------------------|-----------------------------------------
Ledger          | INSUFFICIENT_BALANCE        | Clearing more than is outstanding
                | UNKNOWN_ACTIVITY            | Activity code not in catalog
----------------|-----------------------------|-----------------------------------------
Statement       | STATEMENT_TEMPLATE_NOT_FOUND| Unknown statement code
                | FORMULA_ERROR               | Formula outside the restricted grammar
                | SNAPSHOT_CORRUPTED          | Stored checksum != recomputed checksum
                | REPORT_NOT_FOUND            | No FinancialReport for the key
----------------|-----------------------------|-----------------------------------------
Catalog         | CATALOG_INTEGRITY_ERROR     | Mapping/template references broken
----------------|-----------------------------|-----------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Quarter modified by another writer
----------------|-----------------------------|-----------------------------------------
Recalculation   | RECALCULATION_NOT_ALLOWED   | Job abandoned or attempts exhausted

===============================================================================
HANDLING PATTERNS
===============================================================================

1. PeriodLockedError is never retried.  The lock is an administrative gate.

2. OptimisticLockError means another writer won the compare-and-swap on
   the quarter.  Reload, re-apply the edit, resubmit with the new version.

3. SnapshotCorruptedError is never auto-repaired.  The persisted report
   version must be investigated manually.

===============================================================================
"""

from decimal import Decimal


class HealthFinError(Exception):
    """
    Base exception for all health financing engine errors.

    All subclasses must have a `code` class attribute for
    machine-readable error identification.
    """

    code: str = "HEALTHFIN_ERROR"


# Input validation


class ValidationError(HealthFinError):
    """
    Input rejected at the boundary.

    Never raised for aggregation data quality issues -- those are
    recorded as warnings.  Carries one dict per offending field.
    """

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: list[dict] | None = None):
        self.field_errors = field_errors or []
        super().__init__(message)


# Period-related exceptions


class PeriodError(HealthFinError):
    """Base exception for reporting period errors."""

    code: str = "PERIOD_ERROR"


class PeriodLockedError(PeriodError):
    """Write attempted against a locked reporting period."""

    code: str = "PERIOD_LOCKED"

    def __init__(
        self,
        reporting_period_id: str,
        facility_id: str | None = None,
        project_type: str | None = None,
        operation: str | None = None,
    ):
        self.reporting_period_id = reporting_period_id
        self.facility_id = facility_id
        self.project_type = project_type
        self.operation = operation
        scope = f" (facility {facility_id})" if facility_id else ""
        super().__init__(
            f"Reporting period {reporting_period_id}{scope} is locked"
            + (f": {operation} rejected" if operation else "")
        )


class ReportingPeriodNotFoundError(PeriodError):
    """Reporting period with given id or year was not found."""

    code: str = "REPORTING_PERIOD_NOT_FOUND"

    def __init__(self, period_ref: str):
        self.period_ref = period_ref
        super().__init__(f"Reporting period not found: {period_ref}")


# Ledger-related exceptions


class LedgerError(HealthFinError):
    """Base exception for execution ledger errors."""

    code: str = "LEDGER_ERROR"


class InsufficientBalanceError(LedgerError):
    """
    Clearance exceeds the outstanding balance.

    Business-rule violation, recoverable by adjusting the input.
    ``max_allowable_amount`` is the largest amount that would succeed.
    """

    code: str = "INSUFFICIENT_BALANCE"

    def __init__(
        self,
        balance_code: str,
        requested: Decimal,
        available: Decimal,
    ):
        self.balance_code = balance_code
        self.requested = requested
        self.available = available
        self.max_allowable_amount = max(Decimal("0"), available)
        super().__init__(
            f"Insufficient balance on {balance_code}: "
            f"requested {requested}, outstanding {available}"
        )


class UnknownActivityError(LedgerError):
    """Activity code is not part of the active catalog."""

    code: str = "UNKNOWN_ACTIVITY"

    def __init__(self, activity_code: str):
        self.activity_code = activity_code
        super().__init__(f"Unknown activity code: {activity_code}")


# Statement-related exceptions


class StatementError(HealthFinError):
    """Base exception for statement generation errors."""

    code: str = "STATEMENT_ERROR"


class StatementTemplateNotFoundError(StatementError):
    """No template exists for the statement code."""

    code: str = "STATEMENT_TEMPLATE_NOT_FOUND"

    def __init__(self, statement_code: str):
        self.statement_code = statement_code
        super().__init__(f"Statement template not found: {statement_code}")


class FormulaError(StatementError):
    """
    Formula is outside the restricted grammar or cannot be evaluated.

    Only ``+ - * / ( )``, decimal literals, ``{line_X}`` and
    ``{event_N}`` placeholders are accepted.
    """

    code: str = "FORMULA_ERROR"

    def __init__(self, formula: str, reason: str, line_code: str | None = None):
        self.formula = formula
        self.reason = reason
        self.line_code = line_code
        where = f" in line {line_code}" if line_code else ""
        super().__init__(f"Invalid formula{where}: {reason} [{formula}]")


class SnapshotCorruptedError(StatementError):
    """
    Persisted snapshot checksum does not match its recomputed checksum.

    Fatal.  Never auto-repaired; requires manual investigation.
    """

    code: str = "SNAPSHOT_CORRUPTED"

    def __init__(
        self,
        report_id: str,
        version_number: int,
        stored_checksum: str,
        computed_checksum: str,
    ):
        self.report_id = report_id
        self.version_number = version_number
        self.stored_checksum = stored_checksum
        self.computed_checksum = computed_checksum
        super().__init__(
            f"Snapshot corrupted for report {report_id} v{version_number}: "
            f"stored {stored_checksum[:16]}... != computed {computed_checksum[:16]}..."
        )


class ReportNotFoundError(StatementError):
    """No financial report exists for the requested key."""

    code: str = "REPORT_NOT_FOUND"

    def __init__(self, report_ref: str):
        self.report_ref = report_ref
        super().__init__(f"Financial report not found: {report_ref}")


# Catalog-related exceptions


class CatalogError(HealthFinError):
    """Base exception for activity catalog errors."""

    code: str = "CATALOG_ERROR"


class CatalogIntegrityError(CatalogError):
    """
    Catalog failed referential integrity validation at load time.

    Carries every error found, not just the first.
    """

    code: str = "CATALOG_INTEGRITY_ERROR"

    def __init__(self, catalog_name: str, errors: list[str]):
        self.catalog_name = catalog_name
        self.errors = list(errors)
        super().__init__(
            f"Catalog '{catalog_name}' failed integrity validation "
            f"with {len(errors)} error(s): " + "; ".join(errors[:5])
        )


# Concurrency-related exceptions


class ConcurrencyError(HealthFinError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Recalculation-related exceptions


class RecalculationError(HealthFinError):
    """Base exception for cascade recalculation errors."""

    code: str = "RECALCULATION_ERROR"


class RecalculationNotAllowedError(RecalculationError):
    """Recalculation job cannot be (re)run."""

    code: str = "RECALCULATION_NOT_ALLOWED"

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Recalculation not allowed for job {job_id}: {reason}")
