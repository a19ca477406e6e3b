"""
StatementService -- financial statement generation and approval snapshots.

Responsibility:
    Produces the five statements (REV_EXP, ASSETS_LIAB, CASH_FLOW,
    BUDGET_VS_ACTUAL, NET_ASSETS_CHANGES) for one facility or for every
    facility of a project in a fiscal year: aggregates execution entries
    into event buckets, renders the compiled template with the prior
    year as the comparative column, and serves the checksummed snapshot
    instead when the report is pending approval or approved.  Also
    validates the accounting equation of a facility.

Architecture position:
    Services -- imperative shell.
    Reads: ExecutionSelector, PeriodSelector.  Snapshots: SnapshotService.
    Calculation: healthfin_engines (aggregate, render,
    check_accounting_equation).

Invariants enforced:
    - Live statements are produced fresh for every call; nothing is
      cached between calls.
    - A served snapshot is checksum-verified first and never repaired.
    - ``is_outdated`` is True when the source data version recorded with
      the snapshot differs from the current one.
    - A period with no entries renders a zeroed line set.
    - The current column never depends on comparatives: cash flow
      changes and opening cash come from the prior year close, or from
      the declared Q1 openings when there is no prior year.

Failure modes:
    - StatementTemplateNotFoundError: unknown statement code.
    - ReportingPeriodNotFoundError: unknown period.
    - SnapshotCorruptedError: stored snapshot fails its checksum.
    - ValidationError: submitting a report that is already pending or
      approved.

Audit relevance:
    ``statement_generated`` records the source, outdated flag, warning
    count and catalog fingerprint; every statement's metadata carries the
    fingerprint of the catalog that rendered it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from healthfin_engines import (
    AccountingEquationResult,
    aggregate,
    check_accounting_equation,
    declared_opening_buckets,
    read_closing_state,
    render,
    with_opening_cash,
)
from healthfin_engines.templates import BUDGET_VS_ACTUAL
from healthfin_kernel.db.engine import get_session_factory
from healthfin_kernel.domain.catalog import ActivityCatalog
from healthfin_kernel.domain.clock import Clock, SystemClock
from healthfin_kernel.domain.dtos import ExecutionEntryData, Quarter, ReportingPeriodInfo
from healthfin_kernel.exceptions import StatementTemplateNotFoundError, ValidationError
from healthfin_kernel.logging_config import LogContext, get_logger
from healthfin_kernel.models.financial_report import ApprovalStatus, FinancialReport
from healthfin_kernel.selectors.execution_selector import ExecutionSelector
from healthfin_kernel.selectors.period_selector import PeriodSelector
from healthfin_kernel.services.snapshot_service import SnapshotService
from healthfin_services.config import StatementConfig
from healthfin_services.quarter_close_service import QuarterCloseService

logger = get_logger("services.statement")

SOURCE_LIVE = "live"
SOURCE_SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class StatementResult:
    """
    A generated statement.

    ``lines`` are JSON-native dicts (amounts as strings) so that live and
    snapshot results have the same shape.
    """

    statement_code: str
    name: str
    lines: list[dict[str, Any]]
    totals: dict[str, Decimal]
    metadata: dict[str, Any] = field(default_factory=dict)

    def line(self, line_code: str) -> dict[str, Any]:
        for line in self.lines:
            if line["metadata"]["line_code"] == line_code:
                return line
        raise KeyError(line_code)

    def value(self, line_code: str) -> Decimal:
        return Decimal(self.line(line_code)["current_period_value"])

    def previous_value(self, line_code: str) -> Decimal:
        return Decimal(self.line(line_code)["previous_period_value"])

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "statement_code": self.statement_code,
            "name": self.name,
            "lines": self.lines,
            "totals": {code: str(value) for code, value in self.totals.items()},
            "metadata": self.metadata,
        }


class StatementService:
    """
    Statement generation, approval snapshots and the equation check.

    Contract:
        ``generate_statement`` returns a StatementResult whose metadata
        has ``source`` (``live`` or ``snapshot``), ``is_outdated``,
        ``warnings``, ``generated_at`` and ``catalog_fingerprint``.

    Guarantees:
        - Read paths never write; only ``submit_for_approval`` does.
        - Clock is injectable for deterministic ``generated_at``.

    Non-goals:
        - Does NOT approve or reject reports; only their status is read.
        - Does NOT export documents.
    """

    def __init__(
        self,
        session: Session,
        catalog: ActivityCatalog,
        clock: Clock | None = None,
        config: StatementConfig | None = None,
        session_factory: Callable[[], Session] | None = None,
    ):
        self._session = session
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._config = config or StatementConfig.with_defaults()
        self._session_factory = session_factory
        self._executions = ExecutionSelector(session)
        self._periods = PeriodSelector(session)
        self._snapshots = SnapshotService(session, self._clock)
        self._closer = QuarterCloseService(session, catalog, self._clock)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_statement(
        self,
        statement_code: str,
        reporting_period_id: str | UUID,
        project_type: str,
        facility_id: str | UUID | None = None,
        include_comparatives: bool | None = None,
    ) -> StatementResult:
        """
        Generate one statement, or serve its approval snapshot.

        Args:
            statement_code: One of the compiled statement codes.
            reporting_period_id: Fiscal year to report.
            project_type: Project code or alias.
            facility_id: One facility; ``None`` aggregates every facility
                of the project.
            include_comparatives: Render the prior year column; defaults
                to the configured value.

        Raises:
            StatementTemplateNotFoundError: Unknown statement code.
            ReportingPeriodNotFoundError: Unknown period.
            SnapshotCorruptedError: Served snapshot fails its checksum.
        """
        statement_code = statement_code.upper()
        if statement_code not in self._catalog.statements:
            raise StatementTemplateNotFoundError(statement_code)
        project = self._catalog.resolve_project(project_type)
        period = self._periods.get_period(reporting_period_id)
        if include_comparatives is None:
            include_comparatives = self._config.include_comparatives

        with LogContext.bind(
            statement_code=statement_code,
            facility_id=str(facility_id) if facility_id else None,
            reporting_period_id=period.id,
        ):
            report = self._snapshots.find_report(
                statement_code, period.id, project, facility_id
            )
            if report is not None and report.serves_snapshot:
                result = self._from_snapshot(report, period, project, facility_id)
            else:
                result = self._render_live(
                    statement_code, period, project, facility_id, include_comparatives
                )

            logger.info(
                "statement_generated",
                extra={
                    "project_type": project,
                    "source": result.metadata["source"],
                    "is_outdated": result.metadata["is_outdated"],
                    "line_count": len(result.lines),
                    "warning_count": len(result.metadata.get("warnings", [])),
                    "catalog_fingerprint": self._catalog.fingerprint,
                },
            )
            return result

    def generate_statements_for_facilities(
        self,
        statement_code: str,
        reporting_period_id: str | UUID,
        project_type: str,
        facility_ids: Iterable[str | UUID] | None = None,
        include_comparatives: bool | None = None,
    ) -> dict[str, StatementResult]:
        """
        Generate one statement per facility in parallel.

        Each worker opens its own session from the session factory.
        Without ``facility_ids`` every facility with data is included.
        """
        project = self._catalog.resolve_project(project_type)
        if facility_ids is None:
            facility_ids = self._executions.facilities_with_data(reporting_period_id, project)
        ids = [str(f) for f in facility_ids]
        factory = self._session_factory or get_session_factory()

        def _one(facility_id: str) -> StatementResult:
            session = factory()
            try:
                service = StatementService(
                    session, self._catalog, self._clock, self._config, self._session_factory
                )
                return service.generate_statement(
                    statement_code,
                    reporting_period_id,
                    project,
                    facility_id,
                    include_comparatives,
                )
            finally:
                session.close()

        logger.info(
            "statement_fanout_started",
            extra={
                "statement_code": statement_code,
                "facility_count": len(ids),
                "max_workers": self._config.max_workers,
            },
        )
        with ThreadPoolExecutor(max_workers=self._config.max_workers) as pool:
            results = list(pool.map(_one, ids))
        return dict(zip(ids, results))

    def _entries(
        self,
        reporting_period_id: str,
        project_type: str,
        facility_id: str | UUID | None,
    ) -> list[ExecutionEntryData]:
        if facility_id is None:
            return self._executions.get_project_entries(reporting_period_id, project_type)
        return self._executions.get_execution_entries(
            facility_id, reporting_period_id, project_type
        )

    def _baseline(
        self,
        prior_buckets: dict[str, Decimal] | None,
        entries: list[ExecutionEntryData],
    ) -> dict[str, Decimal]:
        # a first year starts from its declared Q1 openings
        if prior_buckets is not None:
            return prior_buckets
        return declared_opening_buckets(catalog=self._catalog, entries=entries)

    def _render_live(
        self,
        statement_code: str,
        period: ReportingPeriodInfo,
        project: str,
        facility_id: str | UUID | None,
        include_comparatives: bool,
    ) -> StatementResult:
        entries = self._entries(period.id, project, facility_id)
        aggregation = aggregate(catalog=self._catalog, entries=entries)

        prior = self._periods.previous_period(period.id)
        prior_entries = self._entries(prior.id, project, facility_id) if prior else []
        prior_buckets = (
            aggregate(catalog=self._catalog, entries=prior_entries).buckets
            if prior_entries
            else None
        )
        baseline = self._baseline(prior_buckets, entries)

        previous_buckets = previous_baseline = None
        if include_comparatives and prior_buckets is not None:
            earlier = self._periods.previous_period(prior.id)
            earlier_entries = self._entries(earlier.id, project, facility_id) if earlier else []
            earlier_buckets = (
                aggregate(catalog=self._catalog, entries=earlier_entries).buckets
                if earlier_entries
                else None
            )
            previous_baseline = self._baseline(earlier_buckets, prior_entries)
            previous_buckets = with_opening_cash(prior_buckets, previous_baseline)

        budget_buckets = None
        if statement_code == BUDGET_VS_ACTUAL:
            budget_buckets = self._executions.budget_buckets(period.id, project, facility_id)

        rendered = render(
            statement_code,
            with_opening_cash(aggregation.buckets, baseline),
            previous_buckets,
            templates=self._catalog.statements,
            baseline_buckets=baseline,
            previous_baseline_buckets=previous_baseline,
            budget_buckets=budget_buckets,
            negative_format=self._config.negative_format,
            show_zero_values=self._config.show_zero_values,
        )

        warnings: list[dict[str, Any]] = [w.to_dict() for w in aggregation.warnings]
        warnings.extend({"message": message} for message in rendered.warnings)

        metadata = {
            "statement_code": statement_code,
            "reporting_period_id": period.id,
            "year": period.year,
            "project_type": project,
            "facility_id": str(facility_id) if facility_id else None,
            "source": SOURCE_LIVE,
            "is_outdated": False,
            "include_comparatives": previous_buckets is not None,
            "generated_at": self._clock.now().isoformat(),
            "catalog_fingerprint": self._catalog.fingerprint,
            "source_data_version": self._executions.source_data_version(
                period.id, project, facility_id
            ),
            "warnings": warnings,
            "skipped_entries": [s.to_dict() for s in aggregation.skipped],
        }
        return StatementResult(
            statement_code=statement_code,
            name=rendered.name,
            lines=[line.to_dict() for line in rendered.lines],
            totals=dict(rendered.totals),
            metadata=metadata,
        )

    def _from_snapshot(
        self,
        report: FinancialReport,
        period: ReportingPeriodInfo,
        project: str,
        facility_id: str | UUID | None,
    ) -> StatementResult:
        version = self._snapshots.latest_version(report)
        snapshot = self._snapshots.verify(version)

        current_source = self._executions.source_data_version(period.id, project, facility_id)
        is_outdated = current_source != version.source_data_version
        if is_outdated:
            logger.warning(
                "statement_snapshot_outdated",
                extra={
                    "report_id": str(report.id),
                    "version_number": version.version_number,
                },
            )

        metadata = dict(snapshot.get("metadata") or {})
        metadata.update(
            source=SOURCE_SNAPSHOT,
            is_outdated=is_outdated,
            approval_status=ApprovalStatus(report.approval_status).value,
            snapshot_version=version.version_number,
            snapshot_checksum=version.checksum,
            captured_at=version.captured_at.isoformat(),
        )
        return StatementResult(
            statement_code=snapshot["statement_code"],
            name=snapshot["name"],
            lines=list(snapshot["lines"]),
            totals={code: Decimal(value) for code, value in snapshot["totals"].items()},
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Approval snapshot
    # ------------------------------------------------------------------

    def submit_for_approval(
        self,
        statement_code: str,
        reporting_period_id: str | UUID,
        project_type: str,
        actor_id: UUID,
        facility_id: str | UUID | None = None,
    ) -> StatementResult:
        """
        Capture a snapshot of the live statement and mark it pending.

        Raises:
            ValidationError: The report is already pending or approved.
        """
        statement_code = statement_code.upper()
        if statement_code not in self._catalog.statements:
            raise StatementTemplateNotFoundError(statement_code)
        project = self._catalog.resolve_project(project_type)
        period = self._periods.get_period(reporting_period_id)

        report = self._snapshots.get_or_create_report(
            statement_code, period.id, project, actor_id, facility_id
        )
        if report.serves_snapshot:
            status = ApprovalStatus(report.approval_status).value
            raise ValidationError(
                f"Report is already {status}",
                field_errors=[{"field": "approval_status", "message": status}],
            )

        result = self._render_live(
            statement_code, period, project, facility_id, self._config.include_comparatives
        )
        version = self._snapshots.save_report_version(
            report, result.to_snapshot(), result.metadata["source_data_version"], actor_id
        )
        self._snapshots.set_status(report, ApprovalStatus.PENDING_APPROVAL, actor_id)

        logger.info(
            "statement_submitted_for_approval",
            extra={
                "statement_code": statement_code,
                "report_id": str(report.id),
                "version_number": version.version_number,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Accounting equation
    # ------------------------------------------------------------------

    def validate_accounting_equation(
        self,
        facility_id: str | UUID,
        reporting_period_id: str | UUID,
        project_type: str,
        quarter: Quarter | str | int | None = None,
    ) -> AccountingEquationResult:
        """
        Check D - E == G at the close of a quarter.

        Without ``quarter`` the latest quarter with data is checked.
        """
        project = self._catalog.resolve_project(project_type)
        self._periods.get_period(reporting_period_id)
        layout = self._closer.layout_for(facility_id, project)

        if quarter is None:
            quarters = self._closer.quarters_with_data(facility_id, reporting_period_id, project)
            quarter = quarters[-1] if quarters else Quarter.Q4
        else:
            try:
                quarter = Quarter.from_value(quarter)
            except ValueError as exc:
                raise ValidationError(
                    str(exc), field_errors=[{"field": "quarter", "message": str(exc)}]
                ) from None

        entries = self._closer.entries_by_code(facility_id, reporting_period_id, project)
        state = read_closing_state(layout, entries, quarter)
        result = check_accounting_equation(
            state.financial_assets,
            state.financial_liabilities,
            state.closing_balance,
            self._config.equation_tolerance,
        )

        log = logger.info if result.is_balanced else logger.warning
        log(
            "accounting_equation_checked",
            extra={
                "project_type": project,
                "quarter": quarter.value,
                "is_balanced": result.is_balanced,
                "difference": str(result.difference),
            },
        )
        return result
