"""Domain models for the health financing kernel."""

from healthfin_kernel.models.budget import BudgetAllocation
from healthfin_kernel.models.execution import (
    ExecutionEntry,
    ExecutionQuarter,
    QuarterStatus,
)
from healthfin_kernel.models.facility import Facility, FacilityType
from healthfin_kernel.models.financial_report import (
    SNAPSHOT_STATUSES,
    ApprovalStatus,
    FinancialReport,
    ReportVersion,
)
from healthfin_kernel.models.recalculation import (
    VALID_TRANSITIONS,
    JobStatus,
    RecalculationJob,
)
from healthfin_kernel.models.reporting_period import (
    LockAction,
    PeriodLock,
    PeriodLockAudit,
    PeriodStatus,
    ReportingPeriod,
)


__all__ = [
    "ApprovalStatus",
    "BudgetAllocation",
    "ExecutionEntry",
    "ExecutionQuarter",
    "Facility",
    "FacilityType",
    "FinancialReport",
    "JobStatus",
    "LockAction",
    "PeriodLock",
    "PeriodLockAudit",
    "PeriodStatus",
    "QuarterStatus",
    "RecalculationJob",
    "ReportVersion",
    "ReportingPeriod",
    "SNAPSHOT_STATUSES",
    "VALID_TRANSITIONS",
]
