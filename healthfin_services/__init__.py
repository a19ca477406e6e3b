"""
healthfin_services -- Package init and public API.

Responsibility:
    Stateful orchestration services that compose the pure calculation
    engines (healthfin_engines/) with database sessions, the activity
    catalog and the clock.  This is the only layer that holds sessions
    and reads wall-clock time.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        healthfin_services/ -> healthfin_engines/  (allowed)
        healthfin_services/ -> healthfin_kernel/   (allowed)
        healthfin_services/ -> healthfin_config/   (allowed)
        healthfin_engines/  -> healthfin_services/ (FORBIDDEN)
        healthfin_kernel/   -> healthfin_services/ (FORBIDDEN)

Invariants enforced:
    - Services flush; the caller's ``session_scope`` commits.

Audit relevance:
    This package is the import surface for external consumers.
"""

from healthfin_kernel.logging_config import get_logger

logger = get_logger("services")

from healthfin_services.adjustment_service import AdjustmentOutcome, AdjustmentService
from healthfin_services.config import StatementConfig
from healthfin_services.execution_service import ExecutionService
from healthfin_services.quarter_close_service import CloseOutcome, QuarterCloseService
from healthfin_services.recalculation_worker import RecalculationWorker, SweepSummary
from healthfin_services.rollover_service import RolloverService
from healthfin_services.statement_service import StatementResult, StatementService

__all__ = [
    "AdjustmentOutcome",
    "AdjustmentService",
    "CloseOutcome",
    "ExecutionService",
    "QuarterCloseService",
    "RecalculationWorker",
    "RolloverService",
    "StatementConfig",
    "StatementResult",
    "StatementService",
    "SweepSummary",
]
