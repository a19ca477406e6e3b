"""Kernel services: flush-only writers over the kernel models."""

from healthfin_kernel.services.ledger_service import (
    ExecutionLedgerService,
    compute_cumulative_balance,
)
from healthfin_kernel.services.period_service import PeriodService
from healthfin_kernel.services.recalculation_queue import RecalculationQueue
from healthfin_kernel.services.snapshot_service import SnapshotService

__all__ = [
    "ExecutionLedgerService",
    "PeriodService",
    "RecalculationQueue",
    "SnapshotService",
    "compute_cumulative_balance",
]
