"""Read-only selectors returning DTOs."""

from healthfin_kernel.selectors.execution_selector import ExecutionSelector
from healthfin_kernel.selectors.period_selector import PeriodSelector

__all__ = ["ExecutionSelector", "PeriodSelector"]
