"""
Statement service configuration.

Display options for rendered statements and the operational limits of
the services: accounting equation tolerance, recalculation sweep size
and the worker count used when generating statements for many
facilities.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Self

from healthfin_kernel.logging_config import get_logger

logger = get_logger("services.config")

NEGATIVE_FORMATS = ("parentheses", "minus")


@dataclass
class StatementConfig:
    """
    Configuration schema for statement generation and recalculation.
    """

    # |(D - E) - G| at or below this is balanced
    equation_tolerance: Decimal = Decimal("0.01")

    # Jobs claimed per recalculation sweep
    sweep_limit: int = 100

    # Threads used by generate_statements_for_facilities
    max_workers: int = 4

    # Negative amounts: "(1200.00)" or "-1200.00"
    negative_format: str = "parentheses"

    # Zero shows "0" when True, "-" when False
    show_zero_values: bool = True

    # Render the previous fiscal year as the comparative column
    include_comparatives: bool = True

    def __post_init__(self):
        if not isinstance(self.equation_tolerance, Decimal):
            self.equation_tolerance = Decimal(str(self.equation_tolerance))
        if self.equation_tolerance < 0:
            raise ValueError("equation_tolerance cannot be negative")
        if self.sweep_limit < 1:
            raise ValueError("sweep_limit must be at least 1")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.negative_format not in NEGATIVE_FORMATS:
            raise ValueError(
                f"negative_format must be one of {NEGATIVE_FORMATS}, "
                f"got {self.negative_format!r}"
            )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with standard defaults."""
        logger.info("statement_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Self:
        """Create config from dictionary."""
        logger.info(
            "statement_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        return cls(**data)
