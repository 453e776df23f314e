"""Allowance accounting package."""

from pulsekeeper.accounting.periods import (
    PeriodAccountant,
    PeriodConfigurationError,
    current_period_start,
)
from pulsekeeper.accounting.splitter import split_allocation

__all__ = [
    "PeriodAccountant",
    "PeriodConfigurationError",
    "current_period_start",
    "split_allocation",
]
