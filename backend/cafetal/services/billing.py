"""Billing-cycle date arithmetic.

Month arithmetic clamps to the last day of the target month, so a
subscription started on the 31st keeps billing on the last day of
shorter months:

    add_billing_cycle(date(2024, 1, 31), "monthly")  → 2024-02-29
    add_billing_cycle(date(2024, 2, 29), "yearly")   → 2025-02-28
"""

from datetime import date

from dateutil.relativedelta import relativedelta

from cafetal.middleware.exceptions import InvalidArgumentError
from cafetal.models.subscription import BILLING_CYCLES

_CYCLE_DELTAS = {
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "yearly": relativedelta(years=1),
}

# Months of revenue per billing period, used to normalise to MRR
CYCLE_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


def validate_cycle(cycle: str) -> str:
    if cycle not in BILLING_CYCLES:
        raise InvalidArgumentError(
            f"Unsupported billing cycle '{cycle}'. Use one of: {', '.join(BILLING_CYCLES)}",
            field="billing_cycle",
        )
    return cycle


def add_billing_cycle(start: date, cycle: str) -> date:
    """Return the date one billing cycle after ``start``."""
    return start + _CYCLE_DELTAS[validate_cycle(cycle)]
