"""Overdue fine arithmetic. Pure functions, no database access."""
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

CENTS = Decimal("0.01")


def days_overdue(due_date: datetime, settlement_date: datetime) -> int:
    """Whole days past `due_date`; a partial day does not count."""
    return max(0, (settlement_date - due_date).days)


def fine_amount(days: int, rate_per_day: Decimal) -> Decimal:
    if days < 0:
        raise ValueError("days must be >= 0")
    return (Decimal(days) * Decimal(rate_per_day)).quantize(CENTS, rounding=ROUND_HALF_UP)


def assess(due_date: datetime, settlement_date: datetime, rate_per_day: Decimal) -> Decimal:
    return fine_amount(days_overdue(due_date, settlement_date), rate_per_day)
