"""
Penalty Computation Module

Pure functions for overdue penalty classification and amount computation.

    penalty = round_half_up(outstanding x rate x days_overdue / 30)

where outstanding is the schedule row's unpaid amount (total_due - total_paid)
and rate is the product's penalty rate per 30 days, raised by any penalty tier
the row has reached.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from enum import Enum
from typing import Optional, Union

from .currency import Money
from .errors import LoanValidationError

DAYS_PER_PENALTY_PERIOD = 30
DEFAULT_NON_PAYMENT_THRESHOLD_DAYS = 30


class PenaltyType(Enum):
    """Penalty classification by days overdue"""
    LATE_PAYMENT = "late_payment"
    NON_PAYMENT = "non_payment"


def days_overdue(due_date: date, as_of_date: date) -> int:
    """Whole days between due date and as-of date; zero when not yet due"""
    return max((as_of_date - due_date).days, 0)


def classify_penalty(days_overdue: int, threshold_days: int = DEFAULT_NON_PAYMENT_THRESHOLD_DAYS) -> PenaltyType:
    """late_payment below the threshold, non_payment at or above it"""
    if days_overdue < threshold_days:
        return PenaltyType.LATE_PAYMENT
    return PenaltyType.NON_PAYMENT


def select_penalty_rate(product, days_overdue: int, default_rate: Optional[Decimal] = None) -> Decimal:
    """
    Rate for a row overdue by `days_overdue`.

    The highest-threshold tier the row has reached wins; without a matching
    tier the product's base penalty_rate applies (or `default_rate` when no
    product is given).
    """
    if product is None:
        if default_rate is None:
            raise LoanValidationError("A penalty rate is required when no product is given")
        return Decimal(str(default_rate))

    applicable = [tier for tier in product.penalty_tiers if tier.applies_to(days_overdue)]
    if applicable:
        return max(applicable, key=lambda tier: tier.min_days_overdue).rate
    return product.penalty_rate


def compute_penalty_amount(outstanding: Money, rate: Union[Decimal, str], days_overdue: int) -> Money:
    """Gross penalty for an unpaid amount; zero when nothing is owed or not yet overdue"""
    rate = Decimal(str(rate))
    if rate < 0:
        raise LoanValidationError("Penalty rate cannot be negative")
    if not outstanding.is_positive() or days_overdue <= 0:
        return Money.zero(outstanding.currency)

    factor = rate * Decimal(days_overdue) / Decimal(DAYS_PER_PENALTY_PERIOD)
    return outstanding.apply_rate(factor, rounding=ROUND_HALF_UP)


def penalty_id(loan_id: str, sequence: int, applied_date: date) -> str:
    """Natural key: one penalty per loan, schedule row and accrual date"""
    return f"PEN-{loan_id}-{sequence:04d}-{applied_date.isoformat()}"
