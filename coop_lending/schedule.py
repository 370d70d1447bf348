"""
Schedule Calculator Module

Pure, stateless amortization functions for diminishing-balance loans.
Nothing in this module touches storage; the Loan Engine calls it only when a
loan is applied for (and for previews/quotes).

All amounts are Money in integer minor units; rates are Decimal per period.
"""

from decimal import Decimal, ROUND_CEILING
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Sequence, Union
from enum import Enum
import calendar

from .currency import Money, sum_money
from .errors import LoanValidationError


class PaymentInterval(Enum):
    """Installment spacing"""
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    SEMI_MONTHLY = "semi_monthly"


# Installments per month of term
PERIODS_PER_MONTH = {
    PaymentInterval.MONTHLY: 1,
    PaymentInterval.WEEKLY: 4,
    PaymentInterval.SEMI_MONTHLY: 2,
}

# Exponents used when converting a monthly rate to an equivalent periodic rate
_RATE_EXPONENTS = {
    PaymentInterval.MONTHLY: Decimal('1'),
    PaymentInterval.WEEKLY: Decimal('1') / Decimal('4.33'),
    PaymentInterval.SEMI_MONTHLY: Decimal('1') / Decimal('2'),
}

_SEMI_MONTHLY_DAYS = 15


@dataclass(frozen=True)
class ScheduleEntry:
    """Single computed installment"""
    sequence: int
    due_date: date
    beginning_balance: Money
    principal_due: Money
    interest_due: Money
    total_due: Money
    ending_balance: Money


@dataclass(frozen=True)
class ScheduleResult:
    """Full computed schedule with its totals"""
    rows: List[ScheduleEntry]
    total_interest: Money
    total_payable: Money
    installment: Money

    @property
    def period_count(self) -> int:
        return len(self.rows)


def _to_rate(rate: Union[Decimal, str, int]) -> Decimal:
    if isinstance(rate, float):
        raise LoanValidationError("Interest rate must be a Decimal or string, not float")
    if not isinstance(rate, Decimal):
        rate = Decimal(str(rate))
    return rate


def _to_interval(interval: Union[PaymentInterval, str]) -> PaymentInterval:
    if isinstance(interval, PaymentInterval):
        return interval
    try:
        return PaymentInterval(interval)
    except ValueError:
        raise LoanValidationError(f"Unsupported payment interval: {interval}")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def resolve_period_count(term_months: int, interval: Union[PaymentInterval, str]) -> int:
    """Number of installments for a term: monthly x1, semi-monthly x2, weekly x4"""
    if term_months <= 0:
        raise LoanValidationError("Term months must be greater than zero")
    return term_months * PERIODS_PER_MONTH[_to_interval(interval)]


def equivalent_periodic_rate(monthly_rate: Union[Decimal, str], interval: Union[PaymentInterval, str]) -> Decimal:
    """
    Convert a monthly rate to the compounding-equivalent rate for the interval.

    weekly: (1 + r) ** (1 / 4.33) - 1, semi-monthly: (1 + r) ** (1 / 2) - 1.
    The calculator never applies this on its own; callers decide which rate
    is charged per installment.
    """
    rate = _to_rate(monthly_rate)
    interval = _to_interval(interval)
    if interval == PaymentInterval.MONTHLY:
        return rate
    return (Decimal('1') + rate) ** _RATE_EXPONENTS[interval] - Decimal('1')


def compute_installment(principal: Money, rate: Union[Decimal, str], periods: int) -> Money:
    """
    Level installment A = P * r / (1 - (1 + r) ** -n), rounded up to a minor unit.

    Rounding up keeps every non-final row paying at least the exact level
    amount, so drift can only accumulate as a small final-row reduction.
    """
    rate = _to_rate(rate)
    if not principal.is_positive():
        raise LoanValidationError("Principal must be greater than zero")
    if rate <= 0:
        raise LoanValidationError("Interest rate must be greater than zero")
    if periods <= 0:
        raise LoanValidationError("Number of periods must be greater than zero")

    factor = (Decimal('1') + rate) ** periods
    exact = Decimal(principal.minor) * rate * factor / (factor - Decimal('1'))
    return Money(int(exact.to_integral_value(rounding=ROUND_CEILING)), principal.currency)


def get_due_dates(first_date: date, period_count: int, interval: Union[PaymentInterval, str]) -> List[date]:
    """
    Ordered due dates starting at first_date.

    Monthly dates are computed from first_date (not chained), so a loan that
    starts on the 31st returns to the 31st whenever the month allows it.
    """
    interval = _to_interval(interval)
    if period_count <= 0:
        raise LoanValidationError("Number of periods must be greater than zero")

    if interval == PaymentInterval.MONTHLY:
        return [add_months(first_date, i) for i in range(period_count)]
    step = timedelta(days=7 if interval == PaymentInterval.WEEKLY else _SEMI_MONTHLY_DAYS)
    return [first_date + step * i for i in range(period_count)]


def compute_schedule(
    principal: Money,
    periodic_rate: Union[Decimal, str],
    term_months: int,
    first_due_date: date,
    interval: Union[PaymentInterval, str] = PaymentInterval.MONTHLY
) -> ScheduleResult:
    """
    Build a diminishing-balance repayment schedule.

    Args:
        principal: Loan principal
        periodic_rate: Rate charged per installment, applied unchanged to every row
        term_months: Term length in months
        first_due_date: Due date of the first installment
        interval: Installment spacing

    Returns:
        ScheduleResult whose last row ends at exactly zero

    Raises:
        LoanValidationError: Non-positive principal, rate or term
    """
    rate = _to_rate(periodic_rate)
    if not principal.is_positive():
        raise LoanValidationError("Principal must be greater than zero")
    if rate <= 0:
        raise LoanValidationError("Interest rate must be greater than zero")

    periods = resolve_period_count(term_months, interval)
    installment = compute_installment(principal, rate, periods)
    due_dates = get_due_dates(first_due_date, periods, interval)
    currency = principal.currency

    rows = []
    balance = principal
    for i in range(periods):
        sequence = i + 1
        interest_due = balance.apply_rate(rate)

        if sequence == periods:
            # Final row takes whatever principal remains
            principal_due = balance
        else:
            # Repay at least one minor unit, but leave one for every later row
            ceiling = max(balance - Money(periods - sequence, currency), Money.zero(currency))
            principal_due = min(max(installment - interest_due, Money(1, currency)), ceiling)

        ending_balance = balance - principal_due
        rows.append(ScheduleEntry(
            sequence=sequence,
            due_date=due_dates[i],
            beginning_balance=balance,
            principal_due=principal_due,
            interest_due=interest_due,
            total_due=principal_due + interest_due,
            ending_balance=ending_balance
        ))
        balance = ending_balance

    total_interest = sum_money((row.interest_due for row in rows), currency)
    return ScheduleResult(
        rows=rows,
        total_interest=total_interest,
        total_payable=principal + total_interest,
        installment=installment
    )


def validate_schedule(rows: Sequence, principal: Money, tolerance: int = 1) -> bool:
    """True when the principal_due column sums to principal within `tolerance` minor units"""
    total_principal = sum(row.principal_due.minor for row in rows)
    return abs(total_principal - principal.minor) <= tolerance
