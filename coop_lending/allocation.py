"""
Payment Allocation Module

Pure planning functions for applying and reversing loan payments. The
planner reads snapshots of penalties and schedule rows and returns a plan;
it never mutates its inputs and never touches storage. The Loan Engine then
applies the plan inside a single unit of work.

Allocation order (strict FIFO):
    1. Outstanding penalties, oldest applied_date first
    2. Schedule rows by sequence, remaining interest before remaining principal
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .currency import Money, Currency, sum_money
from .errors import IntegrityViolationError, LoanValidationError


class ScheduleStatus(Enum):
    """Schedule row status"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class PenaltyAllocation:
    """Portion of a payment applied to one penalty"""
    penalty_id: str
    schedule_row_id: Optional[str]
    amount: Money
    settles: bool  # Penalty fully paid by this line


@dataclass(frozen=True)
class RowAllocation:
    """Portion of a payment applied to one schedule row"""
    row_id: str
    sequence: int
    interest_amount: Money
    principal_amount: Money
    settles: bool  # Row total_due fully covered after this line
    previous_status: ScheduleStatus

    @property
    def amount(self) -> Money:
        return self.interest_amount + self.principal_amount


@dataclass(frozen=True)
class AllocationPlan:
    """How a payment amount is split across obligations"""
    amount: Money
    penalty_lines: List[PenaltyAllocation]
    row_lines: List[RowAllocation]
    unallocated: Money

    @property
    def penalty_portion(self) -> Money:
        return sum_money((line.amount for line in self.penalty_lines), self.amount.currency)

    @property
    def interest_portion(self) -> Money:
        return sum_money((line.interest_amount for line in self.row_lines), self.amount.currency)

    @property
    def principal_portion(self) -> Money:
        return sum_money((line.principal_amount for line in self.row_lines), self.amount.currency)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data form stored on the payment record"""
        return {
            'currency': self.amount.currency.code,
            'amount': self.amount.minor,
            'unallocated': self.unallocated.minor,
            'penalties': [
                {
                    'penalty_id': line.penalty_id,
                    'schedule_row_id': line.schedule_row_id,
                    'amount': line.amount.minor,
                    'settles': line.settles,
                }
                for line in self.penalty_lines
            ],
            'rows': [
                {
                    'row_id': line.row_id,
                    'sequence': line.sequence,
                    'interest_amount': line.interest_amount.minor,
                    'principal_amount': line.principal_amount.minor,
                    'settles': line.settles,
                    'previous_status': line.previous_status.value,
                }
                for line in self.row_lines
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AllocationPlan':
        currency = Currency.from_code(data['currency'])
        return cls(
            amount=Money(data['amount'], currency),
            unallocated=Money(data['unallocated'], currency),
            penalty_lines=[
                PenaltyAllocation(
                    penalty_id=line['penalty_id'],
                    schedule_row_id=line.get('schedule_row_id'),
                    amount=Money(line['amount'], currency),
                    settles=line['settles'],
                )
                for line in data.get('penalties', [])
            ],
            row_lines=[
                RowAllocation(
                    row_id=line['row_id'],
                    sequence=line['sequence'],
                    interest_amount=Money(line['interest_amount'], currency),
                    principal_amount=Money(line['principal_amount'], currency),
                    settles=line['settles'],
                    previous_status=ScheduleStatus(line['previous_status']),
                )
                for line in data.get('rows', [])
            ],
        )


@dataclass(frozen=True)
class PenaltyRestore:
    """Values a penalty takes back when a payment is reversed"""
    penalty_id: str
    paid_amount: Money
    is_paid: bool


@dataclass(frozen=True)
class RowRestore:
    """Values a schedule row takes back when a payment is reversed"""
    row_id: str
    interest_paid: Money
    principal_paid: Money
    penalty_paid: Money
    total_paid: Money
    status: ScheduleStatus


@dataclass(frozen=True)
class ReversalPlan:
    penalty_restores: List[PenaltyRestore] = field(default_factory=list)
    row_restores: List[RowRestore] = field(default_factory=list)


def penalty_outstanding(penalty) -> Money:
    """Amount still owed on a penalty: net_penalty - paid_amount"""
    return penalty.net_penalty - penalty.paid_amount


def row_outstanding(row) -> Money:
    """Amount still owed on a schedule row: total_due - total_paid"""
    return row.total_due - row.total_paid


def total_obligations(penalties: Sequence, rows: Sequence, currency: Currency) -> Money:
    """Everything a payment could be applied to right now"""
    owed_penalties = sum_money(
        (penalty_outstanding(p) for p in penalties if not p.is_paid), currency
    )
    owed_rows = sum_money(
        (row_outstanding(r) for r in rows if r.status != ScheduleStatus.PAID), currency
    )
    return owed_penalties + owed_rows


def plan_allocation(amount: Money, penalties: Sequence, rows: Sequence) -> AllocationPlan:
    """
    Compute how a payment is applied, without side effects.

    Args:
        amount: Payment amount (must be positive)
        penalties: Penalty snapshots with id, schedule_row_id, applied_date,
            sequence, net_penalty, paid_amount, is_paid
        rows: Schedule row snapshots with id, sequence, interest_due,
            interest_paid, total_due, total_paid, status

    Returns:
        AllocationPlan; any amount left after every obligation is covered is
        reported as unallocated
    """
    if not amount.is_positive():
        raise LoanValidationError("Payment amount must be greater than zero")

    currency = amount.currency
    zero = Money.zero(currency)
    remaining = amount

    penalty_lines = []
    open_penalties = sorted(
        (p for p in penalties if not p.is_paid and penalty_outstanding(p).is_positive()),
        key=lambda p: (p.applied_date, p.sequence, p.id)
    )
    for penalty in open_penalties:
        if not remaining.is_positive():
            break
        due = penalty_outstanding(penalty)
        applied = min(remaining, due)
        penalty_lines.append(PenaltyAllocation(
            penalty_id=penalty.id,
            schedule_row_id=penalty.schedule_row_id,
            amount=applied,
            settles=applied >= due
        ))
        remaining = remaining - applied

    row_lines = []
    open_rows = sorted(
        (r for r in rows if r.status != ScheduleStatus.PAID and row_outstanding(r).is_positive()),
        key=lambda r: r.sequence
    )
    for row in open_rows:
        if not remaining.is_positive():
            break
        due = row_outstanding(row)
        applied = min(remaining, due)

        interest_remaining = max(row.interest_due - row.interest_paid, zero)
        interest_applied = min(applied, interest_remaining)
        principal_applied = applied - interest_applied

        row_lines.append(RowAllocation(
            row_id=row.id,
            sequence=row.sequence,
            interest_amount=interest_applied,
            principal_amount=principal_applied,
            settles=applied >= due,
            previous_status=row.status
        ))
        remaining = remaining - applied

    return AllocationPlan(
        amount=amount,
        penalty_lines=penalty_lines,
        row_lines=row_lines,
        unallocated=remaining
    )


def status_after_payment(row_line: RowAllocation) -> ScheduleStatus:
    """Row status once a line is applied; a partly paid overdue row stays overdue"""
    if row_line.settles:
        return ScheduleStatus.PAID
    if row_line.previous_status == ScheduleStatus.OVERDUE:
        return ScheduleStatus.OVERDUE
    return ScheduleStatus.PARTIAL


def _restored_row_status(row, line: RowAllocation, total_paid: Money) -> ScheduleStatus:
    if total_paid >= row.total_due:
        return ScheduleStatus.PAID
    if line.previous_status == ScheduleStatus.OVERDUE or row.status == ScheduleStatus.OVERDUE:
        return ScheduleStatus.OVERDUE
    if total_paid.is_positive():
        return ScheduleStatus.PARTIAL
    return ScheduleStatus.PENDING


def plan_reversal(payment_allocations: AllocationPlan, penalties: Sequence, rows: Sequence) -> ReversalPlan:
    """
    Compute the values that undo a payment's allocation.

    Every line is subtracted from the current running totals; if any total
    would go negative the stored state no longer matches the payment and the
    reversal is refused.

    Raises:
        IntegrityViolationError: A running total would become negative, or an
            allocated penalty/row no longer exists
    """
    penalties_by_id = {p.id: p for p in penalties}
    rows_by_id = {r.id: r for r in rows}

    # Penalty portions also count against their row's penalty_paid
    row_penalty_reversals: Dict[str, Money] = {}

    penalty_restores = []
    for line in payment_allocations.penalty_lines:
        penalty = penalties_by_id.get(line.penalty_id)
        if penalty is None:
            raise IntegrityViolationError(f"Penalty {line.penalty_id} allocated by payment no longer exists")
        paid_amount = penalty.paid_amount - line.amount
        if paid_amount.is_negative():
            raise IntegrityViolationError(
                f"Reversal would make paid amount of penalty {line.penalty_id} negative"
            )
        penalty_restores.append(PenaltyRestore(
            penalty_id=penalty.id,
            paid_amount=paid_amount,
            is_paid=not (penalty.net_penalty - paid_amount).is_positive()
        ))
        if line.schedule_row_id:
            previous = row_penalty_reversals.get(line.schedule_row_id, Money.zero(line.amount.currency))
            row_penalty_reversals[line.schedule_row_id] = previous + line.amount

    row_restores = []
    for line in payment_allocations.row_lines:
        row = rows_by_id.get(line.row_id)
        if row is None:
            raise IntegrityViolationError(f"Schedule row {line.row_id} allocated by payment no longer exists")
        interest_paid = row.interest_paid - line.interest_amount
        principal_paid = row.principal_paid - line.principal_amount
        penalty_paid = row.penalty_paid - row_penalty_reversals.pop(line.row_id, Money.zero(row.penalty_paid.currency))
        total_paid = row.total_paid - line.amount
        if any(value.is_negative() for value in (interest_paid, principal_paid, penalty_paid, total_paid)):
            raise IntegrityViolationError(
                f"Reversal would make paid amounts of schedule row {line.sequence} negative"
            )
        row_restores.append(RowRestore(
            row_id=row.id,
            interest_paid=interest_paid,
            principal_paid=principal_paid,
            penalty_paid=penalty_paid,
            total_paid=total_paid,
            status=_restored_row_status(row, line, total_paid)
        ))

    # Rows that only carried penalty portions of this payment
    for row_id, penalty_amount in row_penalty_reversals.items():
        row = rows_by_id.get(row_id)
        if row is None:
            continue
        penalty_paid = row.penalty_paid - penalty_amount
        if penalty_paid.is_negative():
            raise IntegrityViolationError(
                f"Reversal would make penalty paid of schedule row {row.sequence} negative"
            )
        row_restores.append(RowRestore(
            row_id=row.id,
            interest_paid=row.interest_paid,
            principal_paid=row.principal_paid,
            penalty_paid=penalty_paid,
            total_paid=row.total_paid,
            status=row.status
        ))

    return ReversalPlan(penalty_restores=penalty_restores, row_restores=row_restores)
