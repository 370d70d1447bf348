"""
Test suite for allocation module

Tests the side-effect-free payment planner: FIFO ordering of penalties and
schedule rows, interest-before-principal within a row, status derivation and
exact reversal planning.
"""

import pytest
from datetime import date
from types import SimpleNamespace

from coop_lending.currency import Money, Currency
from coop_lending.errors import IntegrityViolationError, LoanValidationError
from coop_lending.allocation import (
    AllocationPlan, RowAllocation, ScheduleStatus, plan_allocation, plan_reversal,
    status_after_payment, total_obligations
)


def php(minor):
    return Money(minor, Currency.PHP)


def make_row(sequence, interest_due, principal_due, interest_paid=0, principal_paid=0,
             status=ScheduleStatus.PENDING, penalty_paid=0):
    return SimpleNamespace(
        id=f"loan-1_{sequence}",
        sequence=sequence,
        interest_due=php(interest_due),
        principal_due=php(principal_due),
        total_due=php(interest_due + principal_due),
        interest_paid=php(interest_paid),
        principal_paid=php(principal_paid),
        penalty_paid=php(penalty_paid),
        total_paid=php(interest_paid + principal_paid),
        status=status
    )


def make_penalty(penalty_id, sequence, applied_date, net_penalty, paid_amount=0, is_paid=False):
    return SimpleNamespace(
        id=penalty_id,
        schedule_row_id=f"loan-1_{sequence}",
        sequence=sequence,
        applied_date=applied_date,
        net_penalty=php(net_penalty),
        paid_amount=php(paid_amount),
        is_paid=is_paid
    )


class TestPlanAllocation:
    """FIFO allocation ordering"""

    def setup_method(self):
        self.rows = [
            make_row(1, 1_500, 8_500),
            make_row(2, 1_200, 8_800),
            make_row(3, 900, 9_100),
        ]

    def test_exact_first_row(self):
        plan = plan_allocation(php(10_000), [], self.rows)

        assert len(plan.row_lines) == 1
        line = plan.row_lines[0]
        assert line.row_id == "loan-1_1"
        assert line.interest_amount == php(1_500)
        assert line.principal_amount == php(8_500)
        assert line.settles
        assert plan.unallocated.is_zero()

    def test_interest_before_principal(self):
        plan = plan_allocation(php(1_000), [], self.rows)

        line = plan.row_lines[0]
        assert line.interest_amount == php(1_000)
        assert line.principal_amount.is_zero()
        assert not line.settles
        assert plan.interest_portion == php(1_000)
        assert plan.principal_portion.is_zero()

    def test_spills_into_next_row(self):
        plan = plan_allocation(php(12_000), [], self.rows)

        assert [line.sequence for line in plan.row_lines] == [1, 2]
        second = plan.row_lines[1]
        assert second.interest_amount == php(1_200)
        assert second.principal_amount == php(800)
        assert not second.settles

    def test_partly_paid_row_continues_with_principal(self):
        rows = [make_row(1, 1_500, 8_500, interest_paid=1_500, principal_paid=500,
                         status=ScheduleStatus.PARTIAL)]
        plan = plan_allocation(php(3_000), [], rows)

        line = plan.row_lines[0]
        assert line.interest_amount.is_zero()
        assert line.principal_amount == php(3_000)

    def test_paid_rows_skipped(self):
        self.rows[0] = make_row(1, 1_500, 8_500, interest_paid=1_500, principal_paid=8_500,
                                status=ScheduleStatus.PAID)
        plan = plan_allocation(php(500), [], self.rows)

        assert plan.row_lines[0].sequence == 2

    def test_penalties_settled_first_oldest_first(self):
        penalties = [
            make_penalty("PEN-b", 2, date(2026, 3, 10), 400),
            make_penalty("PEN-a", 1, date(2026, 2, 10), 300),
        ]
        plan = plan_allocation(php(1_000), penalties, self.rows)

        assert [line.penalty_id for line in plan.penalty_lines] == ["PEN-a", "PEN-b"]
        assert all(line.settles for line in plan.penalty_lines)
        assert plan.penalty_portion == php(700)
        assert plan.row_lines[0].interest_amount == php(300)

    def test_partially_paid_penalty(self):
        penalties = [make_penalty("PEN-a", 1, date(2026, 2, 10), 300, paid_amount=100)]
        plan = plan_allocation(php(150), penalties, self.rows)

        line = plan.penalty_lines[0]
        assert line.amount == php(150)
        assert not line.settles
        assert plan.row_lines == []

    def test_paid_and_fully_waived_penalties_skipped(self):
        penalties = [
            make_penalty("PEN-paid", 1, date(2026, 2, 10), 300, paid_amount=300, is_paid=True),
            make_penalty("PEN-waived", 1, date(2026, 2, 11), 0),
        ]
        plan = plan_allocation(php(100), penalties, self.rows)

        assert plan.penalty_lines == []
        assert plan.row_lines[0].interest_amount == php(100)

    def test_excess_reported_as_unallocated(self):
        plan = plan_allocation(php(40_000), [], self.rows)

        assert plan.unallocated == php(10_000)
        assert all(line.settles for line in plan.row_lines)

    def test_inputs_not_mutated(self):
        plan_allocation(php(12_000), [], self.rows)

        assert self.rows[0].total_paid.is_zero()
        assert self.rows[0].status == ScheduleStatus.PENDING

    def test_non_positive_amount_rejected(self):
        with pytest.raises(LoanValidationError, match="greater than zero"):
            plan_allocation(php(0), [], self.rows)

    def test_total_obligations(self):
        penalties = [make_penalty("PEN-a", 1, date(2026, 2, 10), 300, paid_amount=100)]
        self.rows[0] = make_row(1, 1_500, 8_500, interest_paid=1_500, principal_paid=8_500,
                                status=ScheduleStatus.PAID)
        # 200 of penalty + rows 2 and 3
        assert total_obligations(penalties, self.rows, Currency.PHP) == php(200 + 10_000 + 10_000)


class TestStatusAfterPayment:
    """Row status derived from an allocation line"""

    def _line(self, settles, previous_status):
        return RowAllocation("r", 1, php(10), php(0), settles, previous_status)

    def test_settled_row_paid(self):
        assert status_after_payment(self._line(True, ScheduleStatus.OVERDUE)) == ScheduleStatus.PAID

    def test_partial_payment_on_pending_row(self):
        assert status_after_payment(self._line(False, ScheduleStatus.PENDING)) == ScheduleStatus.PARTIAL

    def test_overdue_row_stays_overdue(self):
        assert status_after_payment(self._line(False, ScheduleStatus.OVERDUE)) == ScheduleStatus.OVERDUE


class TestPlanSerialization:
    """Plans are stored on payments as plain data"""

    def test_dict_form_restores_plan(self):
        penalties = [make_penalty("PEN-a", 1, date(2026, 2, 10), 300)]
        rows = [make_row(1, 1_500, 8_500, status=ScheduleStatus.OVERDUE)]
        plan = plan_allocation(php(2_000), penalties, rows)

        data = plan.to_dict()
        assert data['currency'] == "PHP"
        assert data['penalties'][0]['amount'] == 300
        assert data['rows'][0]['previous_status'] == "overdue"
        assert AllocationPlan.from_dict(data) == plan


class TestPlanReversal:
    """Exact undo of an applied plan"""

    def _apply(self, plan, penalties, rows):
        """Apply a plan to the snapshot objects the way the Loan Engine does"""
        rows_by_id = {row.id: row for row in rows}
        for line in plan.penalty_lines:
            penalty = next(p for p in penalties if p.id == line.penalty_id)
            penalty.paid_amount = penalty.paid_amount + line.amount
            penalty.is_paid = line.settles
            row = rows_by_id[line.schedule_row_id]
            row.penalty_paid = row.penalty_paid + line.amount
        for line in plan.row_lines:
            row = rows_by_id[line.row_id]
            row.interest_paid = row.interest_paid + line.interest_amount
            row.principal_paid = row.principal_paid + line.principal_amount
            row.total_paid = row.total_paid + line.amount
            row.status = status_after_payment(line)

    def test_reversal_restores_row_values(self):
        rows = [make_row(1, 1_500, 8_500), make_row(2, 1_200, 8_800)]
        plan = plan_allocation(php(12_000), [], rows)
        self._apply(plan, [], rows)

        reversal = plan_reversal(plan, [], rows)

        restored = {r.row_id: r for r in reversal.row_restores}
        assert restored["loan-1_1"].total_paid.is_zero()
        assert restored["loan-1_1"].status == ScheduleStatus.PENDING
        assert restored["loan-1_2"].interest_paid.is_zero()
        assert restored["loan-1_2"].principal_paid.is_zero()

    def test_reversal_keeps_overdue_status(self):
        rows = [make_row(1, 1_500, 8_500, status=ScheduleStatus.OVERDUE)]
        plan = plan_allocation(php(10_000), [], rows)
        self._apply(plan, [], rows)
        assert rows[0].status == ScheduleStatus.PAID

        reversal = plan_reversal(plan, [], rows)

        assert reversal.row_restores[0].status == ScheduleStatus.OVERDUE

    def test_reversal_of_earlier_partial_payment_leaves_row_partial(self):
        rows = [make_row(1, 1_500, 8_500)]
        first = plan_allocation(php(1_000), [], rows)
        self._apply(first, [], rows)
        second = plan_allocation(php(2_000), [], rows)
        self._apply(second, [], rows)

        reversal = plan_reversal(second, [], rows)

        assert reversal.row_restores[0].total_paid == php(1_000)
        assert reversal.row_restores[0].status == ScheduleStatus.PARTIAL

    def test_partial_penalty_payment_reversed(self):
        penalties = [make_penalty("PEN-a", 1, date(2026, 2, 10), 300)]
        rows = [make_row(1, 1_500, 8_500, status=ScheduleStatus.OVERDUE)]
        plan = plan_allocation(php(120), penalties, rows)
        self._apply(plan, penalties, rows)

        reversal = plan_reversal(plan, penalties, rows)

        assert reversal.penalty_restores[0].paid_amount.is_zero()
        assert not reversal.penalty_restores[0].is_paid
        # Row carried only the penalty portion
        assert reversal.row_restores[0].penalty_paid.is_zero()
        assert reversal.row_restores[0].status == ScheduleStatus.OVERDUE

    def test_penalty_settled_by_later_waiver_reopens_on_reversal(self):
        penalties = [make_penalty("PEN-a", 1, date(2026, 2, 10), 300)]
        rows = [make_row(1, 1_500, 8_500, status=ScheduleStatus.OVERDUE)]
        plan = plan_allocation(php(120), penalties, rows)
        self._apply(plan, penalties, rows)
        # Remaining 180 waived: net drops to what was paid
        penalties[0].net_penalty = php(120)
        penalties[0].is_paid = True

        reversal = plan_reversal(plan, penalties, rows)

        assert reversal.penalty_restores[0].paid_amount.is_zero()
        assert not reversal.penalty_restores[0].is_paid

    def test_fully_paid_penalty_stays_settled_after_partial_reversal(self):
        penalties = [make_penalty("PEN-a", 1, date(2026, 2, 10), 300, paid_amount=100)]
        penalties[0].net_penalty = php(100)
        penalties[0].is_paid = True
        rows = [make_row(1, 1_500, 8_500, penalty_paid=100)]
        # Unrelated row payment alongside the settled penalty
        plan = plan_allocation(php(500), penalties, rows)
        self._apply(plan, penalties, rows)

        reversal = plan_reversal(plan, penalties, rows)

        assert reversal.penalty_restores == []
        assert reversal.row_restores[0].total_paid.is_zero()

    def test_reversal_refused_when_totals_would_go_negative(self):
        rows = [make_row(1, 1_500, 8_500)]
        plan = plan_allocation(php(10_000), [], rows)
        # Plan never applied: nothing to subtract from

        with pytest.raises(IntegrityViolationError, match="negative"):
            plan_reversal(plan, [], rows)

    def test_reversal_refused_for_missing_penalty(self):
        penalties = [make_penalty("PEN-a", 1, date(2026, 2, 10), 300)]
        rows = [make_row(1, 1_500, 8_500)]
        plan = plan_allocation(php(300), penalties, rows)

        with pytest.raises(IntegrityViolationError, match="no longer exists"):
            plan_reversal(plan, [], rows)
