"""
Test suite for schedule module

Tests diminishing-balance amortization, due-date generation per payment
interval, installment rounding and schedule validation. All amounts are
integer minor units; every row must reconcile exactly.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from coop_lending.currency import Money, Currency
from coop_lending.errors import LoanValidationError
from coop_lending.schedule import (
    PaymentInterval, ScheduleEntry, add_months, resolve_period_count,
    equivalent_periodic_rate, compute_installment, get_due_dates,
    compute_schedule, validate_schedule
)


def php(minor):
    return Money(minor, Currency.PHP)


class TestReferenceSchedule:
    """1,000,000 minor units at 1.5% per period over 12 months"""

    def setup_method(self):
        self.principal = php(1_000_000)
        self.result = compute_schedule(self.principal, Decimal('0.015'), 12, date(2026, 2, 1))

    def test_row_count_and_boundaries(self):
        rows = self.result.rows
        assert len(rows) == 12
        assert self.result.period_count == 12
        assert rows[0].beginning_balance == self.principal
        assert rows[-1].ending_balance.is_zero()

    def test_installment_close_to_level_payment(self):
        assert abs(self.result.installment.minor - 91_684) <= 100

    def test_first_row_interest(self):
        # 1,000,000 x 0.015
        assert self.result.rows[0].interest_due == php(15_000)

    def test_rows_reconcile(self):
        for row in self.result.rows:
            assert row.total_due == row.principal_due + row.interest_due
            assert row.ending_balance == row.beginning_balance - row.principal_due

    def test_rows_chain_balances(self):
        rows = self.result.rows
        for previous, current in zip(rows, rows[1:]):
            assert current.beginning_balance == previous.ending_balance
            assert current.beginning_balance < previous.beginning_balance

    def test_principal_column_sums_to_principal(self):
        assert sum(row.principal_due.minor for row in self.result.rows) == self.principal.minor
        assert validate_schedule(self.result.rows, self.principal)

    def test_non_final_rows_pay_the_installment(self):
        for row in self.result.rows[:-1]:
            assert row.total_due == self.result.installment

    def test_totals(self):
        total_interest = sum(row.interest_due.minor for row in self.result.rows)
        assert self.result.total_interest == php(total_interest)
        assert self.result.total_payable == self.principal + self.result.total_interest

    def test_monthly_due_dates(self):
        assert self.result.rows[0].due_date == date(2026, 2, 1)
        assert self.result.rows[11].due_date == date(2027, 1, 1)


class TestPeriodCounts:
    """Period count and spacing per payment interval"""

    def test_period_counts(self):
        assert resolve_period_count(6, PaymentInterval.MONTHLY) == 6
        assert resolve_period_count(6, PaymentInterval.SEMI_MONTHLY) == 12
        assert resolve_period_count(6, PaymentInterval.WEEKLY) == 24

    def test_period_count_accepts_string_interval(self):
        assert resolve_period_count(3, "weekly") == 12

    def test_unknown_interval_rejected(self):
        with pytest.raises(LoanValidationError, match="Unsupported payment interval"):
            resolve_period_count(3, "fortnightly")

    def test_non_positive_term_rejected(self):
        with pytest.raises(LoanValidationError, match="Term months"):
            resolve_period_count(0, PaymentInterval.MONTHLY)

    def test_weekly_schedule(self):
        result = compute_schedule(php(500_000), Decimal('0.005'), 3, date(2026, 3, 2), PaymentInterval.WEEKLY)
        assert len(result.rows) == 12
        for previous, current in zip(result.rows, result.rows[1:]):
            assert current.due_date - previous.due_date == timedelta(days=7)
        assert result.rows[-1].ending_balance.is_zero()

    def test_semi_monthly_schedule(self):
        result = compute_schedule(php(500_000), Decimal('0.0075'), 3, date(2026, 3, 1),
                                  PaymentInterval.SEMI_MONTHLY)
        assert len(result.rows) == 6
        for previous, current in zip(result.rows, result.rows[1:]):
            assert current.due_date - previous.due_date == timedelta(days=15)

    def test_supplied_rate_charged_unchanged_per_period(self):
        result = compute_schedule(php(400_000), Decimal('0.015'), 2, date(2026, 3, 2), PaymentInterval.WEEKLY)
        assert result.rows[0].interest_due == php(6_000)


class TestDueDates:
    """Month-end handling of monthly due dates"""

    def test_add_months_clamps_to_month_end(self):
        assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
        assert add_months(date(2028, 1, 31), 1) == date(2028, 2, 29)
        assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)

    def test_monthly_dates_computed_from_first_date(self):
        dates = get_due_dates(date(2026, 1, 31), 3, PaymentInterval.MONTHLY)
        assert dates == [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31)]

    def test_zero_periods_rejected(self):
        with pytest.raises(LoanValidationError):
            get_due_dates(date(2026, 1, 1), 0, PaymentInterval.MONTHLY)


class TestInstallment:
    """Level installment formula and input validation"""

    def test_installment_rounds_up(self):
        # Exact value 50,751.24... for 100,000 at 1% over 2 periods
        assert compute_installment(php(100_000), Decimal('0.01'), 2) == php(50_752)

    def test_float_rate_rejected(self):
        with pytest.raises(LoanValidationError, match="not float"):
            compute_installment(php(100_000), 0.01, 2)

    def test_zero_rate_rejected(self):
        with pytest.raises(LoanValidationError, match="Interest rate"):
            compute_schedule(php(100_000), Decimal('0'), 12, date(2026, 1, 1))

    def test_non_positive_principal_rejected(self):
        with pytest.raises(LoanValidationError, match="Principal"):
            compute_schedule(php(0), Decimal('0.01'), 12, date(2026, 1, 1))

    @pytest.mark.parametrize("interval", list(PaymentInterval))
    @pytest.mark.parametrize("term_months", [1, 6, 12, 24])
    @pytest.mark.parametrize("rate", ['0.005', '0.015', '0.02', '0.05'])
    @pytest.mark.parametrize("principal", [12, 100, 1_000, 10_000, 1_000_000])
    def test_small_principals_still_amortize(self, principal, rate, term_months, interval):
        result = compute_schedule(php(principal), Decimal(rate), term_months, date(2026, 2, 1), interval)
        periods = resolve_period_count(term_months, interval)

        assert len(result.rows) == periods
        assert result.rows[-1].ending_balance.is_zero()
        assert validate_schedule(result.rows, php(principal))
        for previous, row in zip(result.rows, result.rows[1:]):
            assert row.beginning_balance == previous.ending_balance
        for row in result.rows:
            assert not row.principal_due.is_negative()
            assert not row.interest_due.is_negative()
            if principal >= periods:
                assert row.principal_due.is_positive()

    def test_principal_below_period_count(self):
        # One centavo over two periods: nothing is left for the first row
        result = compute_schedule(php(1), Decimal('0.015'), 2, date(2026, 1, 1))

        assert [row.principal_due for row in result.rows] == [php(0), php(1)]
        assert result.rows[-1].ending_balance.is_zero()

    def test_one_period_schedule(self):
        result = compute_schedule(php(250_000), Decimal('0.02'), 1, date(2026, 2, 1))
        assert len(result.rows) == 1
        row = result.rows[0]
        assert row.principal_due == php(250_000)
        assert row.interest_due == php(5_000)
        assert row.ending_balance.is_zero()


class TestEquivalentRate:
    """Optional monthly-to-periodic rate conversion"""

    def test_monthly_rate_unchanged(self):
        assert equivalent_periodic_rate(Decimal('0.015'), PaymentInterval.MONTHLY) == Decimal('0.015')

    def test_semi_monthly_rate_compounds_to_monthly(self):
        rate = equivalent_periodic_rate(Decimal('0.015'), PaymentInterval.SEMI_MONTHLY)
        assert rate < Decimal('0.0075')
        assert abs((1 + rate) ** 2 - Decimal('1.015')) < Decimal('1e-20')

    def test_weekly_rate_smaller_than_quarter(self):
        rate = equivalent_periodic_rate(Decimal('0.015'), PaymentInterval.WEEKLY)
        assert Decimal('0') < rate < Decimal('0.00375')


class TestValidateSchedule:
    """Principal reconciliation tolerance"""

    def setup_method(self):
        self.principal = php(300_000)
        self.rows = compute_schedule(self.principal, Decimal('0.02'), 6, date(2026, 1, 1)).rows

    def test_within_one_minor_unit(self):
        assert validate_schedule(self.rows, php(300_001))
        assert validate_schedule(self.rows, php(299_999))

    def test_off_by_two_fails(self):
        assert not validate_schedule(self.rows, php(300_002))
        assert not validate_schedule(self.rows, php(299_998))

    def test_custom_tolerance(self):
        assert validate_schedule(self.rows, php(300_005), tolerance=5)

    def test_accepts_any_row_with_principal_due(self):
        rows = [
            ScheduleEntry(1, date(2026, 1, 1), php(100), php(60), php(2), php(62), php(40)),
            ScheduleEntry(2, date(2026, 2, 1), php(40), php(40), php(1), php(41), php(0)),
        ]
        assert validate_schedule(rows, php(100))
