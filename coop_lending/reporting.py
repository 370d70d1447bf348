"""
Reporting Module

Read-only loan reports: member statement, portfolio overview, delinquency
list and overdue aging buckets. Reports never write to storage.

Amounts in report rows are integer minor units, tagged with the currency
code, so they can be exported to JSON or CSV without loss.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import csv
import io
import json

from .currency import Money, Currency, sum_money
from .allocation import ScheduleStatus
from .errors import RecordNotFoundError
from .loans import LoanManager, Loan, LoanStatus, ScheduleRow
from .logging_config import get_logger, log_action

logger = get_logger("coop_lending.reporting")

# Row statuses that still count as owed once the due date has passed
_UNSETTLED_STATUSES = (ScheduleStatus.PENDING, ScheduleStatus.PARTIAL, ScheduleStatus.OVERDUE)

AGING_BUCKETS = ('current', '31_60', '61_90', 'over_90')


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"
    JSON = "json"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    as_of: date
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    sections: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {'row_count': len(self.data)}


def aging_bucket(days_overdue: int) -> str:
    """Bucket name for a number of days past due"""
    if days_overdue > 90:
        return 'over_90'
    elif days_overdue > 60:
        return '61_90'
    elif days_overdue > 30:
        return '31_60'
    return 'current'


def is_row_past_due(row: ScheduleRow, as_of: date) -> bool:
    """Overdue row: flagged overdue, or still unpaid after its due date"""
    if row.status == ScheduleStatus.OVERDUE:
        return True
    return row.status in (ScheduleStatus.PENDING, ScheduleStatus.PARTIAL) and row.due_date < as_of


class LoanReportingService:
    """
    Loan reports built on the Loan Engine's query operations
    """

    def __init__(self, loan_manager: LoanManager, currency: Optional[Currency] = None):
        self.loan_manager = loan_manager
        self.currency = currency or Currency.from_code(loan_manager.config.currency)

    def loan_statement(self, loan_id: str, date_from: Optional[date] = None,
                       date_to: Optional[date] = None) -> ReportResult:
        """
        Statement of one loan

        data holds the payments received in the range (reversed payments are
        left out); sections hold the full schedule and the penalties applied
        in the range; totals summarize the loan's running totals.
        """
        loan = self.loan_manager.get_loan(loan_id)
        if not loan:
            raise RecordNotFoundError(f"Loan {loan_id} not found")

        def in_range(value: date) -> bool:
            if date_from and value < date_from:
                return False
            if date_to and value > date_to:
                return False
            return True

        payments = [
            p for p in self.loan_manager.get_loan_payments(loan_id, include_reversed=False)
            if in_range(p.payment_date)
        ]
        penalties = [p for p in self.loan_manager.get_loan_penalties(loan_id) if in_range(p.applied_date)]
        schedule = self.loan_manager.get_schedule(loan_id)

        data = [{
            'payment_number': p.payment_number,
            'payment_date': p.payment_date.isoformat(),
            'payment_method': p.payment_method.value,
            'amount': p.amount.minor,
            'penalty_portion': p.penalty_portion.minor,
            'interest_portion': p.interest_portion.minor,
            'principal_portion': p.principal_portion.minor,
            'balance_after': p.balance_after.minor,
            'reference_number': p.reference_number,
        } for p in payments]

        schedule_rows = [{
            'sequence': row.sequence,
            'due_date': row.due_date.isoformat(),
            'principal_due': row.principal_due.minor,
            'interest_due': row.interest_due.minor,
            'total_due': row.total_due.minor,
            'total_paid': row.total_paid.minor,
            'ending_balance': row.ending_balance.minor,
            'status': row.status.value,
        } for row in schedule]

        penalty_rows = [{
            'penalty_id': p.id,
            'sequence': p.sequence,
            'applied_date': p.applied_date.isoformat(),
            'penalty_type': p.penalty_type.value,
            'days_overdue': p.days_overdue,
            'penalty_amount': p.penalty_amount.minor,
            'waived_amount': p.waived_amount.minor,
            'net_penalty': p.net_penalty.minor,
            'paid_amount': p.paid_amount.minor,
            'is_paid': p.is_paid,
        } for p in penalties]

        totals = {
            'loan_number': loan.loan_number,
            'status': loan.status.value,
            'principal': loan.principal.minor,
            'total_payable': loan.total_payable.minor,
            'outstanding_balance': loan.outstanding_balance.minor,
            'total_principal_paid': loan.total_principal_paid.minor,
            'total_interest_paid': loan.total_interest_paid.minor,
            'total_penalty_paid': loan.total_penalty_paid.minor,
            'total_penalties_outstanding': loan.total_penalties_outstanding.minor,
            'payments_in_period': sum(p.amount.minor for p in payments),
            'currency': loan.currency.code,
        }

        return ReportResult(
            report_id="loan_statement",
            generated_at=datetime.now(timezone.utc),
            as_of=date_to or date.today(),
            data=data,
            totals=totals,
            sections={'schedule': schedule_rows, 'penalties': penalty_rows},
            metadata={
                'row_count': len(data),
                'loan_id': loan.id,
                'member_id': loan.member_id,
                'date_from': date_from.isoformat() if date_from else None,
                'date_to': date_to.isoformat() if date_to else None,
                'currency': loan.currency.code
            }
        )

    def delinquent_loans(self, as_of: date, tenant_id: Optional[str] = None) -> ReportResult:
        """Active loans with at least one past-due schedule row"""
        data = []
        for loan in self._active_loans(tenant_id):
            overdue_rows = [row for row in self.loan_manager.get_schedule(loan.id)
                            if is_row_past_due(row, as_of)]
            if not overdue_rows:
                continue

            overdue_amount = sum_money((row.outstanding for row in overdue_rows), loan.currency)
            data.append({
                'loan_id': loan.id,
                'loan_number': loan.loan_number,
                'member_id': loan.member_id,
                'overdue_installments': len(overdue_rows),
                'overdue_amount': overdue_amount.minor,
                'max_days_overdue': max(max((as_of - row.due_date).days, 0) for row in overdue_rows),
                'outstanding_balance': loan.outstanding_balance.minor,
                'penalties_outstanding': loan.total_penalties_outstanding.minor,
                'currency': loan.currency.code,
            })

        data.sort(key=lambda item: (-item['max_days_overdue'], item['loan_number']))
        totals = {
            'delinquent_count': len(data),
            'total_overdue_amount': sum(item['overdue_amount'] for item in data),
            'currency': self.currency.code,
        }
        return self._result("delinquent_loans", as_of, data, totals, tenant_id)

    def aging_report(self, as_of: date, tenant_id: Optional[str] = None) -> ReportResult:
        """
        Past-due amounts by age

        Only rows whose due date is before as_of and that are not yet paid are
        counted; amount is what remains owed on each row.
        """
        buckets = {name: {'count': 0, 'amount': 0} for name in AGING_BUCKETS}

        for loan in self._active_loans(tenant_id):
            for row in self.loan_manager.get_schedule(loan.id):
                if row.due_date >= as_of or row.status not in _UNSETTLED_STATUSES:
                    continue
                outstanding = row.outstanding
                if not outstanding.is_positive():
                    continue
                bucket = buckets[aging_bucket((as_of - row.due_date).days)]
                bucket['count'] += 1
                bucket['amount'] += outstanding.minor

        total_amount = sum(bucket['amount'] for bucket in buckets.values())
        data = []
        # Always emit every bucket, even when empty
        for name in AGING_BUCKETS:
            bucket = buckets[name]
            percentage = round(bucket['amount'] * 100 / total_amount, 2) if total_amount else 0
            data.append({
                'aging_bucket': name,
                'count': bucket['count'],
                'amount': bucket['amount'],
                'percentage': percentage,
                'currency': self.currency.code,
            })

        totals = {
            'total_count': sum(bucket['count'] for bucket in buckets.values()),
            'total_amount': total_amount,
            'currency': self.currency.code,
        }
        return self._result("aging", as_of, data, totals, tenant_id)

    def portfolio_overview(self, as_of: date, tenant_id: Optional[str] = None) -> ReportResult:
        """
        Portfolio headline figures

        disbursed_this_month and collected_this_month cover the calendar
        month containing as_of.
        """
        loans = [loan for loan in self.loan_manager.list_loans(tenant_id=tenant_id)
                 if loan.currency == self.currency]
        active = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]

        def in_month(value: Optional[date]) -> bool:
            return value is not None and value.year == as_of.year and value.month == as_of.month

        disbursed = sum_money(
            (loan.principal for loan in loans if in_month(loan.disbursement_date)), self.currency
        )
        collected = Money.zero(self.currency)
        for loan in loans:
            for payment in self.loan_manager.get_loan_payments(loan.id, include_reversed=False):
                if in_month(payment.payment_date):
                    collected = collected + payment.amount

        status_breakdown = {status.value: 0 for status in LoanStatus}
        for loan in loans:
            status_breakdown[loan.status.value] += 1

        totals = {
            'total_active_loans': len(active),
            'total_outstanding_portfolio': sum_money((l.outstanding_balance for l in active), self.currency).minor,
            'total_penalties_outstanding': sum_money(
                (l.total_penalties_outstanding for l in active), self.currency
            ).minor,
            'delinquent_count': self.delinquent_loans(as_of, tenant_id).totals['delinquent_count'],
            'disbursed_this_month': disbursed.minor,
            'collected_this_month': collected.minor,
            'status_breakdown': status_breakdown,
            'currency': self.currency.code,
        }

        log_action(logger, "debug", "Portfolio overview generated", action="portfolio_overview",
                   extra={"as_of": as_of.isoformat(), "loans": len(loans)})
        return self._result("portfolio_overview", as_of, [totals], totals, tenant_id)

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'generated_at': result.generated_at.isoformat(),
                'as_of': result.as_of.isoformat(),
                'data': result.data,
                'totals': result.totals,
                'sections': result.sections,
                'metadata': result.metadata
            }

        elif format == ReportFormat.JSON:
            export_dict = self.export_report(result, ReportFormat.DICT)
            return json.dumps(export_dict, indent=2, default=str)

        elif format == ReportFormat.CSV:
            output = io.StringIO()

            if result.data:
                # Get headers from first row
                headers = list(result.data[0].keys())
                writer = csv.DictWriter(output, fieldnames=headers)
                writer.writeheader()

                for row in result.data:
                    writer.writerow(row)

            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")

    def _active_loans(self, tenant_id: Optional[str]) -> List[Loan]:
        return [loan for loan in self.loan_manager.list_loans(LoanStatus.ACTIVE, tenant_id)
                if loan.currency == self.currency]

    def _result(self, report_id: str, as_of: date, data: List[Dict[str, Any]],
                totals: Dict[str, Any], tenant_id: Optional[str]) -> ReportResult:
        return ReportResult(
            report_id=report_id,
            generated_at=datetime.now(timezone.utc),
            as_of=as_of,
            data=data,
            totals=totals,
            metadata={
                'row_count': len(data),
                'tenant_id': tenant_id,
                'currency': self.currency.code
            }
        )
