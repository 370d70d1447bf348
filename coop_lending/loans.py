"""
Loan Module

Handles the cooperative loan lifecycle: application with a diminishing-balance
schedule, approval, rejection, disbursement, FIFO payment allocation, payment
reversal, overdue penalty accrual and penalty waiver.

State machine:
    pending -> approved -> active -> closed
    pending -> rejected                      (terminal)
    closed  -> active                        (only by reversing a payment)

Every mutating operation runs as one unit of work: the loan, its schedule
rows, the payment/penalty ledger rows, the number sequences and the audit
events are committed together or not at all.
"""

from contextlib import contextmanager, nullcontext
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import threading
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .errors import (
    LendingError, LoanValidationError, IllegalTransitionError,
    IntegrityViolationError, RecordNotFoundError, ConcurrencyConflictError
)
from .logging_config import get_logger, log_action
from .products import LoanProductCatalog, InterestMethod
from .members import MembershipDirectory
from .schedule import (
    PaymentInterval, ScheduleResult, compute_schedule, validate_schedule,
    equivalent_periodic_rate, get_due_dates, add_months
)
from .allocation import (
    AllocationPlan, ScheduleStatus, plan_allocation, plan_reversal,
    status_after_payment, total_obligations, penalty_outstanding
)
from .penalties import (
    PenaltyType, classify_penalty, select_penalty_rate,
    compute_penalty_amount, days_overdue as count_days_overdue, penalty_id as make_penalty_id
)

logger = get_logger("coop_lending.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"       # Application submitted, schedule computed
    APPROVED = "approved"     # Approved, awaiting disbursement
    ACTIVE = "active"         # Disbursed and in repayment
    CLOSED = "closed"         # Fully repaid
    REJECTED = "rejected"     # Application rejected (terminal)


class PaymentMethod(Enum):
    """How a repayment was received"""
    CASH = "cash"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    E_WALLET = "e_wallet"
    PAYROLL_DEDUCTION = "payroll_deduction"


@dataclass
class LoanApplication:
    """Input to LoanManager.apply"""
    member_id: str
    product_id: str
    principal: Money
    term_months: int
    purpose: str
    payment_interval: PaymentInterval = PaymentInterval.MONTHLY
    first_payment_date: Optional[date] = None   # Defaults to the 1st of the month after application
    application_date: Optional[date] = None     # Defaults to today
    interest_rate: Optional[Decimal] = None     # Overrides the product rate
    collateral_description: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass
class PaymentInput:
    """Input to LoanManager.record_payment"""
    amount: Money
    payment_method: PaymentMethod = PaymentMethod.CASH
    payment_date: Optional[date] = None  # Defaults to today
    reference_number: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class Loan(StorageRecord):
    """Loan with its terms, running totals and lifecycle dates"""
    loan_number: str
    member_id: str
    product_id: str
    currency: Currency
    principal: Money
    interest_rate: Decimal              # Per installment period
    term_months: int
    payment_interval: PaymentInterval
    purpose: str
    processing_fee: Money
    service_fee: Money
    net_proceeds: Money
    total_interest: Money
    total_payable: Money
    installment_amount: Money
    outstanding_balance: Money
    application_date: date
    applied_by: str
    interest_method: InterestMethod = InterestMethod.DIMINISHING_BALANCE
    status: LoanStatus = LoanStatus.PENDING

    # Running totals
    total_principal_paid: Money = None
    total_interest_paid: Money = None
    total_penalty_paid: Money = None
    total_penalties_outstanding: Money = None

    # Dates
    approval_date: Optional[date] = None
    disbursement_date: Optional[date] = None
    first_payment_date: Optional[date] = None
    maturity_date: Optional[date] = None
    closed_date: Optional[date] = None

    rejection_reason: Optional[str] = None
    collateral_description: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    disbursed_by: Optional[str] = None
    tenant_id: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        zero_amount = Money.zero(self.currency)
        if self.total_principal_paid is None:
            self.total_principal_paid = zero_amount
        if self.total_interest_paid is None:
            self.total_interest_paid = zero_amount
        if self.total_penalty_paid is None:
            self.total_penalty_paid = zero_amount
        if self.total_penalties_outstanding is None:
            self.total_penalties_outstanding = zero_amount

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE


@dataclass
class ScheduleRow(StorageRecord):
    """One installment of a loan's repayment schedule"""
    loan_id: str
    sequence: int
    due_date: date
    beginning_balance: Money
    principal_due: Money
    interest_due: Money
    total_due: Money
    ending_balance: Money
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    total_paid: Money
    status: ScheduleStatus = ScheduleStatus.PENDING
    paid_date: Optional[date] = None
    tenant_id: Optional[str] = None

    @property
    def outstanding(self) -> Money:
        return self.total_due - self.total_paid


@dataclass
class LoanPayment(StorageRecord):
    """Repayment ledger entry; immutable apart from its reversal fields"""
    payment_number: str
    loan_id: str
    member_id: str
    amount: Money
    principal_portion: Money
    interest_portion: Money
    penalty_portion: Money
    balance_before: Money
    balance_after: Money
    payment_method: PaymentMethod
    payment_date: date
    received_by: str
    allocations: Dict[str, Any] = field(default_factory=dict)
    closed_loan: bool = False
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    is_reversed: bool = False
    reversed_at: Optional[datetime] = None
    reversed_by: Optional[str] = None
    tenant_id: Optional[str] = None


@dataclass
class LoanPenalty(StorageRecord):
    """Penalty ledger entry, one per overdue schedule row per accrual date"""
    loan_id: str
    schedule_row_id: str
    sequence: int
    penalty_type: PenaltyType
    penalty_rate: Decimal
    days_overdue: int
    base_amount: Money
    penalty_amount: Money               # Gross
    waived_amount: Money
    net_penalty: Money                  # Gross less waivers
    paid_amount: Money
    applied_date: date
    is_paid: bool = False
    paid_date: Optional[date] = None
    waived_by: Optional[str] = None
    waived_at: Optional[datetime] = None
    waiver_reason: Optional[str] = None
    tenant_id: Optional[str] = None

    @property
    def outstanding(self) -> Money:
        return penalty_outstanding(self)


# Serialization helpers; money is stored as integer minor units
def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso_or_none(value) -> Optional[str]:
    return value.isoformat() if value else None


_LOAN_MONEY_FIELDS = (
    'principal', 'processing_fee', 'service_fee', 'net_proceeds', 'total_interest',
    'total_payable', 'installment_amount', 'outstanding_balance', 'total_principal_paid',
    'total_interest_paid', 'total_penalty_paid', 'total_penalties_outstanding'
)
_LOAN_DATE_FIELDS = (
    'application_date', 'approval_date', 'disbursement_date',
    'first_payment_date', 'maturity_date', 'closed_date'
)
_ROW_MONEY_FIELDS = (
    'beginning_balance', 'principal_due', 'interest_due', 'total_due', 'ending_balance',
    'principal_paid', 'interest_paid', 'penalty_paid', 'total_paid'
)
_PAYMENT_MONEY_FIELDS = (
    'amount', 'principal_portion', 'interest_portion', 'penalty_portion',
    'balance_before', 'balance_after'
)
_PENALTY_MONEY_FIELDS = (
    'base_amount', 'penalty_amount', 'waived_amount', 'net_penalty', 'paid_amount'
)


class LoanManager:
    """
    Loan Engine: owns the loan state machine and its ledgers
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        product_catalog: LoanProductCatalog,
        membership_directory: MembershipDirectory,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.product_catalog = product_catalog
        self.membership_directory = membership_directory
        self.config = config or get_config()

        self.loans_table = "loans"
        self.schedule_table = "loan_schedules"
        self.payments_table = "loan_payments"
        self.penalties_table = "loan_penalties"
        self.sequences_table = "sequences"

        # Per-loan locks serialize payment-affecting operations on one loan
        self._loan_locks: Dict[str, threading.RLock] = {}
        self._loan_locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Application workflow
    # ------------------------------------------------------------------

    def preview_schedule(
        self,
        product_id: str,
        principal: Money,
        term_months: int,
        first_due_date: date,
        interval: PaymentInterval = PaymentInterval.MONTHLY,
        interest_rate: Optional[Decimal] = None
    ) -> ScheduleResult:
        """Quote a schedule for a product without persisting anything"""
        product = self.product_catalog.get_product(product_id)
        if not product:
            raise RecordNotFoundError(f"Loan product {product_id} not found")
        rate = self._periodic_rate(interest_rate if interest_rate is not None else product.interest_rate, interval)
        return compute_schedule(principal, rate, term_months, first_due_date, interval)

    def apply(self, application: LoanApplication, actor: str) -> Loan:
        """
        Submit a loan application and persist its repayment schedule

        Args:
            application: Requested loan terms
            actor: Who is submitting the application

        Returns:
            Created Loan in pending status

        Raises:
            LoanValidationError: Ineligible member, product limits violated,
                non-positive terms or fees exceeding the principal
            RecordNotFoundError: Unknown loan product
        """
        with self._logged_failures("apply", actor, application.member_id):
            if not self.membership_directory.is_eligible_member(application.member_id):
                raise LoanValidationError(
                    f"Member {application.member_id} is not an eligible cooperative member"
                )

            product = self.product_catalog.get_product(application.product_id)
            if not product:
                raise RecordNotFoundError(f"Loan product {application.product_id} not found")

            principal = application.principal
            if not principal.is_positive():
                raise LoanValidationError("Principal must be greater than zero")
            if application.term_months <= 0:
                raise LoanValidationError("Term months must be greater than zero")
            if not (application.purpose or "").strip():
                raise LoanValidationError("Loan purpose is required")

            errors = product.validate_loan_parameters(
                principal, application.term_months, application.collateral_description
            )
            if errors:
                raise LoanValidationError("; ".join(errors))

            interval = application.payment_interval
            application_date = application.application_date or date.today()
            first_payment_date = application.first_payment_date or add_months(application_date.replace(day=1), 1)

            base_rate = application.interest_rate if application.interest_rate is not None else product.interest_rate
            rate = self._periodic_rate(base_rate, interval)

            schedule = compute_schedule(principal, rate, application.term_months, first_payment_date, interval)
            if not validate_schedule(schedule.rows, principal, self.config.schedule_tolerance_minor_units):
                raise IntegrityViolationError("Computed schedule does not amortize the principal")

            processing_fee = product.calculate_processing_fee(principal)
            service_fee = product.service_fee
            net_proceeds = principal - processing_fee - service_fee
            if not net_proceeds.is_positive():
                raise LoanValidationError(
                    f"Fees of {(processing_fee + service_fee).to_string()} leave no proceeds "
                    f"from a principal of {principal.to_string()}"
                )

            with self._unit_of_work():
                now = datetime.now(timezone.utc)
                sequence = self._next_sequence("LN", application_date.year)
                loan = Loan(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_number=f"LN-{application_date.year}-{sequence:06d}",
                    member_id=application.member_id,
                    product_id=product.id,
                    currency=principal.currency,
                    principal=principal,
                    interest_rate=rate,
                    term_months=application.term_months,
                    payment_interval=interval,
                    purpose=application.purpose,
                    processing_fee=processing_fee,
                    service_fee=service_fee,
                    net_proceeds=net_proceeds,
                    total_interest=schedule.total_interest,
                    total_payable=schedule.total_payable,
                    installment_amount=schedule.installment,
                    outstanding_balance=principal,
                    application_date=application_date,
                    applied_by=actor,
                    first_payment_date=first_payment_date,
                    maturity_date=schedule.rows[-1].due_date,
                    collateral_description=application.collateral_description,
                    tenant_id=application.tenant_id
                )
                self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

                zero_amount = Money.zero(loan.currency)
                for entry in schedule.rows:
                    row = ScheduleRow(
                        id=f"{loan.id}_{entry.sequence}",
                        created_at=now,
                        updated_at=now,
                        loan_id=loan.id,
                        sequence=entry.sequence,
                        due_date=entry.due_date,
                        beginning_balance=entry.beginning_balance,
                        principal_due=entry.principal_due,
                        interest_due=entry.interest_due,
                        total_due=entry.total_due,
                        ending_balance=entry.ending_balance,
                        principal_paid=zero_amount,
                        interest_paid=zero_amount,
                        penalty_paid=zero_amount,
                        total_paid=zero_amount,
                        tenant_id=loan.tenant_id
                    )
                    self._save_row(row)

                self._audit(AuditEventType.LOAN_APPLIED, loan, actor, {
                    "loan_number": loan.loan_number,
                    "member_id": loan.member_id,
                    "product_id": loan.product_id,
                    "principal": principal,
                    "interest_rate": rate,
                    "term_months": loan.term_months,
                    "payment_interval": interval,
                    "installment_amount": schedule.installment
                })

        log_action(logger, "info", f"Loan {loan.loan_number} applied",
                   user_id=actor, action="apply", resource=loan.loan_number,
                   extra={"principal": principal.minor, "periods": schedule.period_count})
        return loan

    def approve(self, loan_id: str, actor: str, approval_date: Optional[date] = None) -> Loan:
        """Approve a pending application"""
        with self._logged_failures("approve", actor, loan_id):
            with self._unit_of_work(loan_id):
                loan = self._require_loan(loan_id)
                self._require_status(loan, LoanStatus.PENDING, "approve")

                loan.status = LoanStatus.APPROVED
                loan.approval_date = approval_date or date.today()
                loan.approved_by = actor
                self._save_loan(loan)

                self._audit(AuditEventType.LOAN_APPROVED, loan, actor, {
                    "loan_number": loan.loan_number,
                    "approval_date": loan.approval_date
                })

        log_action(logger, "info", f"Loan {loan.loan_number} approved",
                   user_id=actor, action="approve", resource=loan.loan_number)
        return loan

    def reject(self, loan_id: str, actor: str, reason: str) -> Loan:
        """Reject a pending application; rejected loans are terminal"""
        with self._logged_failures("reject", actor, loan_id):
            if not (reason or "").strip():
                raise LoanValidationError("A rejection reason is required")

            with self._unit_of_work(loan_id):
                loan = self._require_loan(loan_id)
                self._require_status(loan, LoanStatus.PENDING, "reject")

                loan.status = LoanStatus.REJECTED
                loan.rejection_reason = reason
                loan.rejected_by = actor
                self._save_loan(loan)

                self._audit(AuditEventType.LOAN_REJECTED, loan, actor, {
                    "loan_number": loan.loan_number,
                    "reason": reason
                })

        log_action(logger, "info", f"Loan {loan.loan_number} rejected",
                   user_id=actor, action="reject", resource=loan.loan_number)
        return loan

    def disburse(
        self,
        loan_id: str,
        actor: str,
        disbursement_date: Optional[date] = None,
        first_payment_date: Optional[date] = None
    ) -> Loan:
        """
        Disburse an approved loan (status change only, no funds movement)

        When first_payment_date differs from the scheduled one, every due
        date is re-anchored to it. The maturity date is the last due date.
        """
        with self._logged_failures("disburse", actor, loan_id):
            with self._unit_of_work(loan_id):
                loan = self._require_loan(loan_id)
                self._require_status(loan, LoanStatus.APPROVED, "disburse")

                rows = self.get_schedule(loan_id)
                if first_payment_date and first_payment_date != loan.first_payment_date:
                    due_dates = get_due_dates(first_payment_date, len(rows), loan.payment_interval)
                    now = datetime.now(timezone.utc)
                    for row, due_date in zip(rows, due_dates):
                        row.due_date = due_date
                        row.updated_at = now
                        self._save_row(row)
                    loan.first_payment_date = first_payment_date

                loan.status = LoanStatus.ACTIVE
                loan.disbursement_date = disbursement_date or date.today()
                loan.disbursed_by = actor
                loan.maturity_date = rows[-1].due_date
                self._save_loan(loan)

                self._audit(AuditEventType.LOAN_DISBURSED, loan, actor, {
                    "loan_number": loan.loan_number,
                    "disbursement_date": loan.disbursement_date,
                    "first_payment_date": loan.first_payment_date,
                    "maturity_date": loan.maturity_date,
                    "net_proceeds": loan.net_proceeds
                })

        log_action(logger, "info", f"Loan {loan.loan_number} disbursed",
                   user_id=actor, action="disburse", resource=loan.loan_number,
                   extra={"net_proceeds": loan.net_proceeds.minor})
        return loan

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(self, loan_id: str, payment: PaymentInput, actor: str) -> LoanPayment:
        """
        Record a repayment and allocate it FIFO

        Penalties are settled first (oldest accrual first), then schedule
        rows in sequence order, interest before principal within a row.
        The loan closes when its outstanding balance reaches zero.

        Raises:
            IllegalTransitionError: Loan is not active
            LoanValidationError: Non-positive amount, wrong currency, or more
                than everything currently owed
        """
        with self._logged_failures("record_payment", actor, loan_id):
            if not payment.amount.is_positive():
                raise LoanValidationError("Payment amount must be greater than zero")

            with self._unit_of_work(loan_id):
                loan = self._require_loan(loan_id)
                self._require_status(loan, LoanStatus.ACTIVE, "record a payment on")
                if payment.amount.currency != loan.currency:
                    raise LoanValidationError(
                        f"Payment currency {payment.amount.currency.code} does not match "
                        f"loan currency {loan.currency.code}"
                    )

                rows = self.get_schedule(loan_id)
                penalties = self.get_loan_penalties(loan_id)
                owed = total_obligations(penalties, rows, loan.currency)
                if payment.amount > owed:
                    raise LoanValidationError(
                        f"Payment {payment.amount.to_string()} exceeds total outstanding "
                        f"{owed.to_string()}"
                    )

                plan = plan_allocation(payment.amount, penalties, rows)
                payment_date = payment.payment_date or date.today()
                loan_payment = self._apply_plan(loan, plan, rows, penalties, payment, payment_date, actor)

        log_action(logger, "info", f"Payment {loan_payment.payment_number} recorded on {loan.loan_number}",
                   user_id=actor, action="record_payment", resource=loan.loan_number,
                   extra={
                       "amount": loan_payment.amount.minor,
                       "penalty_portion": loan_payment.penalty_portion.minor,
                       "interest_portion": loan_payment.interest_portion.minor,
                       "principal_portion": loan_payment.principal_portion.minor,
                       "closed_loan": loan_payment.closed_loan
                   })
        return loan_payment

    def _apply_plan(
        self,
        loan: Loan,
        plan: AllocationPlan,
        rows: List[ScheduleRow],
        penalties: List[LoanPenalty],
        payment: PaymentInput,
        payment_date: date,
        actor: str
    ) -> LoanPayment:
        """Write an allocation plan; caller holds the unit of work"""
        now = datetime.now(timezone.utc)
        rows_by_id = {row.id: row for row in rows}
        penalties_by_id = {penalty.id: penalty for penalty in penalties}
        touched_rows = {}

        for line in plan.penalty_lines:
            penalty = penalties_by_id[line.penalty_id]
            penalty.paid_amount = penalty.paid_amount + line.amount
            if line.settles:
                penalty.is_paid = True
                penalty.paid_date = payment_date
            penalty.updated_at = now
            self._save_penalty(penalty)

            row = rows_by_id.get(line.schedule_row_id)
            if row is not None:
                row.penalty_paid = row.penalty_paid + line.amount
                touched_rows[row.id] = row

        for line in plan.row_lines:
            row = rows_by_id[line.row_id]
            row.interest_paid = row.interest_paid + line.interest_amount
            row.principal_paid = row.principal_paid + line.principal_amount
            row.total_paid = row.total_paid + line.amount
            row.status = status_after_payment(line)
            if line.settles:
                row.paid_date = payment_date
            touched_rows[row.id] = row

        for row in touched_rows.values():
            row.updated_at = now
            self._save_row(row)

        balance_before = loan.outstanding_balance
        loan.outstanding_balance = loan.outstanding_balance - plan.principal_portion
        loan.total_principal_paid = loan.total_principal_paid + plan.principal_portion
        loan.total_interest_paid = loan.total_interest_paid + plan.interest_portion
        loan.total_penalty_paid = loan.total_penalty_paid + plan.penalty_portion
        loan.total_penalties_outstanding = loan.total_penalties_outstanding - plan.penalty_portion
        if loan.outstanding_balance.is_negative() or loan.total_penalties_outstanding.is_negative():
            raise IntegrityViolationError(f"Payment would drive loan {loan.loan_number} totals negative")

        closed_loan = self._is_settled(loan)
        if closed_loan:
            loan.status = LoanStatus.CLOSED
            loan.closed_date = payment_date
        self._save_loan(loan)

        sequence = self._next_sequence("LP", payment_date.year)
        loan_payment = LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            payment_number=f"LP-{payment_date.year}-{sequence:06d}",
            loan_id=loan.id,
            member_id=loan.member_id,
            amount=payment.amount,
            principal_portion=plan.principal_portion,
            interest_portion=plan.interest_portion,
            penalty_portion=plan.penalty_portion,
            balance_before=balance_before,
            balance_after=loan.outstanding_balance,
            payment_method=payment.payment_method,
            payment_date=payment_date,
            received_by=actor,
            allocations=plan.to_dict(),
            closed_loan=closed_loan,
            reference_number=payment.reference_number,
            notes=payment.notes,
            tenant_id=loan.tenant_id
        )
        self._save_payment(loan_payment)

        self._audit(AuditEventType.LOAN_PAYMENT_RECORDED, loan, actor, {
            "payment_id": loan_payment.id,
            "payment_number": loan_payment.payment_number,
            "amount": loan_payment.amount,
            "penalty_portion": loan_payment.penalty_portion,
            "interest_portion": loan_payment.interest_portion,
            "principal_portion": loan_payment.principal_portion,
            "balance_after": loan_payment.balance_after
        })
        if closed_loan:
            self._audit(AuditEventType.LOAN_CLOSED, loan, actor, {
                "loan_number": loan.loan_number,
                "closed_date": payment_date,
                "payment_number": loan_payment.payment_number
            })

        return loan_payment

    def reverse_payment(self, payment_id: str, actor: str) -> LoanPayment:
        """
        Exactly undo a payment

        Restores the allocated schedule rows and penalties, the loan's
        outstanding balance and its cumulative totals. A loan closed by the
        payment is reopened to active.

        Raises:
            IllegalTransitionError: Payment already reversed
            IntegrityViolationError: Undoing the allocation would drive a
                running total negative
        """
        with self._logged_failures("reverse_payment", actor, payment_id):
            loan_id = self._require_payment(payment_id).loan_id

            with self._unit_of_work(loan_id):
                payment = self._require_payment(payment_id)
                if payment.is_reversed:
                    raise IllegalTransitionError(
                        f"Payment {payment.payment_number} has already been reversed", "reversed"
                    )

                loan = self._require_loan(loan_id)
                if loan.status not in (LoanStatus.ACTIVE, LoanStatus.CLOSED):
                    raise IllegalTransitionError(
                        f"Cannot reverse a payment on a loan with status '{loan.status.value}'",
                        loan.status.value
                    )

                rows = self.get_schedule(loan_id)
                penalties = self.get_loan_penalties(loan_id)
                reversal = plan_reversal(AllocationPlan.from_dict(payment.allocations), penalties, rows)

                now = datetime.now(timezone.utc)
                penalties_by_id = {penalty.id: penalty for penalty in penalties}
                for restore in reversal.penalty_restores:
                    penalty = penalties_by_id[restore.penalty_id]
                    penalty.paid_amount = restore.paid_amount
                    penalty.is_paid = restore.is_paid
                    if not restore.is_paid:
                        penalty.paid_date = None
                    penalty.updated_at = now
                    self._save_penalty(penalty)

                rows_by_id = {row.id: row for row in rows}
                for restore in reversal.row_restores:
                    row = rows_by_id[restore.row_id]
                    row.interest_paid = restore.interest_paid
                    row.principal_paid = restore.principal_paid
                    row.penalty_paid = restore.penalty_paid
                    row.total_paid = restore.total_paid
                    row.status = restore.status
                    if restore.status != ScheduleStatus.PAID:
                        row.paid_date = None
                    row.updated_at = now
                    self._save_row(row)

                loan.outstanding_balance = loan.outstanding_balance + payment.principal_portion
                loan.total_principal_paid = loan.total_principal_paid - payment.principal_portion
                loan.total_interest_paid = loan.total_interest_paid - payment.interest_portion
                loan.total_penalty_paid = loan.total_penalty_paid - payment.penalty_portion
                loan.total_penalties_outstanding = loan.total_penalties_outstanding + payment.penalty_portion
                if (loan.outstanding_balance > loan.principal
                        or loan.total_principal_paid.is_negative()
                        or loan.total_interest_paid.is_negative()
                        or loan.total_penalty_paid.is_negative()):
                    raise IntegrityViolationError(
                        f"Reversing {payment.payment_number} would corrupt running totals of {loan.loan_number}"
                    )

                reopened = loan.status == LoanStatus.CLOSED and not self._is_settled(loan)
                if reopened:
                    loan.status = LoanStatus.ACTIVE
                    loan.closed_date = None
                self._save_loan(loan)

                payment.is_reversed = True
                payment.reversed_at = now
                payment.reversed_by = actor
                payment.updated_at = now
                self._save_payment(payment)

                self._audit(AuditEventType.LOAN_PAYMENT_REVERSED, loan, actor, {
                    "payment_id": payment.id,
                    "payment_number": payment.payment_number,
                    "amount": payment.amount,
                    "balance_after": loan.outstanding_balance
                })
                if reopened:
                    self._audit(AuditEventType.LOAN_REOPENED, loan, actor, {
                        "loan_number": loan.loan_number,
                        "payment_number": payment.payment_number
                    })

        log_action(logger, "info", f"Payment {payment.payment_number} reversed on {loan.loan_number}",
                   user_id=actor, action="reverse_payment", resource=loan.loan_number,
                   extra={"amount": payment.amount.minor, "reopened": reopened})
        return payment

    # ------------------------------------------------------------------
    # Penalties
    # ------------------------------------------------------------------

    def compute_penalties(self, loan_id: str, as_of_date: Optional[date] = None,
                          actor: str = "system") -> List[LoanPenalty]:
        """
        Accrue penalties on every unpaid row due before as_of_date

        Idempotent per loan, row and date: a second sweep for the same date
        creates nothing.

        Returns:
            Penalties created by this sweep (possibly empty)
        """
        as_of_date = as_of_date or date.today()
        with self._logged_failures("compute_penalties", actor, loan_id):
            with self._unit_of_work(loan_id):
                loan = self._require_loan(loan_id)
                self._require_status(loan, LoanStatus.ACTIVE, "compute penalties on")

                product = self.product_catalog.get_product(loan.product_id)
                default_rate = Decimal(self.config.default_penalty_rate)
                now = datetime.now(timezone.utc)
                created = []

                for row in self.get_schedule(loan_id):
                    if row.status == ScheduleStatus.PAID or row.due_date >= as_of_date:
                        continue
                    outstanding = row.outstanding
                    days = count_days_overdue(row.due_date, as_of_date)
                    if not outstanding.is_positive():
                        continue

                    record_id = make_penalty_id(loan.id, row.sequence, as_of_date)
                    if self.storage.exists(self.penalties_table, record_id):
                        continue

                    rate = select_penalty_rate(product, days, default_rate)
                    amount = compute_penalty_amount(outstanding, rate, days)
                    if not amount.is_positive():
                        continue

                    zero_amount = Money.zero(loan.currency)
                    penalty = LoanPenalty(
                        id=record_id,
                        created_at=now,
                        updated_at=now,
                        loan_id=loan.id,
                        schedule_row_id=row.id,
                        sequence=row.sequence,
                        penalty_type=classify_penalty(days, self.config.non_payment_threshold_days),
                        penalty_rate=rate,
                        days_overdue=days,
                        base_amount=outstanding,
                        penalty_amount=amount,
                        waived_amount=zero_amount,
                        net_penalty=amount,
                        paid_amount=zero_amount,
                        applied_date=as_of_date,
                        tenant_id=loan.tenant_id
                    )
                    self._save_penalty(penalty)

                    if row.status != ScheduleStatus.OVERDUE:
                        row.status = ScheduleStatus.OVERDUE
                        row.updated_at = now
                        self._save_row(row)

                    loan.total_penalties_outstanding = loan.total_penalties_outstanding + amount
                    created.append(penalty)

                    self._audit(AuditEventType.LOAN_PENALTY_APPLIED, loan, actor, {
                        "penalty_id": penalty.id,
                        "sequence": row.sequence,
                        "penalty_type": penalty.penalty_type,
                        "days_overdue": days,
                        "penalty_rate": rate,
                        "penalty_amount": amount
                    })

                if created:
                    self._save_loan(loan)

        if created:
            log_action(logger, "info", f"{len(created)} penalties applied to {loan.loan_number}",
                       user_id=actor, action="compute_penalties", resource=loan.loan_number,
                       extra={"total": sum(p.penalty_amount.minor for p in created),
                              "as_of_date": as_of_date.isoformat()})
        return created

    def waive_penalty(self, penalty_id: str, waived_amount: Money, reason: str, actor: str) -> LoanPenalty:
        """
        Waive part or all of a penalty

        Raises:
            LoanValidationError: Non-positive amount or missing reason
            IllegalTransitionError: Penalty already paid, or amount above what
                is still owed on it
        """
        with self._logged_failures("waive_penalty", actor, penalty_id):
            if not waived_amount.is_positive():
                raise LoanValidationError("Waived amount must be greater than zero")
            if not (reason or "").strip():
                raise LoanValidationError("A waiver reason is required")

            loan_id = self._require_penalty(penalty_id).loan_id

            with self._unit_of_work(loan_id):
                penalty = self._require_penalty(penalty_id)
                if penalty.is_paid:
                    raise IllegalTransitionError("Cannot waive a penalty that has already been paid", "paid")

                outstanding = penalty.outstanding
                if waived_amount > outstanding:
                    raise IllegalTransitionError(
                        f"Waived amount {waived_amount.to_string()} exceeds net penalty "
                        f"{outstanding.to_string()}", "unpaid"
                    )

                loan = self._require_loan(loan_id)
                now = datetime.now(timezone.utc)
                penalty.waived_amount = penalty.waived_amount + waived_amount
                penalty.net_penalty = penalty.net_penalty - waived_amount
                penalty.waived_by = actor
                penalty.waived_at = now
                penalty.waiver_reason = reason
                # Nothing left to collect: the waiver settles the penalty
                if not penalty.outstanding.is_positive():
                    penalty.is_paid = True
                    penalty.paid_date = now.date()
                penalty.updated_at = now
                self._save_penalty(penalty)

                loan.total_penalties_outstanding = loan.total_penalties_outstanding - waived_amount
                if loan.total_penalties_outstanding.is_negative():
                    raise IntegrityViolationError(
                        f"Waiver would make penalties outstanding of {loan.loan_number} negative"
                    )

                closed_loan = loan.status == LoanStatus.ACTIVE and self._is_settled(loan)
                if closed_loan:
                    loan.status = LoanStatus.CLOSED
                    loan.closed_date = date.today()
                self._save_loan(loan)

                self._audit(AuditEventType.LOAN_PENALTY_WAIVED, loan, actor, {
                    "penalty_id": penalty.id,
                    "waived_amount": waived_amount,
                    "net_penalty": penalty.net_penalty,
                    "reason": reason
                })
                if closed_loan:
                    self._audit(AuditEventType.LOAN_CLOSED, loan, actor, {
                        "loan_number": loan.loan_number,
                        "closed_date": loan.closed_date
                    })

        log_action(logger, "info", f"Penalty {penalty.id} waived",
                   user_id=actor, action="waive_penalty", resource=loan.loan_number,
                   extra={"waived_amount": waived_amount.minor, "net_penalty": penalty.net_penalty.minor})
        return penalty

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def get_loan_by_number(self, loan_number: str) -> Optional[Loan]:
        """Get loan by its LN-YYYY-NNNNNN number"""
        loans = self.storage.find(self.loans_table, {"loan_number": loan_number})
        if loans:
            return self._loan_from_dict(loans[0])
        return None

    def get_member_loans(self, member_id: str) -> List[Loan]:
        """Get all loans for a member"""
        loans = [self._loan_from_dict(data)
                 for data in self.storage.find(self.loans_table, {"member_id": member_id})]
        loans.sort(key=lambda x: x.loan_number)
        return loans

    def list_loans(self, status: Optional[LoanStatus] = None, tenant_id: Optional[str] = None) -> List[Loan]:
        """List loans with optional filters"""
        filters = {}
        if status:
            filters["status"] = status.value
        if tenant_id:
            filters["tenant_id"] = tenant_id
        loans = [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda x: x.loan_number)
        return loans

    def get_schedule(self, loan_id: str) -> List[ScheduleRow]:
        """Get repayment schedule for loan, in sequence order"""
        rows = [self._row_from_dict(data)
                for data in self.storage.find(self.schedule_table, {"loan_id": loan_id})]
        rows.sort(key=lambda x: x.sequence)
        return rows

    def get_payment(self, payment_id: str) -> Optional[LoanPayment]:
        payment_dict = self.storage.load(self.payments_table, payment_id)
        if payment_dict:
            return self._payment_from_dict(payment_dict)
        return None

    def get_loan_payments(self, loan_id: str, include_reversed: bool = True) -> List[LoanPayment]:
        """Get payment history for loan"""
        payments = [self._payment_from_dict(data)
                    for data in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        if not include_reversed:
            payments = [p for p in payments if not p.is_reversed]

        # Sort by payment date
        payments.sort(key=lambda x: (x.payment_date, x.payment_number))
        return payments

    def get_penalty(self, penalty_id: str) -> Optional[LoanPenalty]:
        penalty_dict = self.storage.load(self.penalties_table, penalty_id)
        if penalty_dict:
            return self._penalty_from_dict(penalty_dict)
        return None

    def get_loan_penalties(self, loan_id: str) -> List[LoanPenalty]:
        """All penalties of a loan, oldest accrual first"""
        penalties = [self._penalty_from_dict(data)
                     for data in self.storage.find(self.penalties_table, {"loan_id": loan_id})]
        penalties.sort(key=lambda x: (x.applied_date, x.sequence))
        return penalties

    def get_outstanding_penalties(self, loan_id: str) -> List[LoanPenalty]:
        """Unpaid penalties that still have something owed on them"""
        return [p for p in self.get_loan_penalties(loan_id)
                if not p.is_paid and p.outstanding.is_positive()]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _periodic_rate(self, rate, interval: PaymentInterval) -> Decimal:
        rate = Decimal(str(rate))
        if self.config.derive_periodic_rate:
            return equivalent_periodic_rate(rate, interval)
        return rate

    def _is_settled(self, loan: Loan) -> bool:
        """Closure rule: zero balance, and zero penalties when configured so"""
        if not loan.outstanding_balance.is_zero():
            return False
        if self.config.close_requires_zero_penalties:
            return loan.total_penalties_outstanding.is_zero()
        return True

    def _require_status(self, loan: Loan, expected: LoanStatus, verb: str) -> None:
        if loan.status != expected:
            raise IllegalTransitionError(
                f"Cannot {verb} a loan with status '{loan.status.value}'", loan.status.value
            )

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise RecordNotFoundError(f"Loan {loan_id} not found")
        return loan

    def _require_payment(self, payment_id: str) -> LoanPayment:
        payment = self.get_payment(payment_id)
        if not payment:
            raise RecordNotFoundError(f"Loan payment {payment_id} not found")
        return payment

    def _require_penalty(self, penalty_id: str) -> LoanPenalty:
        penalty = self.get_penalty(penalty_id)
        if not penalty:
            raise RecordNotFoundError(f"Loan penalty {penalty_id} not found")
        return penalty

    def _loan_lock(self, loan_id: str) -> threading.RLock:
        with self._loan_locks_guard:
            lock = self._loan_locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._loan_locks[loan_id] = lock
            return lock

    @contextmanager
    def _unit_of_work(self, loan_id: Optional[str] = None):
        """Per-loan lock (taken first) around one storage transaction"""
        lock = self._loan_lock(loan_id) if loan_id else nullcontext()
        with lock:
            with self.storage.atomic():
                yield

    @contextmanager
    def _logged_failures(self, action: str, actor: str, resource: str):
        try:
            yield
        except LendingError as e:
            log_action(logger, "warning", f"{action} failed: {e}",
                       user_id=actor, action=action, resource=resource,
                       extra={"error": type(e).__name__})
            raise

    def _next_sequence(self, prefix: str, year: int) -> int:
        """Advance a yearly counter; caller holds the unit of work"""
        key = f"{prefix}-{year}"
        record = self.storage.load(self.sequences_table, key)
        value = (record['value'] if record else 0) + 1
        now = datetime.now(timezone.utc).isoformat()
        self.storage.save(self.sequences_table, key, {
            'id': key,
            'value': value,
            'created_at': record['created_at'] if record else now,
            'updated_at': now
        })
        return value

    def _audit(self, event_type: AuditEventType, loan: Loan, actor: str, metadata: Dict[str, Any]) -> None:
        if not self.config.enable_audit_logging:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            metadata=metadata,
            user_id=actor,
            tenant_id=loan.tenant_id
        )

    def _save_loan(self, loan: Loan) -> None:
        """Save loan, failing if the stored version moved since it was read"""
        stored = self.storage.load(self.loans_table, loan.id)
        if stored is None or stored.get('version') != loan.version:
            raise ConcurrencyConflictError(
                f"Loan {loan.loan_number} was modified concurrently; re-read and retry"
            )
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _save_row(self, row: ScheduleRow) -> None:
        self.storage.save(self.schedule_table, row.id, self._row_to_dict(row))

    def _save_payment(self, payment: LoanPayment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def _save_penalty(self, penalty: LoanPenalty) -> None:
        self.storage.save(self.penalties_table, penalty.id, self._penalty_to_dict(penalty))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'loan_number': loan.loan_number,
            'member_id': loan.member_id,
            'product_id': loan.product_id,
            'currency': loan.currency.code,
            'interest_rate': str(loan.interest_rate),
            'interest_method': loan.interest_method.value,
            'term_months': loan.term_months,
            'payment_interval': loan.payment_interval.value,
            'status': loan.status.value,
            'purpose': loan.purpose,
            'applied_by': loan.applied_by,
            'rejection_reason': loan.rejection_reason,
            'collateral_description': loan.collateral_description,
            'approved_by': loan.approved_by,
            'rejected_by': loan.rejected_by,
            'disbursed_by': loan.disbursed_by,
            'tenant_id': loan.tenant_id,
            'version': loan.version,
        }
        for name in _LOAN_MONEY_FIELDS:
            result[name] = getattr(loan, name).minor
        for name in _LOAN_DATE_FIELDS:
            result[name] = _iso_or_none(getattr(loan, name))
        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency.from_code(data['currency'])
        kwargs = {name: Money(data[name], currency) for name in _LOAN_MONEY_FIELDS}
        kwargs.update({name: _date_or_none(data.get(name)) for name in _LOAN_DATE_FIELDS})
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            member_id=data['member_id'],
            product_id=data['product_id'],
            currency=currency,
            interest_rate=Decimal(data['interest_rate']),
            interest_method=InterestMethod(data['interest_method']),
            term_months=data['term_months'],
            payment_interval=PaymentInterval(data['payment_interval']),
            status=LoanStatus(data['status']),
            purpose=data['purpose'],
            applied_by=data['applied_by'],
            rejection_reason=data.get('rejection_reason'),
            collateral_description=data.get('collateral_description'),
            approved_by=data.get('approved_by'),
            rejected_by=data.get('rejected_by'),
            disbursed_by=data.get('disbursed_by'),
            tenant_id=data.get('tenant_id'),
            version=data['version'],
            **kwargs
        )

    def _row_to_dict(self, row: ScheduleRow) -> Dict:
        result = {
            'id': row.id,
            'created_at': row.created_at.isoformat(),
            'updated_at': row.updated_at.isoformat(),
            'loan_id': row.loan_id,
            'sequence': row.sequence,
            'due_date': row.due_date.isoformat(),
            'status': row.status.value,
            'paid_date': _iso_or_none(row.paid_date),
            'currency': row.total_due.currency.code,
            'tenant_id': row.tenant_id,
        }
        for name in _ROW_MONEY_FIELDS:
            result[name] = getattr(row, name).minor
        return result

    def _row_from_dict(self, data: Dict) -> ScheduleRow:
        currency = Currency.from_code(data['currency'])
        return ScheduleRow(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            sequence=data['sequence'],
            due_date=date.fromisoformat(data['due_date']),
            status=ScheduleStatus(data['status']),
            paid_date=_date_or_none(data.get('paid_date')),
            tenant_id=data.get('tenant_id'),
            **{name: Money(data[name], currency) for name in _ROW_MONEY_FIELDS}
        )

    def _payment_to_dict(self, payment: LoanPayment) -> Dict:
        """Convert payment to dictionary"""
        result = {
            'id': payment.id,
            'created_at': payment.created_at.isoformat(),
            'updated_at': payment.updated_at.isoformat(),
            'payment_number': payment.payment_number,
            'loan_id': payment.loan_id,
            'member_id': payment.member_id,
            'currency': payment.amount.currency.code,
            'payment_method': payment.payment_method.value,
            'payment_date': payment.payment_date.isoformat(),
            'received_by': payment.received_by,
            'allocations': payment.allocations,
            'closed_loan': payment.closed_loan,
            'reference_number': payment.reference_number,
            'notes': payment.notes,
            'is_reversed': payment.is_reversed,
            'reversed_at': _iso_or_none(payment.reversed_at),
            'reversed_by': payment.reversed_by,
            'tenant_id': payment.tenant_id,
        }
        for name in _PAYMENT_MONEY_FIELDS:
            result[name] = getattr(payment, name).minor
        return result

    def _payment_from_dict(self, data: Dict) -> LoanPayment:
        """Convert dictionary to payment"""
        currency = Currency.from_code(data['currency'])
        return LoanPayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_number=data['payment_number'],
            loan_id=data['loan_id'],
            member_id=data['member_id'],
            payment_method=PaymentMethod(data['payment_method']),
            payment_date=date.fromisoformat(data['payment_date']),
            received_by=data['received_by'],
            allocations=data.get('allocations', {}),
            closed_loan=data.get('closed_loan', False),
            reference_number=data.get('reference_number'),
            notes=data.get('notes'),
            is_reversed=data.get('is_reversed', False),
            reversed_at=_datetime_or_none(data.get('reversed_at')),
            reversed_by=data.get('reversed_by'),
            tenant_id=data.get('tenant_id'),
            **{name: Money(data[name], currency) for name in _PAYMENT_MONEY_FIELDS}
        )

    def _penalty_to_dict(self, penalty: LoanPenalty) -> Dict:
        result = {
            'id': penalty.id,
            'created_at': penalty.created_at.isoformat(),
            'updated_at': penalty.updated_at.isoformat(),
            'loan_id': penalty.loan_id,
            'schedule_row_id': penalty.schedule_row_id,
            'sequence': penalty.sequence,
            'currency': penalty.penalty_amount.currency.code,
            'penalty_type': penalty.penalty_type.value,
            'penalty_rate': str(penalty.penalty_rate),
            'days_overdue': penalty.days_overdue,
            'applied_date': penalty.applied_date.isoformat(),
            'is_paid': penalty.is_paid,
            'paid_date': _iso_or_none(penalty.paid_date),
            'waived_by': penalty.waived_by,
            'waived_at': _iso_or_none(penalty.waived_at),
            'waiver_reason': penalty.waiver_reason,
            'tenant_id': penalty.tenant_id,
        }
        for name in _PENALTY_MONEY_FIELDS:
            result[name] = getattr(penalty, name).minor
        return result

    def _penalty_from_dict(self, data: Dict) -> LoanPenalty:
        currency = Currency.from_code(data['currency'])
        return LoanPenalty(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            schedule_row_id=data['schedule_row_id'],
            sequence=data['sequence'],
            penalty_type=PenaltyType(data['penalty_type']),
            penalty_rate=Decimal(data['penalty_rate']),
            days_overdue=data['days_overdue'],
            applied_date=date.fromisoformat(data['applied_date']),
            is_paid=data.get('is_paid', False),
            paid_date=_date_or_none(data.get('paid_date')),
            waived_by=data.get('waived_by'),
            waived_at=_datetime_or_none(data.get('waived_at')),
            waiver_reason=data.get('waiver_reason'),
            tenant_id=data.get('tenant_id'),
            **{name: Money(data[name], currency) for name in _PENALTY_MONEY_FIELDS}
        )
