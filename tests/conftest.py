"""
Shared fixtures for the lending core test suite
"""

import pytest
from decimal import Decimal
from datetime import date

from coop_lending.config import LendingConfig
from coop_lending.currency import Money, Currency
from coop_lending.storage import InMemoryStorage
from coop_lending.audit import AuditTrail
from coop_lending.products import LoanProductCatalog, LoanType, PenaltyTier
from coop_lending.members import StorageMembershipDirectory
from coop_lending.loans import LoanManager, LoanApplication
from coop_lending.schedule import PaymentInterval


def php(minor: int) -> Money:
    return Money(minor, Currency.PHP)


@pytest.fixture
def storage():
    """In-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def lending_config():
    return LendingConfig(database_url="memory://", currency="PHP")


@pytest.fixture
def catalog(storage, audit_trail):
    return LoanProductCatalog(storage, audit_trail)


@pytest.fixture
def directory(storage, audit_trail):
    return StorageMembershipDirectory(storage, audit_trail)


@pytest.fixture
def loan_manager(storage, audit_trail, catalog, directory, lending_config):
    return LoanManager(storage, audit_trail, catalog, directory, lending_config)


@pytest.fixture
def product(catalog):
    """Term loan at 1.5% per period, 2% processing fee, PHP 50.00 service fee"""
    return catalog.create_product(
        code="TERM-01",
        name="Regular Term Loan",
        loan_type=LoanType.TERM,
        currency=Currency.PHP,
        interest_rate=Decimal('0.015'),
        min_amount=php(100_000),
        max_amount=php(10_000_000),
        max_term_months=36,
        actor="admin",
        processing_fee_rate=Decimal('0.02'),
        service_fee=php(5_000),
        penalty_rate=Decimal('0.02'),
        penalty_tiers=[PenaltyTier(60, Decimal('0.03'))]
    )


@pytest.fixture
def member(directory):
    return directory.register_member("M-0001", "Maria", "Santos", actor="admin",
                                     membership_date=date(2020, 3, 1))


@pytest.fixture
def application(member, product):
    return LoanApplication(
        member_id=member.id,
        product_id=product.id,
        principal=php(1_000_000),
        term_months=12,
        purpose="Sari-sari store inventory",
        payment_interval=PaymentInterval.MONTHLY,
        first_payment_date=date(2026, 2, 1),
        application_date=date(2026, 1, 10)
    )


@pytest.fixture
def active_loan(loan_manager, application):
    """Applied, approved and disbursed loan, first due 2026-02-01"""
    loan = loan_manager.apply(application, actor="officer")
    loan_manager.approve(loan.id, actor="manager", approval_date=date(2026, 1, 12))
    return loan_manager.disburse(loan.id, actor="teller", disbursement_date=date(2026, 1, 15))
