"""
Loan Product Module

Configurable loan product templates: interest rate and method, amount and
term limits, fee schedule and penalty-rate tiers. Products are defined through
configuration instead of code changes and are read-only to the Loan Engine.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import LoanValidationError, RecordNotFoundError
from .logging_config import get_logger, log_action

logger = get_logger("coop_lending.products")


class LoanType(Enum):
    """Cooperative loan categories"""
    TERM = "term"
    EMERGENCY = "emergency"
    SALARY = "salary"
    AGRICULTURAL = "agricultural"
    LIVELIHOOD = "livelihood"


class InterestMethod(Enum):
    """Interest computation methods"""
    DIMINISHING_BALANCE = "diminishing_balance"  # Interest on remaining principal


@dataclass(frozen=True)
class PenaltyTier:
    """Penalty rate that applies from a number of days overdue onwards"""
    min_days_overdue: int
    rate: Decimal

    def applies_to(self, days_overdue: int) -> bool:
        return days_overdue >= self.min_days_overdue


@dataclass
class LoanProduct(StorageRecord):
    """Loan product definition"""
    code: str
    name: str
    loan_type: LoanType
    currency: Currency
    interest_rate: Decimal              # Per installment period, e.g. 0.015
    min_amount: Money
    max_amount: Money
    max_term_months: int
    interest_method: InterestMethod = InterestMethod.DIMINISHING_BALANCE
    processing_fee_rate: Decimal = Decimal('0')   # Fraction of principal
    service_fee: Optional[Money] = None           # Fixed amount
    penalty_rate: Decimal = Decimal('0.02')       # Per 30 days overdue
    penalty_tiers: List[PenaltyTier] = field(default_factory=list)
    requires_collateral: bool = False
    is_active: bool = True
    description: str = ""
    tenant_id: Optional[str] = None

    def __post_init__(self):
        if self.service_fee is None:
            self.service_fee = Money.zero(self.currency)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage, handling enums and money"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'code': self.code,
            'name': self.name,
            'loan_type': self.loan_type.value,
            'currency': self.currency.code,
            'interest_rate': str(self.interest_rate),
            'interest_method': self.interest_method.value,
            'min_amount': self.min_amount.minor,
            'max_amount': self.max_amount.minor,
            'max_term_months': self.max_term_months,
            'processing_fee_rate': str(self.processing_fee_rate),
            'service_fee': self.service_fee.minor,
            'penalty_rate': str(self.penalty_rate),
            'penalty_tiers': [
                {'min_days_overdue': tier.min_days_overdue, 'rate': str(tier.rate)}
                for tier in self.penalty_tiers
            ],
            'requires_collateral': self.requires_collateral,
            'is_active': self.is_active,
            'description': self.description,
            'tenant_id': self.tenant_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        """Create instance from dictionary, handling enum conversions"""
        currency = Currency.from_code(data['currency'])
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            code=data['code'],
            name=data['name'],
            loan_type=LoanType(data['loan_type']),
            currency=currency,
            interest_rate=Decimal(data['interest_rate']),
            interest_method=InterestMethod(data['interest_method']),
            min_amount=Money(data['min_amount'], currency),
            max_amount=Money(data['max_amount'], currency),
            max_term_months=data['max_term_months'],
            processing_fee_rate=Decimal(data['processing_fee_rate']),
            service_fee=Money(data['service_fee'], currency),
            penalty_rate=Decimal(data['penalty_rate']),
            penalty_tiers=[
                PenaltyTier(tier['min_days_overdue'], Decimal(tier['rate']))
                for tier in data.get('penalty_tiers', [])
            ],
            requires_collateral=data['requires_collateral'],
            is_active=data['is_active'],
            description=data.get('description', ""),
            tenant_id=data.get('tenant_id'),
        )

    def calculate_processing_fee(self, principal: Money) -> Money:
        """processing_fee_rate x principal, rounded half-up to a minor unit"""
        return principal.apply_rate(self.processing_fee_rate)

    def validate_loan_parameters(self,
                                 principal: Money,
                                 term_months: int,
                                 collateral_description: Optional[str] = None) -> List[str]:
        """Validate requested loan parameters against product configuration"""
        errors = []

        if not self.is_active:
            errors.append(f"Loan product {self.code} is not active")

        if principal.currency != self.currency:
            errors.append(f"Principal currency {principal.currency.code} "
                          f"does not match product currency {self.currency.code}")
        else:
            if principal < self.min_amount:
                errors.append(f"Principal {principal.to_string()} is below "
                              f"minimum {self.min_amount.to_string()}")
            if principal > self.max_amount:
                errors.append(f"Principal {principal.to_string()} exceeds "
                              f"maximum {self.max_amount.to_string()}")

        if term_months > self.max_term_months:
            errors.append(f"Term of {term_months} months exceeds "
                          f"maximum {self.max_term_months} months")

        if self.requires_collateral and not (collateral_description or "").strip():
            errors.append(f"Loan product {self.code} requires a collateral description")

        return errors


class LoanProductCatalog:
    """Storage-backed source of loan product configuration"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loan_products"

    def create_product(self,
                       code: str,
                       name: str,
                       loan_type: LoanType,
                       currency: Currency,
                       interest_rate: Decimal,
                       min_amount: Money,
                       max_amount: Money,
                       max_term_months: int,
                       actor: str,
                       **kwargs) -> LoanProduct:
        """Create a new loan product definition"""
        if self.get_product_by_code(code):
            raise LoanValidationError(f"Product code {code} already exists")
        if Decimal(str(interest_rate)) <= 0:
            raise LoanValidationError("Interest rate must be greater than zero")
        if min_amount > max_amount:
            raise LoanValidationError("Minimum amount cannot exceed maximum amount")
        if max_term_months <= 0:
            raise LoanValidationError("Maximum term must be greater than zero")

        now = datetime.now(timezone.utc)
        product = LoanProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            code=code,
            name=name,
            loan_type=loan_type,
            currency=currency,
            interest_rate=Decimal(str(interest_rate)),
            min_amount=min_amount,
            max_amount=max_amount,
            max_term_months=max_term_months,
            **kwargs
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, product.id, product.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_CREATED,
                entity_type="loan_product",
                entity_id=product.id,
                metadata={
                    "code": code,
                    "name": name,
                    "loan_type": loan_type.value,
                    "interest_rate": product.interest_rate
                },
                user_id=actor,
                tenant_id=product.tenant_id
            )

        log_action(logger, "info", f"Loan product {code} created",
                   user_id=actor, action="create_product", resource=code)
        return product

    def update_product(self, product_id: str, actor: str, **kwargs) -> LoanProduct:
        """Update product configuration; existing loans keep their terms"""
        current = self.get_product(product_id)
        if not current:
            raise RecordNotFoundError(f"Loan product {product_id} not found")

        data = current.to_dict()
        updated = LoanProduct.from_dict(data)
        for key, value in kwargs.items():
            if not hasattr(updated, key) or key in ('id', 'created_at', 'code'):
                raise LoanValidationError(f"Cannot update product field '{key}'")
            setattr(updated, key, value)
        updated.updated_at = datetime.now(timezone.utc)

        with self.storage.atomic():
            self.storage.save(self.table_name, product_id, updated.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_UPDATED,
                entity_type="loan_product",
                entity_id=product_id,
                metadata={"changes": sorted(kwargs.keys())},
                user_id=actor,
                tenant_id=updated.tenant_id
            )

        return updated

    def deactivate_product(self, product_id: str, actor: str) -> LoanProduct:
        """Stop offering a product for new applications"""
        return self.update_product(product_id, actor, is_active=False)

    def get_product(self, product_id: str) -> Optional[LoanProduct]:
        """Get product by ID"""
        data = self.storage.load(self.table_name, product_id)
        if data:
            return LoanProduct.from_dict(data)
        return None

    def get_product_by_code(self, code: str) -> Optional[LoanProduct]:
        """Get product by unique code"""
        products = self.storage.find(self.table_name, {"code": code})
        if products:
            return LoanProduct.from_dict(products[0])
        return None

    def list_products(self,
                      loan_type: Optional[LoanType] = None,
                      active_only: bool = False) -> List[LoanProduct]:
        """List products with optional filters"""
        filters = {}
        if loan_type:
            filters["loan_type"] = loan_type.value
        if active_only:
            filters["is_active"] = True

        products_data = self.storage.find(self.table_name, filters)
        return [LoanProduct.from_dict(data) for data in products_data]
