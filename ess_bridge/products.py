"""
Loan Product Catalogue Module

Payroll loan products the bridge can offer. A product fixes the interest
rate, the up-front fee schedule and the principal/tenure bounds used when
quoting and when deciding an application.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .calculator import FeeSchedule
from .exceptions import NotFoundError


@dataclass
class LoanProduct(StorageRecord):
    """Loan product definition; id is the product code"""
    name: str
    annual_interest_rate: Decimal
    processing_fee_rate: Decimal
    insurance_rate: Decimal
    other_charges: Decimal
    min_tenure_months: int
    max_tenure_months: int
    min_principal: Decimal
    max_principal: Decimal
    ledger_product_id: Optional[int] = None
    active: bool = True

    @property
    def product_code(self) -> str:
        return self.id

    @property
    def fee_schedule(self) -> FeeSchedule:
        return FeeSchedule(
            processing_fee_rate=self.processing_fee_rate,
            insurance_rate=self.insurance_rate,
            other_charges=self.other_charges,
        )

    def clamp_tenure(self, tenure_months: Optional[int]) -> int:
        """Requested tenure held within the product limits; defaults to the maximum"""
        if not tenure_months:
            return self.max_tenure_months
        return max(self.min_tenure_months, min(int(tenure_months), self.max_tenure_months))

    def check_terms(self, principal: Decimal, tenure_months: int) -> List[str]:
        """Return the product limits a set of terms violates"""
        violations = []
        if tenure_months < self.min_tenure_months or tenure_months > self.max_tenure_months:
            violations.append(
                f"tenure {tenure_months} outside {self.min_tenure_months}-{self.max_tenure_months} months"
            )
        if principal < self.min_principal:
            violations.append(f"principal {principal} below product minimum {self.min_principal}")
        if principal > self.max_principal:
            violations.append(f"principal {principal} above product maximum {self.max_principal}")
        return violations

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanProduct':
        for key in ('annual_interest_rate', 'processing_fee_rate', 'insurance_rate',
                    'other_charges', 'min_principal', 'max_principal'):
            data[key] = Decimal(str(data[key]))
        return super().from_dict(data)


class ProductCatalog:
    """Stores and looks up loan products"""

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "loan_products"

    def register(self, product_code: str, name: str, annual_interest_rate: Decimal,
                 processing_fee_rate: Decimal = Decimal('0'), insurance_rate: Decimal = Decimal('0'),
                 other_charges: Decimal = Decimal('0'), min_tenure_months: int = 1,
                 max_tenure_months: int = 96, min_principal: Decimal = Decimal('0'),
                 max_principal: Decimal = Decimal('1000000000'), **kwargs) -> LoanProduct:
        """Create or replace a product definition"""
        now = datetime.now(timezone.utc)
        existing = self.storage.load(self.table_name, product_code)
        created_at = datetime.fromisoformat(existing['created_at']) if existing else now

        product = LoanProduct(
            id=product_code,
            created_at=created_at,
            updated_at=now,
            name=name,
            annual_interest_rate=Decimal(str(annual_interest_rate)),
            processing_fee_rate=Decimal(str(processing_fee_rate)),
            insurance_rate=Decimal(str(insurance_rate)),
            other_charges=Decimal(str(other_charges)),
            min_tenure_months=min_tenure_months,
            max_tenure_months=max_tenure_months,
            min_principal=Decimal(str(min_principal)),
            max_principal=Decimal(str(max_principal)),
            **kwargs
        )
        self.storage.save(self.table_name, product_code, product.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PRODUCT_REGISTERED,
                entity_type="loan_product",
                entity_id=product_code,
                metadata={"name": name, "annual_interest_rate": product.annual_interest_rate}
            )
        return product

    def register_default(self, settings) -> LoanProduct:
        """Seed the catalogue with the configured default product"""
        return self.register(
            product_code=settings.default_product_code,
            name=settings.default_product_name,
            annual_interest_rate=Decimal(settings.default_interest_rate),
            processing_fee_rate=Decimal(settings.default_processing_fee_rate),
            insurance_rate=Decimal(settings.default_insurance_rate),
            other_charges=Decimal(settings.default_other_charges),
            min_tenure_months=settings.default_min_tenure,
            max_tenure_months=settings.default_max_tenure,
            min_principal=Decimal(settings.default_min_amount),
            max_principal=Decimal(settings.default_max_amount),
            ledger_product_id=settings.ledger_product_id,
        )

    def get(self, product_code: str) -> Optional[LoanProduct]:
        data = self.storage.load(self.table_name, product_code)
        if data:
            return LoanProduct.from_dict(data)
        return None

    def require(self, product_code: str) -> LoanProduct:
        """Get an active product or raise NotFoundError"""
        product = self.get(product_code)
        if product is None or not product.active:
            raise NotFoundError(f"Unknown loan product {product_code}")
        return product
