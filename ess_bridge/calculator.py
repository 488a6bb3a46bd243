"""
Affordability & Amortization Calculator

Pure reducing-balance annuity math in two directions:

    forward:  principal -> monthly installment
    reverse:  monthly installment -> principal

Fees (processing %, insurance %, flat other charges) are always computed on
the gross principal in both directions, so reverse(forward(P)) recovers P and
forward(reverse(E)) recovers E up to rounding.

All inputs are coerced to Decimal. Anything non-numeric, non-finite or
negative raises CalculationError instead of producing a number.
"""

from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

from .exceptions import CalculationError


CENT = Decimal('0.01')
HUNDRED = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')
DAYS_PER_YEAR = Decimal('365')


def to_amount(value: Any, name: str = "amount") -> Decimal:
    """Coerce a value to a finite, non-negative Decimal"""
    if isinstance(value, bool):
        raise CalculationError(f"{name} must be numeric")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise CalculationError(f"{name} must be numeric, got {value!r}")
    if not amount.is_finite():
        raise CalculationError(f"{name} must be finite")
    if amount < 0:
        raise CalculationError(f"{name} must not be negative")
    return amount


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _check_result(value: Decimal, name: str) -> Decimal:
    if not value.is_finite():
        raise CalculationError(f"{name} is not a finite number")
    if value < 0:
        raise CalculationError(f"{name} is negative ({value})")
    return value


def _check_tenure(tenure_months: Any) -> int:
    try:
        tenure = int(tenure_months)
    except (TypeError, ValueError):
        raise CalculationError(f"tenure must be a whole number of months, got {tenure_months!r}")
    if tenure < 1:
        raise CalculationError("tenure must be at least one month")
    return tenure


@dataclass(frozen=True)
class FeeSchedule:
    """Up-front charges deducted from a loan's principal"""
    processing_fee_rate: Decimal = Decimal('0')  # percent of principal
    insurance_rate: Decimal = Decimal('0')       # percent of principal
    other_charges: Decimal = Decimal('0')        # flat amount

    def charges_for(self, principal: Decimal) -> Dict[str, Decimal]:
        return {
            'processing_fee': round_money(principal * to_amount(self.processing_fee_rate, "processing fee rate") / HUNDRED),
            'insurance': round_money(principal * to_amount(self.insurance_rate, "insurance rate") / HUNDRED),
            'other_charges': round_money(to_amount(self.other_charges, "other charges")),
        }


@dataclass(frozen=True)
class AffordabilityQuote:
    """Result of a forward or reverse computation"""
    eligible_principal: Decimal
    net_principal: Decimal
    installment_amount: Decimal
    total_payable: Decimal
    total_interest: Decimal
    processing_fee: Decimal
    insurance: Decimal
    other_charges: Decimal
    tenure_months: int

    @property
    def total_charges(self) -> Decimal:
        return self.processing_fee + self.insurance + self.other_charges

    def to_dict(self) -> Dict[str, str]:
        return {key: str(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AffordabilityQuote':
        values = {key: Decimal(str(value)) for key, value in data.items() if key != 'tenure_months'}
        return cls(tenure_months=int(data['tenure_months']), **values)


def _annuity_factor(monthly_rate: Decimal, tenure: int) -> Decimal:
    """Installment per unit of principal"""
    if monthly_rate == 0:
        return Decimal('1') / Decimal(tenure)
    growth = (Decimal('1') + monthly_rate) ** tenure
    return monthly_rate * growth / (growth - Decimal('1'))


def _build_quote(principal: Decimal, installment: Decimal, tenure: int,
                 fee_schedule: FeeSchedule) -> AffordabilityQuote:
    principal = round_money(_check_result(principal, "principal"))
    installment = round_money(_check_result(installment, "installment"))
    charges = fee_schedule.charges_for(principal)
    net_principal = principal - sum(charges.values())
    if net_principal < 0:
        raise CalculationError(
            f"charges of {sum(charges.values())} exceed principal of {principal}"
        )
    total_payable = round_money(installment * tenure)
    return AffordabilityQuote(
        eligible_principal=principal,
        net_principal=net_principal,
        installment_amount=installment,
        total_payable=total_payable,
        total_interest=max(total_payable - principal, Decimal('0.00')),
        processing_fee=charges['processing_fee'],
        insurance=charges['insurance'],
        other_charges=charges['other_charges'],
        tenure_months=tenure,
    )


def forward(principal: Any, annual_rate_pct: Any, tenure_months: Any,
            fee_schedule: Optional[FeeSchedule] = None) -> AffordabilityQuote:
    """
    Compute the monthly installment for a principal.

    Args:
        principal: Gross loan amount
        annual_rate_pct: Nominal annual interest rate in percent
        tenure_months: Number of monthly installments
        fee_schedule: Up-front charges computed on the principal

    Returns:
        AffordabilityQuote for the principal
    """
    principal = to_amount(principal, "principal")
    monthly_rate = to_amount(annual_rate_pct, "interest rate") / (HUNDRED * MONTHS_PER_YEAR)
    tenure = _check_tenure(tenure_months)

    installment = principal * _annuity_factor(monthly_rate, tenure)
    return _build_quote(principal, installment, tenure, fee_schedule or FeeSchedule())


def reverse(target_installment: Any, annual_rate_pct: Any, tenure_months: Any,
            fee_schedule: Optional[FeeSchedule] = None) -> AffordabilityQuote:
    """
    Compute the largest principal a monthly installment can service.

    Args:
        target_installment: Monthly amount the borrower can afford
        annual_rate_pct: Nominal annual interest rate in percent
        tenure_months: Number of monthly installments
        fee_schedule: Up-front charges computed on the resulting principal

    Returns:
        AffordabilityQuote whose eligible_principal services the installment
    """
    installment = to_amount(target_installment, "installment")
    monthly_rate = to_amount(annual_rate_pct, "interest rate") / (HUNDRED * MONTHS_PER_YEAR)
    tenure = _check_tenure(tenure_months)

    principal = installment / _annuity_factor(monthly_rate, tenure)
    return _build_quote(principal, installment, tenure, fee_schedule or FeeSchedule())


def affordability_headroom(basic_salary: Any, existing_deductions: Any = 0) -> Decimal:
    """Statutory one-third-of-basic-salary ceiling less existing deductions"""
    ceiling = to_amount(basic_salary, "basic salary") / Decimal('3')
    deductions = to_amount(existing_deductions or 0, "existing deductions")
    return round_money(max(Decimal('0'), ceiling - deductions))


def affordable_installment(basic_salary: Any, existing_deductions: Any = 0,
                           deductible_amount: Any = None,
                           desired_installment: Any = None) -> Decimal:
    """
    Monthly installment to quote against.

    The ceiling is the smaller of the computed headroom and the portal's
    DeductibleAmount when the portal supplies one. A desired installment is
    honoured only up to that ceiling.
    """
    cap = affordability_headroom(basic_salary, existing_deductions)
    if deductible_amount is not None:
        cap = min(cap, to_amount(deductible_amount, "deductible amount"))
    if desired_installment is not None and to_amount(desired_installment, "desired installment") > 0:
        return min(to_amount(desired_installment, "desired installment"), cap)
    return cap


def charges_quote(annual_rate_pct: Any, tenure_months: Any, fee_schedule: FeeSchedule,
                  basic_salary: Any, existing_deductions: Any = 0,
                  deductible_amount: Any = None, desired_installment: Any = None,
                  requested_amount: Any = None,
                  max_principal: Any = None) -> AffordabilityQuote:
    """
    Quote a loan for an employee's salary position.

    Without a requested amount the affordable installment is run through
    reverse(). With one, the smaller of the requested and the affordable
    principal is run through forward(). The result never exceeds
    max_principal.
    """
    target = affordable_installment(basic_salary, existing_deductions,
                                    deductible_amount, desired_installment)
    if target <= 0:
        raise CalculationError("no affordability headroom left for a new deduction")

    quote = reverse(target, annual_rate_pct, tenure_months, fee_schedule)
    if requested_amount is not None and to_amount(requested_amount, "requested amount") > 0:
        requested = to_amount(requested_amount, "requested amount")
        if requested < quote.eligible_principal:
            quote = forward(requested, annual_rate_pct, tenure_months, fee_schedule)

    if max_principal is not None and quote.eligible_principal > to_amount(max_principal, "max principal"):
        quote = forward(max_principal, annual_rate_pct, tenure_months, fee_schedule)
    return quote


def payoff_balance(outstanding_principal: Any, annual_rate_pct: Any, days: int = 30) -> Decimal:
    """Outstanding principal plus simple interest for the given number of days"""
    principal = to_amount(outstanding_principal, "outstanding principal")
    rate = to_amount(annual_rate_pct, "interest rate")
    interest = principal * rate / HUNDRED * Decimal(days) / DAYS_PER_YEAR
    return round_money(_check_result(principal + interest, "payoff balance"))
