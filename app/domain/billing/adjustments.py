"""
Billing-level adjustments and derived totals.

A discount is an explicit variant (none / fixed amount / percentage of the
subtotal). Totals are always derived from subtotal, discount, insurance
coverage and the amount already paid, never patched in place.
"""

from decimal import Decimal
from typing import Any, Optional
import enum

from pydantic import BaseModel, ConfigDict

from app.core.exceptions import ValidationError
from app.domain.billing.models import PaymentStatus
from app.domain.billing.money import ZERO, quantize, to_decimal


class DiscountKind(str, enum.Enum):
    NONE = "none"
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class Discount(BaseModel):
    """Billing-level discount"""
    model_config = ConfigDict(frozen=True)

    kind: DiscountKind = DiscountKind.NONE
    value: Decimal = ZERO

    @classmethod
    def none(cls) -> "Discount":
        return cls()

    @classmethod
    def fixed(cls, amount: Any) -> "Discount":
        amount = quantize(amount)
        if amount < 0:
            raise ValidationError("Discount cannot be negative", details={"discount": str(amount)})
        return cls(kind=DiscountKind.FIXED, value=amount)

    @classmethod
    def percentage(cls, pct: Any) -> "Discount":
        pct = to_decimal(pct)
        if pct < 0 or pct > 100:
            raise ValidationError(
                "Discount percentage must be between 0 and 100",
                details={"discount_percentage": str(pct)}
            )
        return cls(kind=DiscountKind.PERCENTAGE, value=pct)

    @classmethod
    def from_options(cls, discount: Any = None, discount_percentage: Any = None) -> Optional["Discount"]:
        """Build a discount from loose request options.

        Percentage wins over a fixed amount. Returns None when neither is set,
        meaning "keep whatever discount the billing already has".
        """
        if discount_percentage is not None:
            return cls.percentage(discount_percentage)
        if discount is not None:
            return cls.fixed(discount)
        return None

    @classmethod
    def from_billing(cls, billing) -> "Discount":
        if billing.discount_percentage is not None:
            return cls.percentage(billing.discount_percentage)
        if billing.discount:
            return cls.fixed(billing.discount)
        return cls.none()

    @property
    def percentage_value(self) -> Optional[Decimal]:
        return self.value if self.kind == DiscountKind.PERCENTAGE else None

    def resolve(self, subtotal: Decimal) -> Decimal:
        if self.kind == DiscountKind.PERCENTAGE:
            return quantize(to_decimal(subtotal) * self.value / Decimal(100))
        if self.kind == DiscountKind.FIXED:
            return self.value
        return ZERO


class BillingTotals(BaseModel):
    subtotal: Decimal
    discount: Decimal
    discount_percentage: Optional[Decimal] = None
    total_amount: Decimal
    insurance_coverage: Decimal
    patient_payable: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    payment_status: PaymentStatus


def derive_payment_status(patient_payable: Any, paid_amount: Any) -> PaymentStatus:
    payable = quantize(patient_payable)
    paid = quantize(paid_amount)

    if payable - paid <= 0:
        return PaymentStatus.PAID
    if paid <= 0:
        return PaymentStatus.PENDING
    return PaymentStatus.PARTIAL


def compute_totals(
    subtotal: Any,
    discount: Discount,
    insurance_coverage: Any = ZERO,
    paid_amount: Any = ZERO,
) -> BillingTotals:
    """Derive every header amount, enforcing the billing invariants."""
    subtotal = quantize(subtotal)
    discount_amount = discount.resolve(subtotal)
    insurance = quantize(insurance_coverage)
    paid = quantize(paid_amount)

    if insurance < 0:
        raise ValidationError(
            "Insurance coverage cannot be negative",
            details={"insurance_coverage": str(insurance)}
        )
    if discount_amount > subtotal:
        raise ValidationError(
            "Discount exceeds billing subtotal",
            details={"discount": str(discount_amount), "subtotal": str(subtotal)}
        )

    total_amount = quantize(subtotal - discount_amount)
    if insurance > total_amount:
        raise ValidationError(
            "Insurance coverage exceeds billing total after discount",
            details={"insurance_coverage": str(insurance), "total_amount": str(total_amount)}
        )

    patient_payable = quantize(total_amount - insurance)
    remaining = quantize(patient_payable - paid)

    return BillingTotals(
        subtotal=subtotal,
        discount=discount_amount,
        discount_percentage=discount.percentage_value,
        total_amount=total_amount,
        insurance_coverage=insurance,
        patient_payable=patient_payable,
        paid_amount=paid,
        remaining_amount=remaining,
        payment_status=derive_payment_status(patient_payable, paid),
    )
