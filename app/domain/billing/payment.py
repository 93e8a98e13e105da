"""
Payment processing.

Payments are appended under a row lock on the billing header, and every header
write is version-checked. When another cashier's payment lands between our read
and our write, the transaction is rolled back and replayed against the fresh
balance, so paid_amount never drifts from the payments recorded.
"""

from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConcurrentUpdateError, InvalidPaymentError, NotFoundError, ValidationError
from app.domain.billing.adjustments import BillingTotals, Discount, compute_totals, derive_payment_status
from app.domain.billing.models import Billing, PaymentMethod, PaymentStatus
from app.domain.billing.money import quantize
from app.domain.billing.repository import BillingRepository
from app.domain.billing.service import unit_of_work


REFERENCE_REQUIRED = (PaymentMethod.TRANSFER, PaymentMethod.CARD)
MAX_PAYMENT_ATTEMPTS = 3

T = TypeVar("T")


class PaymentRequest(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    amount_received: Optional[Decimal] = None
    notes: Optional[str] = None


class AdjustedPaymentRequest(PaymentRequest):
    """Payment preceded by discount and insurance changes on the same bill"""
    discount: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    insurance_coverage: Optional[Decimal] = None


class PaymentResult(BaseModel):
    success: bool = True
    payment_id: str
    billing_id: str
    payment_status: PaymentStatus
    paid_amount: Decimal
    remaining_amount: Decimal
    change_given: Optional[Decimal] = None


class PaymentService:
    """Service layer for payments"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = BillingRepository(db)

    async def process_payment(
        self,
        billing_id: str,
        user_id: str,
        request: PaymentRequest
    ) -> PaymentResult:
        async def pay() -> PaymentResult:
            billing = await self._lock_billing(billing_id)
            return await self._record_payment(billing, user_id, request)

        result = await self._run_locked("process payment", billing_id, pay)

        logger.info(
            f"Payment {result.payment_id} of {quantize(request.amount)} ({request.payment_method.value}) "
            f"on billing {billing_id} by {user_id}: status {result.payment_status.value}, "
            f"remaining {result.remaining_amount}"
        )
        return result

    async def process_payment_with_adjustments(
        self,
        billing_id: str,
        user_id: str,
        request: AdjustedPaymentRequest
    ) -> PaymentResult:
        """Apply discount and insurance to the bill, then take the payment, atomically"""
        if request.discount is not None and request.discount_percentage is not None:
            raise ValidationError(
                "Give either a discount amount or a discount percentage, not both",
                details={
                    "discount": str(request.discount),
                    "discount_percentage": str(request.discount_percentage),
                }
            )

        async def adjust_and_pay() -> Tuple[PaymentResult, BillingTotals]:
            billing = await self._lock_billing(billing_id)

            discount = Discount.from_options(request.discount, request.discount_percentage)
            totals = compute_totals(
                billing.subtotal,
                discount or Discount.from_billing(billing),
                insurance_coverage=(
                    request.insurance_coverage
                    if request.insurance_coverage is not None
                    else billing.insurance_coverage
                ),
                paid_amount=billing.paid_amount,
            )
            self.repo.apply_totals(billing, totals)

            return await self._record_payment(billing, user_id, request), totals

        result, totals = await self._run_locked("process payment with adjustments", billing_id, adjust_and_pay)

        logger.info(
            f"Payment {result.payment_id} with adjustments on billing {billing_id} by {user_id}: "
            f"discount {totals.discount}, insurance {totals.insurance_coverage}, "
            f"status {result.payment_status.value}"
        )
        return result

    async def _run_locked(self, operation: str, billing_id: str, work: Callable[[], Awaitable[T]]) -> T:
        """Run work in its own transaction, replaying it when the header version moved"""
        for attempt in range(1, MAX_PAYMENT_ATTEMPTS + 1):
            try:
                async with unit_of_work(self.db, operation):
                    result = await work()
                return result
            except ConcurrentUpdateError:
                if attempt == MAX_PAYMENT_ATTEMPTS:
                    raise
                logger.warning(
                    f"Billing {billing_id} changed during {operation}; "
                    f"retrying ({attempt}/{MAX_PAYMENT_ATTEMPTS})"
                )

    async def _lock_billing(self, billing_id: str) -> Billing:
        billing = await self.repo.get_by_id(billing_id, for_update=True)
        if not billing:
            raise NotFoundError(f"Billing not found: {billing_id}", details={"billing_id": billing_id})
        return billing

    async def _record_payment(self, billing: Billing, user_id: str, request: PaymentRequest) -> PaymentResult:
        amount = quantize(request.amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero", details={"amount": str(amount)})

        balance = quantize(billing.patient_payable - billing.paid_amount)
        if amount > balance:
            logger.warning(f"Rejected overpayment of {amount} on billing {billing.id}; balance {balance}")
            raise InvalidPaymentError.exceeds_balance(amount, balance)

        change_given = None
        amount_received = None
        if request.payment_method == PaymentMethod.CASH and request.amount_received is not None:
            amount_received = quantize(request.amount_received)
            change_given = quantize(amount_received - amount)
            if change_given < 0:
                logger.warning(
                    f"Rejected cash payment on billing {billing.id}: received {amount_received} for {amount}"
                )
                raise InvalidPaymentError.insufficient_received(amount, amount_received)

        if request.payment_method in REFERENCE_REQUIRED and not request.payment_reference:
            raise ValidationError(
                f"Payment reference is required for {request.payment_method.value} payments",
                details={"payment_method": request.payment_method.value}
            )

        # Header first: a stale version fails here, before any payment row exists
        now = datetime.utcnow()
        paid_amount = quantize(billing.paid_amount + amount)
        billing.paid_amount = paid_amount
        billing.remaining_amount = quantize(billing.patient_payable - paid_amount)
        billing.payment_status = derive_payment_status(billing.patient_payable, paid_amount)
        billing.payment_method = request.payment_method.value
        billing.payment_reference = request.payment_reference
        billing.processed_by = user_id
        billing.processed_at = now
        billing.updated_at = now
        await self.db.flush()

        payment = await self.repo.add_payment({
            "billing_id": billing.id,
            "amount": amount,
            "payment_method": request.payment_method.value,
            "payment_reference": request.payment_reference,
            "amount_received": amount_received,
            "change_given": change_given,
            "received_by": user_id,
            "received_at": now,
            "notes": request.notes,
        })

        return PaymentResult(
            payment_id=payment.id,
            billing_id=billing.id,
            payment_status=billing.payment_status,
            paid_amount=billing.paid_amount,
            remaining_amount=billing.remaining_amount,
            change_given=change_given,
        )
