from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, List, Optional, Tuple

from sqlalchemy import select, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.adjustments import BillingTotals
from app.domain.billing.charges import BillingLineItem
from app.domain.billing.models import Billing, BillingItem, Payment, PaymentStatus
from app.domain.billing.money import line_total
from app.domain.patients.models import Patient, Visit, VisitType


class BillingRepository:
    """Repository for billing data access.

    Writes only flush; the calling service owns the transaction so a header,
    its items and its payments always commit or roll back together.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_visit(self, visit_id: str) -> Optional[Visit]:
        result = await self.db.execute(select(Visit).where(Visit.id == visit_id))
        return result.scalar_one_or_none()

    async def get_by_id(self, billing_id: str, for_update: bool = False) -> Optional[Billing]:
        query = select(Billing).where(Billing.id == billing_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_visit_id(self, visit_id: str, for_update: bool = False) -> Optional[Billing]:
        query = select(Billing).where(Billing.visit_id == visit_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def create(self, visit_id: str, totals: BillingTotals, notes: Optional[str] = None) -> Billing:
        billing = Billing(visit_id=visit_id, notes=notes)
        self.apply_totals(billing, totals)
        self.db.add(billing)
        await self.db.flush()
        return billing

    def apply_totals(self, billing: Billing, totals: BillingTotals) -> Billing:
        billing.subtotal = totals.subtotal
        billing.discount = totals.discount
        billing.discount_percentage = totals.discount_percentage
        billing.total_amount = totals.total_amount
        billing.insurance_coverage = totals.insurance_coverage
        billing.patient_payable = totals.patient_payable
        billing.paid_amount = totals.paid_amount
        billing.remaining_amount = totals.remaining_amount
        billing.payment_status = totals.payment_status
        billing.updated_at = datetime.utcnow()
        return billing

    async def replace_items(self, billing_id: str, items: Iterable[BillingLineItem]) -> List[BillingItem]:
        """Delete every line item of a billing and insert the given ones"""
        await self.db.execute(delete(BillingItem).where(BillingItem.billing_id == billing_id))

        rows = []
        for position, item in enumerate(items):
            rows.append(BillingItem(
                billing_id=billing_id,
                position=position,
                item_type=item.item_type,
                item_id=item.item_id,
                item_name=item.item_name,
                item_code=item.item_code,
                quantity=item.quantity,
                unit_price=item.unit_price,
                subtotal=line_total(item.quantity, item.unit_price),
                discount=item.discount,
                total_price=item.total_price,
                description=item.description,
            ))
        self.db.add_all(rows)
        await self.db.flush()
        return rows

    async def list_items(self, billing_id: str) -> List[BillingItem]:
        result = await self.db.execute(
            select(BillingItem)
            .where(BillingItem.billing_id == billing_id)
            .order_by(BillingItem.position, BillingItem.created_at)
        )
        return result.scalars().all()

    async def list_item_totals(self, billing_id: str) -> List:
        result = await self.db.execute(
            select(BillingItem.total_price).where(BillingItem.billing_id == billing_id)
        )
        return result.scalars().all()

    async def add_payment(self, payment_data: dict) -> Payment:
        payment = Payment(**payment_data)
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def list_payments(self, billing_id: str) -> List[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.billing_id == billing_id)
            .order_by(Payment.received_at.desc())
        )
        return result.scalars().all()

    async def get_visit_identity(self, visit_id: str) -> Optional[Tuple[Visit, Patient]]:
        result = await self.db.execute(
            select(Visit, Patient)
            .join(Patient, Visit.patient_id == Patient.id)
            .where(Visit.id == visit_id)
        )
        row = result.first()
        return (row[0], row[1]) if row else None

    async def list_open_billings(self, limit: int = 100) -> List[Tuple[Billing, Visit, Patient]]:
        result = await self.db.execute(
            select(Billing, Visit, Patient)
            .join(Visit, Billing.visit_id == Visit.id)
            .join(Patient, Visit.patient_id == Patient.id)
            .where(Billing.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.PARTIAL]))
            .order_by(Billing.created_at.desc())
            .limit(limit)
        )
        return [tuple(row) for row in result.all()]

    async def summarize_by_status(self) -> List[Tuple[PaymentStatus, int, Any, Any]]:
        """Per status: billing count, billed total and outstanding balance"""
        result = await self.db.execute(
            select(
                Billing.payment_status,
                func.count(Billing.id),
                func.coalesce(func.sum(Billing.total_amount), 0),
                func.coalesce(func.sum(Billing.remaining_amount), 0),
            ).group_by(Billing.payment_status)
        )
        return [tuple(row) for row in result.all()]

    async def sum_payments_between(self, start: datetime, end: datetime):
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0))
            .where(Payment.received_at >= start, Payment.received_at < end)
        )
        return result.scalar_one()

    # Transaction history

    def _transaction_filters(
        self,
        query,
        search: Optional[str] = None,
        payment_method: Optional[str] = None,
        visit_type: Optional[VisitType] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ):
        query = (
            query.select_from(Payment)
            .join(Billing, Payment.billing_id == Billing.id)
            .join(Visit, Billing.visit_id == Visit.id)
            .join(Patient, Visit.patient_id == Patient.id)
        )

        if search:
            query = query.where(or_(
                Patient.name.ilike(f"%{search}%"),
                Patient.mr_number.ilike(f"%{search}%"),
                Visit.visit_number.ilike(f"%{search}%"),
            ))

        if payment_method:
            query = query.where(Payment.payment_method == payment_method)

        if visit_type:
            query = query.where(Visit.visit_type == visit_type)

        # Date bounds cover whole days
        if date_from:
            query = query.where(Payment.received_at >= datetime.combine(date_from, time.min))

        if date_to:
            query = query.where(Payment.received_at < datetime.combine(date_to + timedelta(days=1), time.min))

        return query

    async def list_transactions(
        self,
        skip: int = 0,
        limit: int = 10,
        **filters
    ) -> List[Tuple[Payment, Billing, Visit, Patient]]:
        """Payments with their billing, visit and patient, newest first"""
        query = self._transaction_filters(select(Payment, Billing, Visit, Patient), **filters)
        query = query.order_by(Payment.received_at.desc()).offset(skip).limit(limit)

        result = await self.db.execute(query)
        return [tuple(row) for row in result.all()]

    async def count_transactions(self, **filters) -> int:
        query = self._transaction_filters(select(func.count(Payment.id)), **filters)
        result = await self.db.execute(query)
        return result.scalar_one()

    async def get_transaction(self, payment_id: str) -> Optional[Tuple[Payment, Billing, Visit, Patient]]:
        query = self._transaction_filters(select(Payment, Billing, Visit, Patient)).where(Payment.id == payment_id)
        result = await self.db.execute(query)
        row = result.first()
        return tuple(row) if row else None
