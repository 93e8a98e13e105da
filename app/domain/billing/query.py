import math
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.models import Billing, BillingItem, Payment, PaymentMethod
from app.domain.billing.repository import BillingRepository
from app.domain.patients.models import Patient, Visit, VisitType


class BillingDetails(BaseModel):
    """Everything needed to display or print a visit's bill"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    billing: Billing
    items: List[BillingItem]
    payments: List[Payment]
    patient: Patient
    visit: Visit


class Transaction(BaseModel):
    """A payment with the bill, visit and patient it belongs to.

    Items are only loaded for a single transaction, for receipt reprints.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    payment: Payment
    billing: Billing
    visit: Visit
    patient: Patient
    items: List[BillingItem] = []


class TransactionPage(BaseModel):
    transactions: List[Transaction]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class BillingQueryService:
    """Read-only access to billings"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = BillingRepository(db)

    async def get_billing(self, visit_id: str) -> Optional[Billing]:
        return await self.repo.get_by_visit_id(visit_id)

    async def get_billing_details(self, visit_id: str) -> Optional[BillingDetails]:
        """Billing with items in insertion order and payments newest first"""
        billing = await self.repo.get_by_visit_id(visit_id)
        if not billing:
            return None

        identity = await self.repo.get_visit_identity(visit_id)
        if identity is None:
            return None
        visit, patient = identity

        return BillingDetails(
            billing=billing,
            items=await self.repo.list_items(billing.id),
            payments=await self.repo.list_payments(billing.id),
            patient=patient,
            visit=visit,
        )

    async def list_transactions(
        self,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        payment_method: Optional[PaymentMethod] = None,
        visit_type: Optional[VisitType] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> TransactionPage:
        """Payment history, newest first, searchable by patient name, MR number or visit number"""
        filters = dict(
            search=search,
            payment_method=payment_method.value if payment_method else None,
            visit_type=visit_type,
            date_from=date_from,
            date_to=date_to,
        )

        total = await self.repo.count_transactions(**filters)
        rows = []
        if total:
            rows = await self.repo.list_transactions(skip=(page - 1) * limit, limit=limit, **filters)

        return TransactionPage(
            transactions=[
                Transaction(payment=payment, billing=billing, visit=visit, patient=patient)
                for payment, billing, visit, patient in rows
            ],
            page=page,
            limit=limit,
            total=total,
        )

    async def get_transaction(self, payment_id: str) -> Optional[Transaction]:
        row = await self.repo.get_transaction(payment_id)
        if row is None:
            return None

        payment, billing, visit, patient = row
        return Transaction(
            payment=payment,
            billing=billing,
            visit=visit,
            patient=patient,
            items=await self.repo.list_items(billing.id),
        )
