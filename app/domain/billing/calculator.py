from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.domain.billing.charges import BillingLineItem, ChargeScope, collect_charges
from app.domain.billing.money import sum_amounts
from app.domain.patients.models import Visit


class BillingCalculation(BaseModel):
    visit_id: str
    items: List[BillingLineItem]
    subtotal: Decimal
    total_amount: Decimal


class BillingCalculator:
    """Charges for a visit that is still in care.

    Outpatient and emergency visits are billed the flat fees, every procedure
    on the medical record and only the prescriptions the pharmacy has
    fulfilled. Inpatient visits use the discharge scope so their room stays
    are never left off.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def calculate(self, visit_id: str, now: Optional[datetime] = None) -> BillingCalculation:
        result = await self.db.execute(select(Visit).where(Visit.id == visit_id))
        visit = result.scalar_one_or_none()
        if not visit:
            raise NotFoundError(f"Visit not found: {visit_id}", details={"visit_id": visit_id})

        grouped = await collect_charges(
            self.db, visit_id, ChargeScope.for_active_visit(visit.visit_type), now=now
        )
        items = [item for category_items in grouped.values() for item in category_items]
        subtotal = sum_amounts(item.total_price for item in items)

        return BillingCalculation(
            visit_id=visit_id,
            items=items,
            subtotal=subtotal,
            total_amount=subtotal,
        )
