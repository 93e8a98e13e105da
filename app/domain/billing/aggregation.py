"""
Discharge billing aggregation.

Collects every billable item for a visit at discharge time: medications,
procedures, verified lab orders and flat fees for all visits, plus room stays
and materials for inpatient visits.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import NotFoundError
from app.domain.billing.charges import (
    BillingLineItem, ChargeCategory, ChargeScope, collect_charges
)
from app.domain.billing.money import sum_amounts
from app.domain.patients.models import Visit, VisitType


CATEGORY_LABELS = {
    ChargeCategory.ROOM: "Room & Inpatient Care",
    ChargeCategory.MATERIAL: "Medical Supplies & Materials",
    ChargeCategory.MEDICATION: "Medications",
    ChargeCategory.PROCEDURE: "Medical Procedures",
    ChargeCategory.LABORATORY: "Laboratory Tests",
    ChargeCategory.SERVICE: "Administration & Consultation",
}

# Display order of the summary breakdown
SUMMARY_ORDER = [
    ChargeCategory.ROOM,
    ChargeCategory.MATERIAL,
    ChargeCategory.MEDICATION,
    ChargeCategory.PROCEDURE,
    ChargeCategory.LABORATORY,
    ChargeCategory.SERVICE,
]


class DischargeBillingAggregate(BaseModel):
    visit_id: str
    visit_type: VisitType
    items: List[BillingLineItem]
    breakdown: Dict[str, Decimal]
    counts: Dict[str, int]
    subtotal: Decimal
    item_count: int
    warnings: List[str] = []


class BreakdownEntry(BaseModel):
    label: str
    amount: Decimal
    count: int


class DischargeBillingSummary(BaseModel):
    visit_id: str
    visit_type: VisitType
    breakdown: Dict[str, BreakdownEntry]
    subtotal: Decimal
    total_items: int
    warnings: List[str] = []


def unpriced_item_warnings(items: List[BillingLineItem]) -> List[str]:
    return [
        f"{item.item_name} has no matching price and was billed at zero"
        for item in items
        if item.total_price == 0 and item.item_type in ("procedure", "drug")
    ]


class DischargeAggregationService:
    """Builds the itemized discharge bill for a visit"""

    def __init__(self, db: AsyncSession, session_factory: Optional[async_sessionmaker] = None):
        self.db = db
        self.session_factory = session_factory

    async def _get_visit(self, visit_id: str) -> Visit:
        result = await self.db.execute(select(Visit).where(Visit.id == visit_id))
        visit = result.scalar_one_or_none()
        if not visit:
            raise NotFoundError(f"Visit not found: {visit_id}", details={"visit_id": visit_id})
        return visit

    async def aggregate(self, visit_id: str, now: Optional[datetime] = None) -> DischargeBillingAggregate:
        visit = await self._get_visit(visit_id)
        scope = ChargeScope.for_discharge(visit.visit_type)

        grouped = await collect_charges(
            self.db, visit_id, scope, session_factory=self.session_factory, now=now
        )

        items: List[BillingLineItem] = []
        breakdown: Dict[str, Decimal] = {}
        counts: Dict[str, int] = {}
        for category, category_items in grouped.items():
            items.extend(category_items)
            breakdown[f"{category.value}_charges"] = sum_amounts(i.total_price for i in category_items)
            counts[f"{category.value}_count"] = len(category_items)

        return DischargeBillingAggregate(
            visit_id=visit_id,
            visit_type=visit.visit_type,
            items=items,
            breakdown=breakdown,
            counts=counts,
            subtotal=sum_amounts(i.total_price for i in items),
            item_count=len(items),
            warnings=unpriced_item_warnings(items),
        )

    async def get_summary(self, visit_id: str, now: Optional[datetime] = None) -> DischargeBillingSummary:
        """Labelled per-category totals for the discharge screen"""
        aggregate = await self.aggregate(visit_id, now=now)

        breakdown = {}
        for category in SUMMARY_ORDER:
            key = f"{category.value}_charges"
            if key not in aggregate.breakdown:
                continue
            breakdown[key] = BreakdownEntry(
                label=CATEGORY_LABELS[category],
                amount=aggregate.breakdown[key],
                count=aggregate.counts[f"{category.value}_count"],
            )

        return DischargeBillingSummary(
            visit_id=aggregate.visit_id,
            visit_type=aggregate.visit_type,
            breakdown=breakdown,
            subtotal=aggregate.subtotal,
            total_items=aggregate.item_count,
            warnings=aggregate.warnings,
        )
