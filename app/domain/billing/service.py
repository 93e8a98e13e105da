"""
Billing Service Layer

Creates and maintains the billing snapshot for a visit. Every write path
re-derives line items from the clinical tables, derives the header amounts
from them, and replaces the persisted items in the same transaction.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import (
    ConflictError, NotFoundError, handle_database_error
)
from app.domain.billing.adjustments import Discount, compute_totals
from app.domain.billing.aggregation import DischargeAggregationService
from app.domain.billing.calculator import BillingCalculation, BillingCalculator
from app.domain.billing.charges import BillingLineItem
from app.domain.billing.models import Billing, PaymentStatus
from app.domain.billing.money import ZERO, sum_amounts
from app.domain.billing.repository import BillingRepository
from app.domain.patients.models import VisitType


class BillingOptions(BaseModel):
    """Adjustments requested when (re)calculating a billing.

    Fields left as None keep the value already stored on the billing.
    """
    discount: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None
    insurance_coverage: Optional[Decimal] = None


class DischargeGate(BaseModel):
    can_discharge: bool
    reason: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    remaining_amount: Optional[Decimal] = None


class PendingBilling(BaseModel):
    billing_id: str
    visit_id: str
    visit_number: str
    visit_type: VisitType
    patient_id: str
    patient_name: str
    mr_number: str
    total_amount: Decimal
    patient_payable: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    payment_status: PaymentStatus
    created_at: Optional[datetime] = None


@asynccontextmanager
async def unit_of_work(db: AsyncSession, operation: str):
    """Commit on success; roll back everything on any failure or cancellation"""
    try:
        yield
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise handle_database_error(e, operation) from e
    except BaseException:
        await db.rollback()
        raise


class BillingService:
    """Service layer for billing records"""

    def __init__(self, db: AsyncSession, session_factory: Optional[async_sessionmaker] = None):
        self.db = db
        self.repo = BillingRepository(db)
        self.calculator = BillingCalculator(db)
        self.discharge = DischargeAggregationService(db, session_factory=session_factory)

    async def calculate_billing_for_visit(self, visit_id: str) -> BillingCalculation:
        """Compute current charges for a visit without persisting anything"""
        return await self.calculator.calculate(visit_id)

    async def create_billing_from_medical_record(
        self,
        visit_id: str,
        tx: Optional[AsyncSession] = None
    ) -> str:
        """Initial billing for a visit whose medical record was just locked.

        With ``tx`` the work joins the caller's transaction and is only
        flushed; the caller decides when to commit.
        """
        if tx is not None:
            return await BillingService(tx)._create_initial_billing(visit_id)

        async with unit_of_work(self.db, "create billing from medical record"):
            billing_id = await self._create_initial_billing(visit_id)
        return billing_id

    async def _create_initial_billing(self, visit_id: str) -> str:
        if await self.repo.get_by_visit_id(visit_id):
            raise ConflictError(
                "Billing already exists for this visit",
                details={"visit_id": visit_id}
            )

        calculation = await self.calculator.calculate(visit_id)
        totals = compute_totals(calculation.subtotal, Discount.none())
        billing = await self.repo.create(visit_id, totals)
        await self.repo.replace_items(billing.id, calculation.items)

        logger.info(
            f"Created billing {billing.id} for visit {visit_id}: "
            f"{len(calculation.items)} items, subtotal {totals.subtotal}"
        )
        return billing.id

    async def recalculate_billing(self, visit_id: str) -> Billing:
        """Re-sum the persisted line items and refresh the derived amounts.

        Does not re-run the aggregators. Discount, insurance coverage and the
        amount already paid are kept; a percentage discount is re-applied to
        the new subtotal.
        """
        async with unit_of_work(self.db, "recalculate billing"):
            billing = await self.repo.get_by_visit_id(visit_id, for_update=True)
            if not billing:
                raise NotFoundError(
                    "Billing not found for this visit",
                    details={"visit_id": visit_id}
                )

            subtotal = sum_amounts(await self.repo.list_item_totals(billing.id))
            totals = compute_totals(
                subtotal,
                Discount.from_billing(billing),
                insurance_coverage=billing.insurance_coverage,
                paid_amount=billing.paid_amount,
            )
            self.repo.apply_totals(billing, totals)

        logger.info(f"Recalculated billing {billing.id} for visit {visit_id}: subtotal {totals.subtotal}")
        return billing

    async def create_or_update_billing(
        self,
        visit_id: str,
        user_id: str,
        options: Optional[BillingOptions] = None
    ) -> str:
        """Full recompute from the clinical tables, creating the billing if needed"""
        options = options or BillingOptions()

        async with unit_of_work(self.db, "create or update billing"):
            calculation = await self.calculator.calculate(visit_id)
            billing = await self._save_snapshot(
                visit_id,
                calculation.items,
                discount=Discount.from_options(options.discount, options.discount_percentage),
                insurance_coverage=options.insurance_coverage,
            )

        logger.info(
            f"Billing {billing.id} for visit {visit_id} calculated by {user_id}: "
            f"payable {billing.patient_payable}, status {billing.payment_status.value}"
        )
        return billing.id

    async def create_discharge_billing(self, visit_id: str, user_id: str) -> str:
        """Persist the discharge aggregate as the visit's billing snapshot"""
        aggregate = await self.discharge.aggregate(visit_id)

        async with unit_of_work(self.db, "create discharge billing"):
            billing = await self._save_snapshot(visit_id, aggregate.items)

        for warning in aggregate.warnings:
            logger.warning(f"Discharge billing {billing.id}: {warning}")
        logger.info(
            f"Discharge billing {billing.id} for visit {visit_id} created by {user_id}: "
            f"{aggregate.item_count} items, subtotal {aggregate.subtotal}"
        )
        return billing.id

    async def _save_snapshot(
        self,
        visit_id: str,
        items: List[BillingLineItem],
        discount: Optional[Discount] = None,
        insurance_coverage: Optional[Any] = None,
    ) -> Billing:
        """Upsert the header from fresh items and replace the persisted items"""
        subtotal = sum_amounts(item.total_price for item in items)
        billing = await self.repo.get_by_visit_id(visit_id, for_update=True)

        if billing is None:
            totals = compute_totals(
                subtotal,
                discount or Discount.none(),
                insurance_coverage=insurance_coverage if insurance_coverage is not None else ZERO,
            )
            billing = await self.repo.create(visit_id, totals)
        else:
            totals = compute_totals(
                subtotal,
                discount or Discount.from_billing(billing),
                insurance_coverage=(
                    insurance_coverage if insurance_coverage is not None else billing.insurance_coverage
                ),
                paid_amount=billing.paid_amount,
            )
            self.repo.apply_totals(billing, totals)

        await self.repo.replace_items(billing.id, items)
        return billing

    async def can_discharge(self, visit_id: str) -> DischargeGate:
        """Billing gate: a visit may be discharged only once fully paid"""
        billing = await self.repo.get_by_visit_id(visit_id)

        if not billing:
            return DischargeGate(
                can_discharge=False,
                reason="Billing has not been created for this visit",
            )

        if billing.payment_status != PaymentStatus.PAID:
            return DischargeGate(
                can_discharge=False,
                reason=(
                    f"Payment is not settled. Status: {billing.payment_status.value}. "
                    f"Remaining: {billing.remaining_amount}"
                ),
                payment_status=billing.payment_status,
                remaining_amount=billing.remaining_amount,
            )

        return DischargeGate(
            can_discharge=True,
            payment_status=billing.payment_status,
            remaining_amount=billing.remaining_amount,
        )

    async def get_pending_billings(self, limit: int = 100) -> List[PendingBilling]:
        """Cashier queue: billings still pending or partially paid, newest first"""
        rows = await self.repo.list_open_billings(limit=limit)
        return [
            PendingBilling(
                billing_id=billing.id,
                visit_id=visit.id,
                visit_number=visit.visit_number,
                visit_type=visit.visit_type,
                patient_id=patient.id,
                patient_name=patient.name,
                mr_number=patient.mr_number,
                total_amount=billing.total_amount,
                patient_payable=billing.patient_payable,
                paid_amount=billing.paid_amount,
                remaining_amount=billing.remaining_amount,
                payment_status=billing.payment_status,
                created_at=billing.created_at,
            )
            for billing, visit, patient in rows
        ]

    async def get_billing_statistics(self, today: Optional[datetime] = None) -> Dict[str, Any]:
        summary = {
            status: (count, billed, outstanding)
            for status, count, billed, outstanding in await self.repo.summarize_by_status()
        }

        today = (today or datetime.utcnow()).replace(hour=0, minute=0, second=0, microsecond=0)
        tomorrow = today + timedelta(days=1)
        collected_today = await self.repo.sum_payments_between(today, tomorrow)

        def count(status: PaymentStatus) -> int:
            return summary.get(status, (0, ZERO, ZERO))[0]

        return {
            "total_billings": sum(count(status) for status in PaymentStatus),
            "pending_billings": count(PaymentStatus.PENDING),
            "partial_billings": count(PaymentStatus.PARTIAL),
            "paid_billings": count(PaymentStatus.PAID),
            "total_revenue": sum_amounts(billed for _, billed, _ in summary.values()),
            "pending_revenue": sum_amounts(
                outstanding for status, (_, _, outstanding) in summary.items() if status != PaymentStatus.PAID
            ),
            "collected_today": sum_amounts([collected_today]),
        }
