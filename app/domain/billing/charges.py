"""
Charge aggregators.

Each aggregator reads one source of billable facts for a visit and turns it
into normalized billing line items. Nothing here trusts a cached total: every
call re-derives items from the clinical tables, so later edits to procedures,
prescriptions or lab orders show up on the next calculation.
"""

from datetime import datetime, timezone
from decimal import Decimal
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import enum
import math

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain.billing.models import ItemType, Service, ServiceType
from app.domain.billing.money import ZERO, line_total, quantize
from app.domain.emr.models import MedicalRecord, Prescription, Procedure, ProcedureStatus
from app.domain.inpatient.models import BedAssignment, MaterialUsage, Room
from app.domain.lab.models import LabOrder, LabOrderStatus, LabTest
from app.domain.patients.models import VisitType
from app.domain.pharmacy.models import Drug

SECONDS_PER_DAY = 60 * 60 * 24


class BillingLineItem(BaseModel):
    """A computed billing line, not yet persisted"""
    model_config = ConfigDict(use_enum_values=True)

    item_type: ItemType
    item_id: Optional[str] = None
    item_name: str
    item_code: Optional[str] = None
    description: Optional[str] = None
    quantity: int = Field(1, gt=0)
    unit_price: Decimal = Field(ZERO, ge=0)
    discount: Decimal = ZERO
    total_price: Decimal = ZERO


class ChargeCategory(str, enum.Enum):
    MEDICATION = "medication"
    PROCEDURE = "procedure"
    LABORATORY = "laboratory"
    SERVICE = "service"
    ROOM = "room"
    MATERIAL = "material"


class ChargeScope(BaseModel):
    """Which aggregators run for a visit, and with which filters"""
    model_config = ConfigDict(frozen=True)

    fulfilled_prescriptions_only: bool = True
    completed_procedures_only: bool = False
    include_laboratory: bool = False
    include_inpatient_stay: bool = False

    @classmethod
    def for_discharge(cls, visit_type: VisitType) -> "ChargeScope":
        inpatient = VisitType(visit_type) == VisitType.INPATIENT
        return cls(
            fulfilled_prescriptions_only=inpatient,
            completed_procedures_only=inpatient,
            include_laboratory=True,
            include_inpatient_stay=inpatient,
        )

    @classmethod
    def for_active_visit(cls, visit_type: VisitType) -> "ChargeScope":
        if VisitType(visit_type) == VisitType.INPATIENT:
            return cls.for_discharge(visit_type)
        return cls(
            fulfilled_prescriptions_only=True,
            completed_procedures_only=False,
            include_laboratory=False,
            include_inpatient_stay=False,
        )

    @property
    def categories(self) -> List[ChargeCategory]:
        categories = [ChargeCategory.MEDICATION, ChargeCategory.PROCEDURE]
        if self.include_laboratory:
            categories.append(ChargeCategory.LABORATORY)
        categories.append(ChargeCategory.SERVICE)
        if self.include_inpatient_stay:
            categories.extend([ChargeCategory.ROOM, ChargeCategory.MATERIAL])
        return categories


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_stayed(assigned_at: datetime, released_at: datetime) -> int:
    """Whole days charged for a stay, rounded up, never less than one."""
    elapsed = (_as_naive_utc(released_at) - _as_naive_utc(assigned_at)).total_seconds()
    return max(1, math.ceil(elapsed / SECONDS_PER_DAY))


async def aggregate_room_charges(
    db: AsyncSession,
    visit_id: str,
    now: Optional[datetime] = None
) -> List[BillingLineItem]:
    """One line per bed assignment, so room transfers stay visible on the bill."""
    result = await db.execute(
        select(BedAssignment, Room)
        .join(Room, BedAssignment.room_id == Room.id)
        .where(BedAssignment.visit_id == visit_id)
        .order_by(BedAssignment.assigned_at)
    )
    now = now or datetime.utcnow()

    items = []
    for assignment, room in result.all():
        days = days_stayed(assignment.assigned_at, assignment.discharged_at or now)
        items.append(BillingLineItem(
            item_type=ItemType.ROOM,
            item_id=assignment.id,
            item_name=f"Room {room.room_type} - {room.room_number} (Bed {assignment.bed_number})",
            item_code=room.room_number,
            quantity=days,
            unit_price=quantize(room.daily_rate),
            total_price=line_total(days, room.daily_rate),
            description=f"Inpatient stay, {days} day(s)",
        ))
    return items


async def aggregate_material_charges(db: AsyncSession, visit_id: str) -> List[BillingLineItem]:
    result = await db.execute(
        select(MaterialUsage)
        .where(MaterialUsage.visit_id == visit_id)
        .order_by(MaterialUsage.used_at)
    )

    items = []
    for material in result.scalars().all():
        items.append(BillingLineItem(
            item_type=ItemType.MATERIAL,
            item_id=material.id,
            item_name=material.material_name or "Material",
            quantity=material.quantity,
            unit_price=quantize(material.unit_price),
            # Usage rows carry the total computed when the material was used
            total_price=quantize(material.total_price),
            description=material.notes or f"{material.quantity} {material.unit or 'unit'}",
        ))
    return items


async def aggregate_medication_charges(
    db: AsyncSession,
    visit_id: str,
    fulfilled_only: bool = True
) -> List[BillingLineItem]:
    query = (
        select(Prescription, Drug)
        .join(Drug, Prescription.drug_id == Drug.id)
        .where(Prescription.visit_id == visit_id)
    )
    if fulfilled_only:
        query = query.where(Prescription.is_fulfilled.is_(True))

    result = await db.execute(query.order_by(Prescription.created_at))

    items = []
    for prescription, drug in result.all():
        quantity = (
            prescription.dispensed_quantity
            if prescription.dispensed_quantity is not None
            else prescription.quantity
        )
        if quantity <= 0:
            logger.debug(f"Prescription {prescription.id} dispensed nothing; not billed")
            continue
        if drug.price is None:
            logger.warning(f"Drug {drug.id} has no price; prescription {prescription.id} billed at zero")
        description = " - ".join(part for part in (prescription.dosage, prescription.frequency) if part)
        items.append(BillingLineItem(
            item_type=ItemType.DRUG,
            item_id=prescription.id,
            item_name=drug.name,
            item_code=drug.generic_name,
            quantity=quantity,
            unit_price=quantize(drug.price),
            total_price=line_total(quantity, drug.price),
            description=description or None,
        ))
    return items


async def aggregate_procedure_charges(
    db: AsyncSession,
    visit_id: str,
    completed_only: bool = False
) -> List[BillingLineItem]:
    """Procedures priced through the service master.

    A procedure is matched by its service link, or by ICD-9 code when it has
    none. Unmatched procedures still appear on the bill at zero so the bill
    is never blocked by missing master data.
    """
    query = (
        select(Procedure, Service)
        .join(MedicalRecord, Procedure.medical_record_id == MedicalRecord.id)
        .outerjoin(
            Service,
            or_(
                Service.id == Procedure.service_id,
                and_(Procedure.service_id.is_(None), Service.code == Procedure.icd9_code),
            ),
        )
        .where(MedicalRecord.visit_id == visit_id)
    )
    if completed_only:
        query = query.where(Procedure.status == ProcedureStatus.COMPLETED)

    result = await db.execute(query.order_by(Procedure.performed_at))

    items = []
    for procedure, service in result.all():
        if service is None:
            logger.warning(
                f"No billable service matches procedure {procedure.id} "
                f"(code={procedure.icd9_code}); billed at zero"
            )
        price = quantize(service.price) if service is not None else ZERO
        items.append(BillingLineItem(
            item_type=ItemType.PROCEDURE,
            item_id=service.id if service is not None else None,
            item_name=service.name if service is not None else procedure.description,
            item_code=procedure.icd9_code or (service.code if service is not None else None),
            quantity=1,
            unit_price=price,
            total_price=price,
            description=procedure.description,
        ))
    return items


async def aggregate_lab_order_charges(db: AsyncSession, visit_id: str) -> List[BillingLineItem]:
    """Verified lab orders, at the price locked in when each was ordered."""
    result = await db.execute(
        select(LabOrder, LabTest)
        .outerjoin(LabTest, LabOrder.test_id == LabTest.id)
        .where(
            LabOrder.visit_id == visit_id,
            LabOrder.status == LabOrderStatus.VERIFIED,
        )
        .order_by(LabOrder.ordered_at)
    )

    items = []
    for order, test in result.all():
        price = quantize(order.price)
        items.append(BillingLineItem(
            item_type=ItemType.LABORATORY,
            item_id=order.id,
            item_name=test.name if test is not None else "Lab Test",
            item_code=test.code if test is not None else None,
            quantity=1,
            unit_price=price,
            total_price=price,
            description=order.order_number,
        ))
    return items


FLAT_FEES = (
    (ServiceType.ADMINISTRATION, "Registration and administration fee"),
    (ServiceType.CONSULTATION, "Doctor consultation fee"),
)


async def aggregate_service_charges(db: AsyncSession) -> List[BillingLineItem]:
    """Administration and consultation fees, each charged at most once."""
    items = []
    for service_type, description in FLAT_FEES:
        result = await db.execute(
            select(Service)
            .where(Service.service_type == service_type, Service.is_active.is_(True))
            .order_by(Service.created_at)
            .limit(1)
        )
        service = result.scalar_one_or_none()
        if service is None:
            continue

        price = quantize(service.price)
        items.append(BillingLineItem(
            item_type=ItemType.SERVICE,
            item_id=service.id,
            item_name=service.name,
            item_code=service.code,
            quantity=1,
            unit_price=price,
            total_price=price,
            description=description,
        ))
    return items


def _aggregators(
    scope: ChargeScope,
    visit_id: str,
    now: Optional[datetime]
) -> Dict[ChargeCategory, Callable[[AsyncSession], Awaitable[List[BillingLineItem]]]]:
    available = {
        ChargeCategory.MEDICATION: partial(
            aggregate_medication_charges,
            visit_id=visit_id,
            fulfilled_only=scope.fulfilled_prescriptions_only,
        ),
        ChargeCategory.PROCEDURE: partial(
            aggregate_procedure_charges,
            visit_id=visit_id,
            completed_only=scope.completed_procedures_only,
        ),
        ChargeCategory.LABORATORY: partial(aggregate_lab_order_charges, visit_id=visit_id),
        ChargeCategory.SERVICE: aggregate_service_charges,
        ChargeCategory.ROOM: partial(aggregate_room_charges, visit_id=visit_id, now=now),
        ChargeCategory.MATERIAL: partial(aggregate_material_charges, visit_id=visit_id),
    }
    return {category: available[category] for category in scope.categories}


async def collect_charges(
    db: AsyncSession,
    visit_id: str,
    scope: ChargeScope,
    session_factory: Optional[async_sessionmaker] = None,
    now: Optional[datetime] = None,
) -> Dict[ChargeCategory, List[BillingLineItem]]:
    """Run every aggregator in scope and return items grouped by category.

    With a session factory the aggregators fan out concurrently, each on its
    own session; a single AsyncSession cannot run statements concurrently, so
    without one they run in turn on ``db``.
    """
    aggregators = _aggregators(scope, visit_id, now)

    async def run(aggregator):
        if session_factory is None:
            return await aggregator(db)
        async with session_factory() as session:
            return await aggregator(session)

    if session_factory is not None:
        results = await asyncio.gather(*(run(a) for a in aggregators.values()))
    else:
        results = [await run(a) for a in aggregators.values()]

    return dict(zip(aggregators.keys(), results))
