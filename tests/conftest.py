import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.main import app
from app.infrastructure.database import Base, get_db, get_session_factory
from app.domain.billing.models import Service, ServiceType
from app.domain.emr.models import MedicalRecord, Prescription, Procedure, ProcedureStatus
from app.domain.inpatient.models import BedAssignment, MaterialUsage, Room
from app.domain.lab.models import LabOrder, LabOrderStatus, LabTest
from app.domain.patients.models import Patient, Visit, VisitType
from app.domain.pharmacy.models import Drug


ADMISSION = datetime(2024, 1, 1, 8, 0, 0)
CASHIER_ID = "cashier-001"


@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """A throwaway SQLite database file per test.

    A file rather than :memory: so concurrent aggregator sessions see the
    same committed data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database dependency overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-Id": CASHIER_ID},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


class BillingFactory:
    """Seeds the clinical rows that billing reads"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def visit(self, visit_type: VisitType = VisitType.OUTPATIENT) -> Visit:
        n = self._next()
        patient = await self._save(Patient(mr_number=f"MR{n:06d}", name=f"Patient {n}"))
        return await self._save(Visit(
            patient_id=patient.id,
            visit_number=f"V{n:06d}",
            visit_type=visit_type,
            status="in_progress",
            admission_date=ADMISSION,
        ))

    async def service(self, service_type: str, price, code: Optional[str] = None,
                      name: Optional[str] = None, is_active: bool = True) -> Service:
        n = self._next()
        return await self._save(Service(
            code=code or f"SVC{n:03d}",
            name=name or f"{service_type.title()} {n}",
            service_type=service_type,
            price=Decimal(str(price)),
            is_active=is_active,
        ))

    async def flat_fees(self, admin=20000, consultation=50000):
        await self.service(ServiceType.ADMINISTRATION, admin, code="ADM001", name="Administration Fee")
        await self.service(ServiceType.CONSULTATION, consultation, code="CON001", name="Consultation Fee")

    async def room(self, daily_rate, room_type: str = "VIP") -> Room:
        n = self._next()
        return await self._save(Room(
            room_number=f"R{n:03d}", room_type=room_type, daily_rate=Decimal(str(daily_rate))
        ))

    async def bed_assignment(self, visit: Visit, room: Room, assigned_at: datetime,
                             discharged_at: Optional[datetime] = None) -> BedAssignment:
        return await self._save(BedAssignment(
            visit_id=visit.id,
            room_id=room.id,
            bed_number="A",
            assigned_at=assigned_at,
            discharged_at=discharged_at,
        ))

    async def material(self, visit: Visit, quantity: int, unit_price, name: str = "Gauze") -> MaterialUsage:
        unit_price = Decimal(str(unit_price))
        return await self._save(MaterialUsage(
            visit_id=visit.id,
            material_name=name,
            unit="pcs",
            quantity=quantity,
            unit_price=unit_price,
            total_price=unit_price * quantity,
            used_at=ADMISSION,
        ))

    async def drug(self, price, name: str = "Paracetamol 500mg") -> Drug:
        return await self._save(Drug(name=name, generic_name="Paracetamol", price=Decimal(str(price))))

    async def prescription(self, visit: Visit, drug: Drug, quantity: int, is_fulfilled: bool = True,
                           dispensed_quantity: Optional[int] = None) -> Prescription:
        return await self._save(Prescription(
            visit_id=visit.id,
            drug_id=drug.id,
            dosage="500mg",
            frequency="3x daily",
            quantity=quantity,
            is_fulfilled=is_fulfilled,
            dispensed_quantity=dispensed_quantity,
        ))

    async def medical_record(self, visit: Visit) -> MedicalRecord:
        return await self._save(MedicalRecord(visit_id=visit.id, soap_assessment="Observation"))

    async def procedure(self, record: MedicalRecord, description: str = "Wound suturing",
                        service: Optional[Service] = None, icd9_code: Optional[str] = None,
                        status: ProcedureStatus = ProcedureStatus.COMPLETED) -> Procedure:
        return await self._save(Procedure(
            medical_record_id=record.id,
            service_id=service.id if service is not None else None,
            icd9_code=icd9_code,
            description=description,
            status=status,
            performed_at=ADMISSION + timedelta(hours=self._next()),
        ))

    async def lab_order(self, visit: Visit, price, status: str = LabOrderStatus.VERIFIED) -> LabOrder:
        n = self._next()
        test = await self._save(LabTest(
            code=f"LAB{n:03d}", name="Complete Blood Count", category="hematology",
            price=Decimal(str(price)),
        ))
        return await self._save(LabOrder(
            visit_id=visit.id,
            patient_id=visit.patient_id,
            test_id=test.id,
            order_number=f"LO{n:06d}",
            status=status,
            price=Decimal(str(price)),
            ordered_at=ADMISSION + timedelta(hours=n),
        ))

    async def inpatient_scenario(self) -> Visit:
        """Three-day inpatient stay whose discharge bill totals 1,205,000"""
        await self.flat_fees()
        visit = await self.visit(VisitType.INPATIENT)

        room = await self.room(300000)
        await self.bed_assignment(visit, room, ADMISSION, ADMISSION + timedelta(days=3))

        drug = await self.drug(5000)
        await self.prescription(visit, drug, quantity=2, is_fulfilled=True, dispensed_quantity=2)

        suturing = await self.service(ServiceType.PROCEDURE, 150000, code="86.59", name="Wound Suturing")
        record = await self.medical_record(visit)
        await self.procedure(record, service=suturing)

        await self.lab_order(visit, 75000, status=LabOrderStatus.VERIFIED)
        return visit


@pytest.fixture(scope="function")
def factory(db_session: AsyncSession) -> BillingFactory:
    return BillingFactory(db_session)
