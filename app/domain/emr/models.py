"""
Electronic Medical Records (EMR) Domain Models

Billing reads three clinical tables:
- Medical records (one per visit, locked when finalized)
- Procedures (ICD-9 coded, priced through the billable service master)
- Prescriptions (charged once the pharmacy has dispensed them)
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Integer, Text, Enum
)
from sqlalchemy.orm import relationship
from app.infrastructure.database import Base
from app.domain.mixins import gen_uuid
import enum


class ProcedureStatus(str, enum.Enum):
    """Status of procedure"""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MedicalRecord(Base):
    """Clinical documentation for a visit"""
    __tablename__ = "medical_records"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    visit_id = Column(String(36), ForeignKey("visits.id", ondelete="CASCADE"), nullable=False, index=True)
    doctor_id = Column(String(36))

    # SOAP
    soap_subjective = Column(Text)
    soap_objective = Column(Text)
    soap_assessment = Column(Text)
    soap_plan = Column(Text)

    # Locking
    is_locked = Column(Boolean, default=False, nullable=False)
    locked_at = Column(DateTime)
    locked_by = Column(String(36))

    created_at = Column(DateTime, default=datetime.utcnow)

    procedures = relationship("Procedure", back_populates="medical_record", cascade="all, delete-orphan")


class Procedure(Base):
    """Procedure performed during a visit"""
    __tablename__ = "procedures"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    medical_record_id = Column(
        String(36), ForeignKey("medical_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id = Column(String(36), ForeignKey("services.id"))

    icd9_code = Column(String(20), index=True)
    description = Column(Text, nullable=False)
    status = Column(Enum(ProcedureStatus), default=ProcedureStatus.COMPLETED, nullable=False)

    performed_by = Column(String(36))
    performed_at = Column(DateTime, default=datetime.utcnow)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    medical_record = relationship("MedicalRecord", back_populates="procedures")


class Prescription(Base):
    """Drug prescription for a visit"""
    __tablename__ = "prescriptions"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    visit_id = Column(String(36), ForeignKey("visits.id", ondelete="CASCADE"), nullable=False, index=True)
    medical_record_id = Column(String(36), ForeignKey("medical_records.id", ondelete="CASCADE"))
    drug_id = Column(String(36), ForeignKey("drugs.id"), nullable=False)

    dosage = Column(String(100))
    frequency = Column(String(100), nullable=False)
    duration = Column(String(100))
    quantity = Column(Integer, nullable=False)

    # Pharmacy fulfillment
    is_fulfilled = Column(Boolean, default=False, nullable=False)
    fulfilled_by = Column(String(36))
    fulfilled_at = Column(DateTime)
    dispensed_quantity = Column(Integer)

    created_at = Column(DateTime, default=datetime.utcnow)

    drug = relationship("Drug")
