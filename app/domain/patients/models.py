"""
Patient and visit models.

Registration and visit workflows live outside this service; billing only
reads these rows to scope charges and to print patient identity on receipts.
"""

from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
import enum

from app.infrastructure.database import Base
from app.domain.mixins import gen_uuid


class VisitType(str, enum.Enum):
    """Type of visit"""
    OUTPATIENT = "outpatient"
    INPATIENT = "inpatient"
    EMERGENCY = "emergency"


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    mr_number = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    visits = relationship("Visit", back_populates="patient")


class Visit(Base):
    __tablename__ = "visits"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    visit_number = Column(String(30), unique=True, nullable=False)
    visit_type = Column(Enum(VisitType), nullable=False, default=VisitType.OUTPATIENT)
    status = Column(String(30), nullable=False, default="pending")
    admission_date = Column(DateTime)
    discharge_date = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)

    patient = relationship("Patient", back_populates="visits")
