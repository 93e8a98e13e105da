from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Boolean, Numeric
from sqlalchemy.orm import relationship

from app.infrastructure.database import Base
from app.domain.mixins import gen_uuid


class LabOrderStatus:
    ORDERED = "ordered"
    SPECIMEN_COLLECTED = "specimen_collected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    VERIFIED = "verified"
    CANCELLED = "cancelled"


class LabTest(Base):
    __tablename__ = "lab_tests"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    category = Column(String(100))
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class LabOrder(Base):
    __tablename__ = "lab_orders"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    visit_id = Column(String(36), ForeignKey("visits.id", ondelete="CASCADE"), nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    test_id = Column(String(36), ForeignKey("lab_tests.id"), nullable=True)
    order_number = Column(String(50), unique=True, nullable=True)
    status = Column(String(50), default=LabOrderStatus.ORDERED, nullable=False)
    # Price snapshot taken when the order was placed
    price = Column(Numeric(10, 2), nullable=False)
    ordered_at = Column(DateTime, default=datetime.utcnow)
    verified_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    test = relationship("LabTest")
