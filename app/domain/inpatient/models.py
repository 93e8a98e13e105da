from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Text, Numeric
from sqlalchemy.orm import relationship

from app.infrastructure.database import Base
from app.domain.mixins import gen_uuid


class Room(Base):
    __tablename__ = "rooms"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    room_number = Column(String(20), unique=True, nullable=False)
    room_type = Column(String(50), nullable=False)
    bed_count = Column(Integer, nullable=False, default=1)
    daily_rate = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default="available")
    created_at = Column(DateTime, default=datetime.utcnow)


class BedAssignment(Base):
    __tablename__ = "bed_assignments"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    visit_id = Column(String(36), ForeignKey("visits.id", ondelete="CASCADE"), nullable=False, index=True)
    room_id = Column(String(36), ForeignKey("rooms.id"), nullable=False)
    bed_number = Column(String(10), nullable=False)
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    # NULL while the patient still occupies the bed
    discharged_at = Column(DateTime, nullable=True)
    assigned_by = Column(String(36))
    notes = Column(Text)

    room = relationship("Room")


class MaterialUsage(Base):
    __tablename__ = "material_usage"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    visit_id = Column(String(36), ForeignKey("visits.id", ondelete="CASCADE"), nullable=False, index=True)
    material_name = Column(String(255))
    unit = Column(String(50))
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2))
    # Computed when the material was used
    total_price = Column(Numeric(10, 2), nullable=False)
    used_by = Column(String(36))
    used_at = Column(DateTime, default=datetime.utcnow)
    notes = Column(Text)
