from datetime import datetime

from sqlalchemy import Column, String, DateTime, Text, Boolean, Numeric

from app.infrastructure.database import Base
from app.domain.mixins import gen_uuid


class Drug(Base):
    __tablename__ = "drugs"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    name = Column(String(255), nullable=False)
    generic_name = Column(String(255), nullable=True)
    unit = Column(String(50), nullable=False, default="tablet")
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
