"""
Billing Domain Models

- Services: master data for billable services and flat fees
- Billings: one header per visit holding the current monetary snapshot
- Billing items: line items, replaced wholesale on every recalculation
- Payments: append-only payment history against a billing header
"""

from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, Boolean, Numeric, Enum
)
from sqlalchemy.orm import relationship
import enum

from app.infrastructure.database import Base
from app.domain.mixins import gen_uuid, TimestampMixin


class ItemType(str, enum.Enum):
    """Source category of a billing line item"""
    SERVICE = "service"
    DRUG = "drug"
    MATERIAL = "material"
    ROOM = "room"
    PROCEDURE = "procedure"
    LABORATORY = "laboratory"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CARD = "card"
    INSURANCE = "insurance"


class ServiceType:
    ADMINISTRATION = "administration"
    CONSULTATION = "consultation"
    PROCEDURE = "procedure"


class Service(TimestampMixin, Base):
    """Billable service master data"""
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    code = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    service_type = Column(String(50), nullable=False, index=True)
    price = Column(Numeric(10, 2), nullable=False)
    description = Column(Text)
    category = Column(String(100))
    is_active = Column(Boolean, default=True, nullable=False)


class Billing(TimestampMixin, Base):
    """Billing header, one per visit"""
    __tablename__ = "billings"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    visit_id = Column(String(36), ForeignKey("visits.id", ondelete="CASCADE"), unique=True, nullable=False)

    # Amounts
    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    discount_percentage = Column(Numeric(5, 2), nullable=True)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # Insurance
    insurance_coverage = Column(Numeric(12, 2), nullable=False, default=0)
    patient_payable = Column(Numeric(12, 2), nullable=False, default=0)

    # Payment tracking
    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    paid_amount = Column(Numeric(12, 2), nullable=False, default=0)
    remaining_amount = Column(Numeric(12, 2), nullable=False, default=0)

    # Last payment details
    payment_method = Column(String(50))
    payment_reference = Column(String(100))
    processed_by = Column(String(36))
    processed_at = Column(DateTime)

    notes = Column(Text)

    # Optimistic lock; a flush against a stale version raises StaleDataError
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    items = relationship(
        "BillingItem",
        back_populates="billing",
        cascade="all, delete-orphan",
        order_by="BillingItem.position",
    )
    payments = relationship("Payment", back_populates="billing", cascade="all, delete-orphan")


class BillingItem(Base):
    """Billing line item"""
    __tablename__ = "billing_items"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    billing_id = Column(String(36), ForeignKey("billings.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    item_type = Column(String(50), nullable=False)
    item_id = Column(String(36))
    item_name = Column(String(255), nullable=False)
    item_code = Column(String(50))

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    discount = Column(Numeric(12, 2), nullable=False, default=0)
    total_price = Column(Numeric(12, 2), nullable=False)

    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    billing = relationship("Billing", back_populates="items")


class Payment(Base):
    """Payment transaction against a billing"""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    billing_id = Column(String(36), ForeignKey("billings.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(50), nullable=False)
    payment_reference = Column(String(100))

    # Cash handling
    amount_received = Column(Numeric(12, 2))
    change_given = Column(Numeric(12, 2))

    received_by = Column(String(36), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    notes = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    billing = relationship("Billing", back_populates="payments")
