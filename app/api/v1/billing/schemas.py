from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

from app.domain.billing.models import PaymentMethod, PaymentStatus
from app.domain.billing.money import format_money
from app.domain.patients.models import VisitType

# Monetary fields go over the wire as 2-dp decimal strings
Money = Annotated[Decimal, PlainSerializer(format_money, return_type=str, when_used="json")]


class BillingItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    item_type: str
    item_id: Optional[str] = None
    item_name: str
    item_code: Optional[str] = None
    description: Optional[str] = None
    quantity: int
    unit_price: Money
    subtotal: Money
    discount: Money
    total_price: Money


class LineItemResponse(BaseModel):
    """A computed line that has not been persisted"""
    model_config = ConfigDict(from_attributes=True)

    item_type: str
    item_id: Optional[str] = None
    item_name: str
    item_code: Optional[str] = None
    description: Optional[str] = None
    quantity: int
    unit_price: Money
    discount: Money
    total_price: Money


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: Money
    payment_method: str
    payment_reference: Optional[str] = None
    amount_received: Optional[Money] = None
    change_given: Optional[Money] = None
    received_by: str
    received_at: datetime
    notes: Optional[str] = None


class BillingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    visit_id: str
    subtotal: Money
    discount: Money
    discount_percentage: Optional[Decimal] = None
    total_amount: Money
    insurance_coverage: Money
    patient_payable: Money
    paid_amount: Money
    remaining_amount: Money
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PatientSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    mr_number: str


class VisitSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    visit_number: str
    visit_type: VisitType
    created_at: Optional[datetime] = None


class BillingDetailsResponse(BaseModel):
    billing: BillingResponse
    items: List[BillingItemResponse]
    payments: List[PaymentResponse]
    patient: PatientSummary
    visit: VisitSummary
    currency: str


class BillingPreviewResponse(BaseModel):
    visit_id: str
    items: List[LineItemResponse]
    subtotal: Money
    total_amount: Money


class BillingCalculateRequest(BaseModel):
    discount: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    insurance_coverage: Optional[Decimal] = Field(None, ge=0)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_reference: Optional[str] = None
    amount_received: Optional[Decimal] = None
    notes: Optional[str] = None


class ProcessPaymentRequest(PaymentCreate):
    billing_id: str
    discount: Optional[Decimal] = Field(None, ge=0)
    discount_percentage: Optional[Decimal] = Field(None, ge=0, le=100)
    insurance_coverage: Optional[Decimal] = Field(None, ge=0)


class PaymentResultResponse(BaseModel):
    success: bool
    payment_id: str
    billing_id: str
    payment_status: PaymentStatus
    paid_amount: Money
    remaining_amount: Money
    change_given: Optional[Money] = None


class DischargeBillingCreate(BaseModel):
    visit_id: str


class BillingCreatedResponse(BaseModel):
    success: bool = True
    billing_id: str
    message: str


class BreakdownEntryResponse(BaseModel):
    label: str
    amount: Money
    count: int


class DischargeSummaryResponse(BaseModel):
    visit_id: str
    visit_type: VisitType
    breakdown: Dict[str, BreakdownEntryResponse]
    subtotal: Money
    total_items: int
    warnings: List[str] = []


class DischargeStatusResponse(BaseModel):
    can_discharge: bool
    reason: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    remaining_amount: Optional[Money] = None


class PendingBillingResponse(BaseModel):
    billing_id: str
    visit_id: str
    visit_number: str
    visit_type: VisitType
    patient_id: str
    patient_name: str
    mr_number: str
    total_amount: Money
    patient_payable: Money
    paid_amount: Money
    remaining_amount: Money
    payment_status: PaymentStatus
    created_at: Optional[datetime] = None


class BillingStatisticsResponse(BaseModel):
    total_billings: int
    pending_billings: int
    partial_billings: int
    paid_billings: int
    total_revenue: Money
    pending_revenue: Money
    collected_today: Money


class TransactionBillingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    total_amount: Money
    patient_payable: Money
    payment_status: PaymentStatus
    items: List[BillingItemResponse] = []


class TransactionResponse(BaseModel):
    payment: PaymentResponse
    billing: TransactionBillingResponse
    visit: VisitSummary
    patient: PatientSummary


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TransactionListResponse(BaseModel):
    data: List[TransactionResponse]
    pagination: PaginationResponse
