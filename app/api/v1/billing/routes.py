from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import List, Optional

from app.api.deps import get_aggregation_session_factory, get_current_user_id
from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.domain.billing.aggregation import DischargeAggregationService
from app.domain.billing.models import PaymentMethod
from app.domain.billing.payment import AdjustedPaymentRequest, PaymentRequest, PaymentService
from app.domain.billing.query import BillingDetails, BillingQueryService, Transaction
from app.domain.billing.service import BillingOptions, BillingService
from app.domain.patients.models import VisitType
from app.infrastructure.database import get_db
from app.api.v1.billing.schemas import (
    BillingCalculateRequest,
    BillingCreatedResponse,
    BillingDetailsResponse,
    BillingItemResponse,
    BillingPreviewResponse,
    BillingResponse,
    BillingStatisticsResponse,
    DischargeBillingCreate,
    DischargeStatusResponse,
    DischargeSummaryResponse,
    LineItemResponse,
    PatientSummary,
    PaymentCreate,
    PaymentResponse,
    PaymentResultResponse,
    PaginationResponse,
    PendingBillingResponse,
    ProcessPaymentRequest,
    TransactionBillingResponse,
    TransactionListResponse,
    TransactionResponse,
    VisitSummary,
)

router = APIRouter(tags=["Billing"], dependencies=[Depends(get_current_user_id)])


def _details_response(details: BillingDetails) -> BillingDetailsResponse:
    return BillingDetailsResponse(
        billing=BillingResponse.model_validate(details.billing),
        items=[BillingItemResponse.model_validate(i) for i in details.items],
        payments=[PaymentResponse.model_validate(p) for p in details.payments],
        patient=PatientSummary.model_validate(details.patient),
        visit=VisitSummary.model_validate(details.visit),
        currency=settings.BILLING_CURRENCY,
    )


def _transaction_response(transaction: Transaction) -> TransactionResponse:
    billing = transaction.billing
    return TransactionResponse(
        payment=PaymentResponse.model_validate(transaction.payment),
        billing=TransactionBillingResponse(
            id=billing.id,
            total_amount=billing.total_amount,
            patient_payable=billing.patient_payable,
            payment_status=billing.payment_status,
            items=[BillingItemResponse.model_validate(i) for i in transaction.items],
        ),
        visit=VisitSummary.model_validate(transaction.visit),
        patient=PatientSummary.model_validate(transaction.patient),
    )


@router.get("/preview/{visit_id}", response_model=BillingPreviewResponse)
async def preview_billing(visit_id: str, db: AsyncSession = Depends(get_db)):
    """Current charges for a visit, without saving anything"""
    service = BillingService(db)
    calculation = await service.calculate_billing_for_visit(visit_id)
    return BillingPreviewResponse(
        visit_id=calculation.visit_id,
        items=[LineItemResponse(**item.model_dump()) for item in calculation.items],
        subtotal=calculation.subtotal,
        total_amount=calculation.total_amount,
    )


@router.get("/queue", response_model=List[PendingBillingResponse])
async def get_billing_queue(
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    """Billings still waiting for payment"""
    service = BillingService(db)
    pending = await service.get_pending_billings(limit=limit)
    return [PendingBillingResponse(**p.model_dump()) for p in pending]


@router.get("/statistics", response_model=BillingStatisticsResponse)
async def get_billing_statistics(db: AsyncSession = Depends(get_db)):
    service = BillingService(db)
    return BillingStatisticsResponse(**await service.get_billing_statistics())


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, description="Patient name, MR number or visit number"),
    payment_method: Optional[PaymentMethod] = None,
    visit_type: Optional[VisitType] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: AsyncSession = Depends(get_db)
):
    """Payment transaction history, newest first"""
    result = await BillingQueryService(db).list_transactions(
        page=page,
        limit=limit,
        search=search,
        payment_method=payment_method,
        visit_type=visit_type,
        date_from=date_from,
        date_to=date_to,
    )
    return TransactionListResponse(
        data=[_transaction_response(t) for t in result.transactions],
        pagination=PaginationResponse(
            page=result.page,
            limit=result.limit,
            total=result.total,
            total_pages=result.total_pages,
        ),
    )


@router.get("/transactions/{payment_id}", response_model=TransactionResponse)
async def get_transaction(payment_id: str, db: AsyncSession = Depends(get_db)):
    """A single payment with its bill items, for receipt reprints"""
    transaction = await BillingQueryService(db).get_transaction(payment_id)
    if transaction is None:
        raise NotFoundError("Transaction not found", details={"payment_id": payment_id})
    return _transaction_response(transaction)


@router.get("/discharge/{visit_id}", response_model=DischargeSummaryResponse)
async def get_discharge_summary(
    visit_id: str,
    db: AsyncSession = Depends(get_db),
    session_factory: Optional[async_sessionmaker] = Depends(get_aggregation_session_factory),
):
    service = DischargeAggregationService(db, session_factory=session_factory)
    summary = await service.get_summary(visit_id)
    return DischargeSummaryResponse(**summary.model_dump())


@router.post("/discharge/create", response_model=BillingCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_discharge_billing(
    request: DischargeBillingCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    session_factory: Optional[async_sessionmaker] = Depends(get_aggregation_session_factory),
):
    service = BillingService(db, session_factory=session_factory)
    billing_id = await service.create_discharge_billing(request.visit_id, user_id)
    return BillingCreatedResponse(billing_id=billing_id, message="Discharge billing created")


@router.post("/process-payment", response_model=PaymentResultResponse)
async def process_payment(
    request: ProcessPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Apply discount and insurance, then record the payment, in one transaction"""
    service = PaymentService(db)
    result = await service.process_payment_with_adjustments(
        request.billing_id,
        user_id,
        AdjustedPaymentRequest(**request.model_dump(exclude={"billing_id"}))
    )
    return PaymentResultResponse(**result.model_dump())


@router.get("/{visit_id}", response_model=BillingDetailsResponse)
async def get_billing_details(visit_id: str, db: AsyncSession = Depends(get_db)):
    """Billing details for a visit; the billing is created on first access"""
    query = BillingQueryService(db)
    details = await query.get_billing_details(visit_id)

    if details is None:
        await BillingService(db).create_billing_from_medical_record(visit_id)
        details = await query.get_billing_details(visit_id)
        if details is None:
            raise NotFoundError("Billing not found for this visit", details={"visit_id": visit_id})

    return _details_response(details)


@router.post("/{visit_id}/calculate", response_model=BillingDetailsResponse)
async def calculate_billing(
    visit_id: str,
    request: Optional[BillingCalculateRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    options = BillingOptions(**request.model_dump()) if request else BillingOptions()
    await BillingService(db).create_or_update_billing(visit_id, user_id, options)

    details = await BillingQueryService(db).get_billing_details(visit_id)
    return _details_response(details)


@router.post("/{visit_id}/recalculate", response_model=BillingResponse)
async def recalculate_billing(visit_id: str, db: AsyncSession = Depends(get_db)):
    billing = await BillingService(db).recalculate_billing(visit_id)
    return BillingResponse.model_validate(billing)


@router.post("/{visit_id}/payment", response_model=PaymentResultResponse, status_code=status.HTTP_201_CREATED)
async def record_payment(
    visit_id: str,
    request: PaymentCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    billing = await BillingQueryService(db).get_billing(visit_id)
    if not billing:
        raise NotFoundError("Billing not found for this visit", details={"visit_id": visit_id})

    result = await PaymentService(db).process_payment(
        billing.id, user_id, PaymentRequest(**request.model_dump())
    )
    return PaymentResultResponse(**result.model_dump())


@router.get("/{visit_id}/discharge-status", response_model=DischargeStatusResponse)
async def get_discharge_status(visit_id: str, db: AsyncSession = Depends(get_db)):
    """Whether the visit's bill allows discharge"""
    gate = await BillingService(db).can_discharge(visit_id)
    return DischargeStatusResponse(**gate.model_dump())
