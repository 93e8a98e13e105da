import asyncio
import pytest
from decimal import Decimal
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConcurrentUpdateError, InvalidPaymentError, NotFoundError, ValidationError, handle_database_error
)
from app.domain.billing.adjustments import Discount, compute_totals
from app.domain.billing.models import PaymentMethod, PaymentStatus
from app.domain.billing.payment import AdjustedPaymentRequest, PaymentRequest, PaymentResult, PaymentService
from app.domain.billing.repository import BillingRepository

USER_ID = "cashier-001"


@pytest.fixture
async def billing_id(db_session, factory):
    """A pending billing with 200,000 payable"""
    visit = await factory.visit()
    repo = BillingRepository(db_session)
    billing = await repo.create(visit.id, compute_totals(Decimal("200000"), Discount.none()))
    await db_session.commit()
    return billing.id


async def load_billing(session_factory, billing_id):
    async with session_factory() as session:
        return await BillingRepository(session).get_by_id(billing_id)


@pytest.mark.billing
@pytest.mark.integration
class TestPaymentService:
    """Payment processing against a billing"""

    async def test_two_payments_move_pending_to_partial_to_paid(self, db_session, billing_id):
        service = PaymentService(db_session)
        request = PaymentRequest(amount=Decimal("100000"), payment_method=PaymentMethod.CASH)

        first = await service.process_payment(billing_id, USER_ID, request)
        assert first.payment_status == PaymentStatus.PARTIAL
        assert first.remaining_amount == Decimal("100000.00")

        second = await service.process_payment(billing_id, USER_ID, request)
        assert second.payment_status == PaymentStatus.PAID
        assert second.remaining_amount == Decimal("0.00")
        assert second.paid_amount == Decimal("200000.00")

        payments = await BillingRepository(db_session).list_payments(billing_id)
        assert len(payments) == 2

    async def test_overpayment_rejected_without_mutation(self, db_session, session_factory, factory):
        visit = await factory.visit()
        billing = await BillingRepository(db_session).create(
            visit.id, compute_totals(Decimal("100000"), Discount.none())
        )
        await db_session.commit()
        billing_id = billing.id

        with pytest.raises(InvalidPaymentError) as exc_info:
            await PaymentService(db_session).process_payment(
                billing_id, USER_ID,
                PaymentRequest(amount=Decimal("150000"), payment_method=PaymentMethod.CASH),
            )

        assert exc_info.value.error_code == "PAYMENT_EXCEEDS_BALANCE"
        reloaded = await load_billing(session_factory, billing_id)
        assert reloaded.paid_amount == Decimal("0.00")
        assert reloaded.payment_status == PaymentStatus.PENDING

    async def test_cash_change(self, db_session, billing_id):
        result = await PaymentService(db_session).process_payment(
            billing_id, USER_ID,
            PaymentRequest(
                amount=Decimal("47000"),
                payment_method=PaymentMethod.CASH,
                amount_received=Decimal("50000"),
            ),
        )

        assert result.change_given == Decimal("3000.00")
        payments = await BillingRepository(db_session).list_payments(billing_id)
        assert payments[0].amount_received == Decimal("50000.00")
        assert payments[0].change_given == Decimal("3000.00")

    async def test_cash_shortfall_rejected(self, db_session, session_factory, billing_id):
        with pytest.raises(InvalidPaymentError) as exc_info:
            await PaymentService(db_session).process_payment(
                billing_id, USER_ID,
                PaymentRequest(
                    amount=Decimal("47000"),
                    payment_method=PaymentMethod.CASH,
                    amount_received=Decimal("40000"),
                ),
            )

        assert exc_info.value.error_code == "INSUFFICIENT_AMOUNT_RECEIVED"
        reloaded = await load_billing(session_factory, billing_id)
        assert reloaded.paid_amount == Decimal("0.00")

    async def test_zero_amount_rejected(self, db_session, billing_id):
        with pytest.raises(ValidationError):
            await PaymentService(db_session).process_payment(
                billing_id, USER_ID,
                PaymentRequest(amount=Decimal("0"), payment_method=PaymentMethod.CASH),
            )

    async def test_transfer_requires_reference(self, db_session, billing_id):
        with pytest.raises(ValidationError):
            await PaymentService(db_session).process_payment(
                billing_id, USER_ID,
                PaymentRequest(amount=Decimal("50000"), payment_method=PaymentMethod.TRANSFER),
            )

    async def test_last_payment_details_on_header(self, db_session, session_factory, billing_id):
        await PaymentService(db_session).process_payment(
            billing_id, USER_ID,
            PaymentRequest(
                amount=Decimal("50000"),
                payment_method=PaymentMethod.CARD,
                payment_reference="EDC-778812",
            ),
        )

        reloaded = await load_billing(session_factory, billing_id)
        assert reloaded.payment_method == "card"
        assert reloaded.payment_reference == "EDC-778812"
        assert reloaded.processed_by == USER_ID
        assert reloaded.processed_at is not None

    async def test_unknown_billing(self, db_session):
        with pytest.raises(NotFoundError):
            await PaymentService(db_session).process_payment(
                "missing-billing", USER_ID,
                PaymentRequest(amount=Decimal("1000"), payment_method=PaymentMethod.CASH),
            )

    async def test_payment_with_adjustments(self, db_session, billing_id):
        result = await PaymentService(db_session).process_payment_with_adjustments(
            billing_id, USER_ID,
            AdjustedPaymentRequest(
                amount=Decimal("130000"),
                payment_method=PaymentMethod.CASH,
                discount_percentage=Decimal("10"),
                insurance_coverage=Decimal("50000"),
            ),
        )

        # 200,000 - 20,000 discount - 50,000 insurance
        assert result.payment_status == PaymentStatus.PAID
        assert result.paid_amount == Decimal("130000.00")
        assert result.remaining_amount == Decimal("0.00")

    async def test_adjustments_reject_both_discount_kinds(self, db_session, billing_id):
        with pytest.raises(ValidationError):
            await PaymentService(db_session).process_payment_with_adjustments(
                billing_id, USER_ID,
                AdjustedPaymentRequest(
                    amount=Decimal("1000"),
                    payment_method=PaymentMethod.CASH,
                    discount=Decimal("5000"),
                    discount_percentage=Decimal("10"),
                ),
            )

    async def test_failed_adjusted_payment_rolls_back_discount(self, db_session, session_factory, billing_id):
        with pytest.raises(InvalidPaymentError):
            await PaymentService(db_session).process_payment_with_adjustments(
                billing_id, USER_ID,
                AdjustedPaymentRequest(
                    amount=Decimal("190000"),
                    payment_method=PaymentMethod.CASH,
                    discount=Decimal("20000"),
                ),
            )

        reloaded = await load_billing(session_factory, billing_id)
        assert reloaded.discount == Decimal("0.00")
        assert reloaded.patient_payable == Decimal("200000.00")


def cash(amount: str) -> PaymentRequest:
    return PaymentRequest(amount=Decimal(amount), payment_method=PaymentMethod.CASH)


@pytest.mark.billing
@pytest.mark.integration
class TestConcurrentPayments:
    """Two cashiers paying the same bill at once"""

    async def test_simultaneous_payments_cannot_overpay(self, session_factory, billing_id):
        async def pay():
            async with session_factory() as session:
                return await PaymentService(session).process_payment(billing_id, USER_ID, cash("150000"))

        outcomes = await asyncio.gather(pay(), pay(), return_exceptions=True)

        assert len([o for o in outcomes if isinstance(o, PaymentResult)]) == 1
        assert len([o for o in outcomes if isinstance(o, InvalidPaymentError)]) == 1

        reloaded = await load_billing(session_factory, billing_id)
        assert reloaded.paid_amount == Decimal("150000.00")
        assert reloaded.remaining_amount == Decimal("50000.00")
        async with session_factory() as session:
            payments = await BillingRepository(session).list_payments(billing_id)
        assert sum(p.amount for p in payments) == reloaded.paid_amount

    async def test_payment_replayed_against_fresh_balance(
        self, db_session, session_factory, billing_id, monkeypatch
    ):
        service = PaymentService(db_session)
        lock_billing = service._lock_billing
        calls = []

        async def lock_then_other_cashier_pays(locked_id):
            billing = await lock_billing(locked_id)
            calls.append(locked_id)
            if len(calls) == 1:
                async with session_factory() as other:
                    await PaymentService(other).process_payment(locked_id, "cashier-002", cash("150000"))
            return billing

        monkeypatch.setattr(service, "_lock_billing", lock_then_other_cashier_pays)

        with pytest.raises(InvalidPaymentError) as exc_info:
            await service.process_payment(billing_id, USER_ID, cash("100000"))

        assert len(calls) == 2
        assert exc_info.value.details["remaining_amount"] == "50000.00"
        reloaded = await load_billing(session_factory, billing_id)
        assert reloaded.paid_amount == Decimal("150000.00")
        async with session_factory() as session:
            assert len(await BillingRepository(session).list_payments(billing_id)) == 1

    async def test_replayed_payment_succeeds_when_balance_allows(
        self, db_session, session_factory, billing_id, monkeypatch
    ):
        service = PaymentService(db_session)
        lock_billing = service._lock_billing
        calls = []

        async def lock_then_other_cashier_pays(locked_id):
            billing = await lock_billing(locked_id)
            calls.append(locked_id)
            if len(calls) == 1:
                async with session_factory() as other:
                    await PaymentService(other).process_payment(locked_id, "cashier-002", cash("50000"))
            return billing

        monkeypatch.setattr(service, "_lock_billing", lock_then_other_cashier_pays)

        result = await service.process_payment(billing_id, USER_ID, cash("100000"))

        assert len(calls) == 2
        assert result.paid_amount == Decimal("150000.00")
        assert result.remaining_amount == Decimal("50000.00")
        assert result.payment_status == PaymentStatus.PARTIAL


def test_stale_write_maps_to_concurrent_update():
    error = handle_database_error(
        StaleDataError("UPDATE statement on table 'billings' expected to update 1 row(s); 0 were matched."),
        "process payment",
    )

    assert isinstance(error, ConcurrentUpdateError)
    assert error.status_code == 409
    assert error.error_code == "CONCURRENT_UPDATE"
