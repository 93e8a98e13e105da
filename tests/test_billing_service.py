import pytest
from decimal import Decimal

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.domain.billing.models import PaymentMethod, PaymentStatus
from app.domain.billing.payment import PaymentRequest, PaymentService
from app.domain.billing.repository import BillingRepository
from app.domain.billing.service import BillingOptions, BillingService
from app.domain.patients.models import VisitType

USER_ID = "cashier-001"


def header_values(billing):
    return (
        billing.subtotal, billing.discount, billing.discount_percentage, billing.total_amount,
        billing.insurance_coverage, billing.patient_payable, billing.paid_amount,
        billing.remaining_amount, billing.payment_status,
    )


def assert_invariants(billing):
    assert billing.patient_payable == quantize_2(
        billing.subtotal - billing.discount - billing.insurance_coverage
    )
    assert billing.remaining_amount == quantize_2(billing.patient_payable - billing.paid_amount)


def quantize_2(value):
    return Decimal(value).quantize(Decimal("0.01"))


@pytest.mark.billing
@pytest.mark.integration
class TestBillingService:
    """Billing record lifecycle"""

    async def test_create_billing_from_medical_record(self, db_session, factory):
        visit = await factory.inpatient_scenario()
        service = BillingService(db_session)

        billing_id = await service.create_billing_from_medical_record(visit.id)

        repo = BillingRepository(db_session)
        billing = await repo.get_by_id(billing_id)
        items = await repo.list_items(billing_id)
        assert billing.subtotal == Decimal("1205000.00")
        assert billing.discount == Decimal("0.00")
        assert billing.insurance_coverage == Decimal("0.00")
        assert billing.payment_status == PaymentStatus.PENDING
        assert len(items) == 6
        assert [item.position for item in items] == list(range(6))
        assert_invariants(billing)

    async def test_create_twice_conflicts(self, db_session, factory):
        visit = await factory.inpatient_scenario()
        service = BillingService(db_session)
        await service.create_billing_from_medical_record(visit.id)

        with pytest.raises(ConflictError):
            await service.create_billing_from_medical_record(visit.id)

    async def test_create_inside_caller_transaction(self, db_session, session_factory, factory):
        visit = await factory.inpatient_scenario()

        async with session_factory() as tx:
            billing_id = await BillingService(db_session).create_billing_from_medical_record(visit.id, tx=tx)
            await tx.rollback()

        # the caller rolled back, so nothing was persisted
        assert billing_id
        assert await BillingRepository(db_session).get_by_visit_id(visit.id) is None

    async def test_create_for_unknown_visit(self, db_session):
        with pytest.raises(NotFoundError):
            await BillingService(db_session).create_billing_from_medical_record("missing-visit")

    async def test_recalculate_is_idempotent(self, db_session, factory):
        visit = await factory.inpatient_scenario()
        service = BillingService(db_session)
        await service.create_or_update_billing(
            visit.id, USER_ID,
            BillingOptions(discount_percentage=Decimal("10"), insurance_coverage=Decimal("100000")),
        )

        first = header_values(await service.recalculate_billing(visit.id))
        second = header_values(await service.recalculate_billing(visit.id))

        assert first == second
        assert first[1] == Decimal("120500.00")

    async def test_recalculate_without_billing(self, db_session, factory):
        visit = await factory.visit()

        with pytest.raises(NotFoundError):
            await BillingService(db_session).recalculate_billing(visit.id)

    async def test_create_or_update_applies_percentage_over_fixed(self, db_session, factory):
        visit = await factory.inpatient_scenario()
        service = BillingService(db_session)

        billing_id = await service.create_or_update_billing(
            visit.id, USER_ID,
            BillingOptions(discount=Decimal("50000"), discount_percentage=Decimal("10")),
        )

        billing = await BillingRepository(db_session).get_by_id(billing_id)
        assert billing.discount == Decimal("120500.00")
        assert billing.discount_percentage == Decimal("10.00")
        assert billing.patient_payable == Decimal("1084500.00")
        assert_invariants(billing)

    async def test_create_or_update_keeps_unset_options_and_payments(self, db_session, factory):
        visit = await factory.inpatient_scenario()
        service = BillingService(db_session)
        billing_id = await service.create_or_update_billing(
            visit.id, USER_ID,
            BillingOptions(discount=Decimal("5000"), insurance_coverage=Decimal("200000")),
        )
        await PaymentService(db_session).process_payment(
            billing_id, USER_ID,
            PaymentRequest(amount=Decimal("100000"), payment_method=PaymentMethod.CASH),
        )

        # a new charge arrives before discharge
        drug = await factory.drug(2500, name="Amoxicillin 500mg")
        await factory.prescription(visit, drug, quantity=4, is_fulfilled=True)
        await service.create_or_update_billing(visit.id, USER_ID)

        billing = await BillingRepository(db_session).get_by_id(billing_id)
        assert billing.subtotal == Decimal("1215000.00")
        assert billing.discount == Decimal("5000.00")
        assert billing.insurance_coverage == Decimal("200000.00")
        assert billing.paid_amount == Decimal("100000.00")
        assert billing.payment_status == PaymentStatus.PARTIAL
        assert len(await BillingRepository(db_session).list_items(billing_id)) == 7
        assert_invariants(billing)

    async def test_invalid_adjustment_leaves_snapshot_intact(self, db_session, factory):
        visit = await factory.inpatient_scenario()
        service = BillingService(db_session)
        billing_id = await service.create_billing_from_medical_record(visit.id)

        with pytest.raises(ValidationError):
            await service.create_or_update_billing(
                visit.id, USER_ID, BillingOptions(insurance_coverage=Decimal("5000000"))
            )

        billing = await BillingRepository(db_session).get_by_id(billing_id)
        assert billing.insurance_coverage == Decimal("0.00")
        assert billing.subtotal == Decimal("1205000.00")

    async def test_create_discharge_billing(self, db_session, session_factory, factory):
        visit = await factory.inpatient_scenario()
        service = BillingService(db_session, session_factory=session_factory)

        billing_id = await service.create_discharge_billing(visit.id, USER_ID)

        billing = await BillingRepository(db_session).get_by_id(billing_id)
        assert billing.subtotal == Decimal("1205000.00")
        assert billing.patient_payable == Decimal("1205000.00")

    async def test_discharge_gate(self, db_session, factory):
        visit = await factory.visit(VisitType.OUTPATIENT)
        await factory.flat_fees()
        service = BillingService(db_session)

        gate = await service.can_discharge(visit.id)
        assert gate.can_discharge is False

        billing_id = await service.create_billing_from_medical_record(visit.id)
        gate = await service.can_discharge(visit.id)
        assert gate.can_discharge is False
        assert gate.payment_status == PaymentStatus.PENDING

        await PaymentService(db_session).process_payment(
            billing_id, USER_ID,
            PaymentRequest(amount=Decimal("70000"), payment_method=PaymentMethod.CASH),
        )
        gate = await service.can_discharge(visit.id)
        assert gate.can_discharge is True

    async def test_pending_billings_and_statistics(self, db_session, factory):
        await factory.flat_fees()
        first = await factory.visit()
        second = await factory.visit()
        third = await factory.visit()
        service = BillingService(db_session)
        paid_id = await service.create_billing_from_medical_record(first.id)
        await service.create_billing_from_medical_record(second.id)
        partial_id = await service.create_billing_from_medical_record(third.id)
        payments = PaymentService(db_session)
        await payments.process_payment(
            paid_id, USER_ID,
            PaymentRequest(amount=Decimal("70000"), payment_method=PaymentMethod.CASH),
        )
        await payments.process_payment(
            partial_id, USER_ID,
            PaymentRequest(amount=Decimal("20000"), payment_method=PaymentMethod.CASH),
        )

        pending = await service.get_pending_billings()
        stats = await service.get_billing_statistics()

        assert {p.visit_id for p in pending} == {second.id, third.id}
        assert all(p.mr_number for p in pending)
        assert stats["total_billings"] == 3
        assert stats["paid_billings"] == 1
        assert stats["partial_billings"] == 1
        assert stats["pending_billings"] == 1
        assert stats["total_revenue"] == Decimal("210000.00")
        assert stats["pending_revenue"] == Decimal("120000.00")
        assert stats["collected_today"] == Decimal("90000.00")
