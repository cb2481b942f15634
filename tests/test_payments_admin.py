import pytest
from fastapi import HTTPException

from app.models.billing import BillingCustomer, GatewayProvider, Payment, PaymentStatus
from app.services.billing.customers import BillingCustomers
from app.services.billing.payments import Payments
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.gateways.base import GatewayEvent
from app.services.gateways.errors import TransientError, ValidationError
from tests.mocks import make_payment_intent, make_payment_method


@pytest.fixture()
def collected(db_session, customer, fake_gateway):
    payment = ReconciliationEngine(db_session, fake_gateway).upsert_payment_intent(
        make_payment_intent("pi_1", amount=4900)
    )
    db_session.commit()
    return payment


@pytest.fixture()
def bare_customer(db_session, plans):
    row = BillingCustomer(id="bc_2", user_id="user_2")
    db_session.add(row)
    db_session.commit()
    return row


# --- Refunds ---


def test_full_refund_targets_charge_and_marks_payment(db_session, collected, fake_gateway):
    payment = Payments.refund(db_session, fake_gateway, str(collected.id))

    assert fake_gateway.calls_for("refund") == [
        {
            "payment_id": "ch_pi_1",
            "amount": None,
            "idempotency_key": f"refund-{collected.id}-0-4900",
        }
    ]
    assert payment.status == PaymentStatus.refunded
    assert payment.refunded_amount == 4900
    assert payment.refunded_at is not None
    assert Payments.total_collected(db_session, "bc_1") == 0


def test_partial_refunds_accumulate_until_balance_is_spent(db_session, collected, fake_gateway):
    Payments.refund(db_session, fake_gateway, str(collected.id), amount=1000)
    payment = Payments.refund(db_session, fake_gateway, str(collected.id), amount=1000)

    assert payment.refunded_amount == 2000
    assert payment.status == PaymentStatus.refunded
    keys = [call["idempotency_key"] for call in fake_gateway.calls_for("refund")]
    assert len(set(keys)) == 2

    with pytest.raises(ValidationError, match="exceeds the refundable balance 2900"):
        Payments.refund(db_session, fake_gateway, str(collected.id), amount=3000)
    assert len(fake_gateway.calls_for("refund")) == 2


def test_refund_webhook_after_admin_refund_changes_nothing(db_session, collected, fake_gateway):
    payment = Payments.refund(db_session, fake_gateway, str(collected.id))
    before = (payment.refunded_amount, payment.refunded_at, payment.updated_at)

    charge = {
        "id": "ch_pi_1",
        "object": "charge",
        "payment_intent": "pi_1",
        "customer": "cus_1",
        "amount": 4900,
        "amount_refunded": 4900,
        "currency": "usd",
        "refunded": True,
    }
    ReconciliationEngine(db_session, fake_gateway).apply(
        GatewayEvent(id="evt_refund", type="charge.refunded", data=charge, gateway="stripe")
    )
    db_session.commit()
    db_session.expire_all()

    reloaded = db_session.get(Payment, collected.id)
    assert (reloaded.refunded_amount, reloaded.refunded_at, reloaded.updated_at) == before


def test_pending_payment_cannot_be_refunded(db_session, customer, fake_gateway):
    payment = ReconciliationEngine(db_session, fake_gateway).upsert_payment_intent(
        make_payment_intent("pi_2", status="processing")
    )
    db_session.commit()

    with pytest.raises(ValidationError, match="Only collected payments"):
        Payments.refund(db_session, fake_gateway, str(payment.id))
    assert fake_gateway.calls_for("refund") == []


def test_refund_must_use_the_collecting_gateway(db_session, customer, fake_gateway):
    payment = Payment(
        customer_id="bc_1",
        gateway=GatewayProvider.paystack,
        external_id="BILL-1",
        status=PaymentStatus.succeeded,
        amount=5000,
        currency="ngn",
    )
    db_session.add(payment)
    db_session.commit()

    with pytest.raises(ValidationError, match="collected through paystack"):
        Payments.refund(db_session, fake_gateway, str(payment.id))


def test_gateway_outage_leaves_payment_untouched(db_session, collected, fake_gateway):
    fake_gateway.errors["refund"] = TransientError("Stripe unavailable", gateway="stripe")

    with pytest.raises(TransientError):
        Payments.refund(db_session, fake_gateway, str(collected.id))

    db_session.expire_all()
    assert db_session.get(Payment, collected.id).status == PaymentStatus.succeeded


def test_refund_unknown_payment_is_404(db_session, fake_gateway):
    with pytest.raises(HTTPException) as exc:
        Payments.refund(db_session, fake_gateway, "not-a-uuid")
    assert exc.value.status_code == 404


# --- Payment methods ---


def test_attach_as_default_then_list(db_session, customer, fake_gateway):
    BillingCustomers.attach_payment_method(
        db_session, fake_gateway, "bc_1", "pm_1", make_default=True
    )

    methods = BillingCustomers.list_payment_methods(db_session, fake_gateway, "bc_1")

    assert [method["id"] for method in methods] == ["pm_1"]
    assert fake_gateway.calls_for("attach_payment_method") == [
        {"payment_method_id": "pm_1", "customer_id": "cus_1"}
    ]
    assert fake_gateway.calls_for("set_default_payment_method") == [
        {"customer_id": "cus_1", "payment_method_id": "pm_1"}
    ]


def test_detach_only_touches_the_customers_own_methods(db_session, customer, fake_gateway):
    fake_gateway.payment_methods["cus_1"] = [make_payment_method("pm_1")]
    fake_gateway.payment_methods["cus_other"] = [make_payment_method("pm_9", customer="cus_other")]

    with pytest.raises(HTTPException) as exc:
        BillingCustomers.detach_payment_method(db_session, fake_gateway, "bc_1", "pm_9")
    assert exc.value.status_code == 404
    assert fake_gateway.calls_for("detach_payment_method") == []

    BillingCustomers.detach_payment_method(db_session, fake_gateway, "bc_1", "pm_1")
    assert fake_gateway.payment_methods["cus_1"] == []


def test_set_default_requires_attached_method(db_session, customer, fake_gateway):
    fake_gateway.payment_methods["cus_1"] = [make_payment_method("pm_1")]

    method = BillingCustomers.set_default_payment_method(db_session, fake_gateway, "bc_1", "pm_1")
    assert method["id"] == "pm_1"

    with pytest.raises(HTTPException):
        BillingCustomers.set_default_payment_method(db_session, fake_gateway, "bc_1", "pm_2")
    assert len(fake_gateway.calls_for("set_default_payment_method")) == 1


def test_customer_without_gateway_account_is_rejected(db_session, bare_customer, fake_gateway):
    with pytest.raises(ValidationError, match="no gateway account"):
        BillingCustomers.list_payment_methods(db_session, fake_gateway, "bc_2")
    with pytest.raises(ValidationError, match="no gateway account"):
        BillingCustomers.create_portal_session(
            db_session, fake_gateway, "bc_2", "https://app.test/billing"
        )
    assert fake_gateway.calls == []


def test_portal_session_uses_gateway_customer(db_session, customer, fake_gateway):
    session = BillingCustomers.create_portal_session(
        db_session, fake_gateway, "bc_1", "https://app.test/billing"
    )

    assert session["url"] == "https://billing.example.com/session/cus_1"
    assert fake_gateway.calls_for("create_customer_portal_session") == [
        {"customer_id": "cus_1", "return_url": "https://app.test/billing"}
    ]
