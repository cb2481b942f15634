from app.models.billing import Invoice, InvoiceStatus, Payment, PaymentStatus, Subscription
from app.services.billing.reconciliation import ReconciliationEngine, map_invoice_status
from app.services.gateways.base import GatewayEvent
from tests.mocks import make_invoice, make_line, make_payment_intent, make_subscription


def _event(event_type, obj):
    return GatewayEvent(id=f"evt_{obj['id']}", type=event_type, data=obj, gateway="stripe")


def _invoice(db_session, external_id):
    return db_session.query(Invoice).filter(Invoice.external_id == external_id).one()


def _payment(db_session, external_id):
    return db_session.query(Payment).filter(Payment.external_id == external_id).one()


def test_unknown_invoice_status_maps_to_open():
    assert map_invoice_status("paid") == InvoiceStatus.paid
    assert map_invoice_status("mystery") == InvoiceStatus.open


def test_invoice_created_gets_local_number_and_subscription_link(
    db_session, customer, fake_gateway
):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.sync_subscription(make_subscription("sub_1"))

    engine.apply(_event("invoice.created", make_invoice("in_1", status="draft")))
    engine.apply(_event("invoice.created", make_invoice("in_2", status="draft")))
    db_session.commit()

    first = _invoice(db_session, "in_1")
    second = _invoice(db_session, "in_2")
    sub = db_session.query(Subscription).filter(Subscription.external_id == "sub_1").one()
    assert first.number == "INV-000001"
    assert second.number == "INV-000002"
    assert first.subscription_id == sub.id
    assert first.status == InvoiceStatus.draft
    assert first.amount_due == 4900
    assert [line.amount for line in first.lines] == [4900]


def test_invoice_status_never_regresses(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.apply(_event("invoice.finalized", make_invoice("in_1", status="open")))
    engine.apply(
        _event("invoice.paid", make_invoice("in_1", status="paid", amount_due=0, amount_paid=4900))
    )
    db_session.commit()

    engine.apply(_event("invoice.updated", make_invoice("in_1", status="open")))
    db_session.commit()

    invoice = _invoice(db_session, "in_1")
    assert invoice.status == InvoiceStatus.paid
    assert invoice.amount_paid == 4900
    assert invoice.paid_at is not None
    assert invoice.number == "INV-000001"


def test_payment_failed_keeps_invoice_open(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.apply(_event("invoice.payment_failed", make_invoice("in_1", status="draft")))
    db_session.commit()

    assert _invoice(db_session, "in_1").status == InvoiceStatus.open


def test_voided_invoice_is_terminal(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.apply(_event("invoice.voided", make_invoice("in_1", status="open")))
    engine.apply(_event("invoice.finalized", make_invoice("in_1", status="open")))
    db_session.commit()

    assert _invoice(db_session, "in_1").status == InvoiceStatus.void


def test_unchanged_lines_are_not_rewritten(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)
    lines = [make_line(-1500, proration=True), make_line(3000, proration=True)]
    engine.upsert_invoice(make_invoice("in_1", amount_due=1500, lines=lines))
    db_session.commit()
    before = [line.id for line in _invoice(db_session, "in_1").lines]

    engine.upsert_invoice(make_invoice("in_1", amount_due=1500, lines=lines))
    db_session.commit()

    invoice = _invoice(db_session, "in_1")
    assert [line.id for line in invoice.lines] == before
    assert [line.amount for line in invoice.lines] == [-1500, 3000]
    assert all(line.proration for line in invoice.lines)


def test_changed_lines_replace_previous_set(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.upsert_invoice(make_invoice("in_1", lines=[make_line(4900)]))
    db_session.commit()

    engine.upsert_invoice(
        make_invoice("in_1", lines=[make_line(4900), make_line(500, description="Seat")])
    )
    db_session.commit()

    invoice = _invoice(db_session, "in_1")
    assert [(line.position, line.amount) for line in invoice.lines] == [(0, 4900), (1, 500)]


def test_payment_intent_links_named_invoice(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.upsert_invoice(make_invoice("in_1"))
    engine.upsert_invoice(make_invoice("in_2"))

    engine.apply(
        _event("payment_intent.succeeded", make_payment_intent("pi_1", invoice="in_1"))
    )
    db_session.commit()

    payment = _payment(db_session, "pi_1")
    assert payment.status == PaymentStatus.succeeded
    assert payment.invoice_id == _invoice(db_session, "in_1").id
    assert payment.external_charge_id == "ch_pi_1"
    assert payment.amount == 4900


def test_payment_without_invoice_ref_links_latest_open_invoice(
    db_session, customer, fake_gateway
):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.upsert_invoice(make_invoice("in_paid", status="paid", amount_paid=4900))
    engine.upsert_invoice(make_invoice("in_open", status="open"))

    engine.upsert_payment_intent(make_payment_intent("pi_1"))
    db_session.commit()

    assert _payment(db_session, "pi_1").invoice_id == _invoice(db_session, "in_open").id


def test_failed_payment_records_decline_and_does_not_regress(
    db_session, customer, fake_gateway
):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.apply(
        _event(
            "payment_intent.payment_failed",
            make_payment_intent(
                "pi_1",
                status="requires_payment_method",
                error={"code": "card_declined", "decline_code": "insufficient_funds", "message": "Declined"},
            ),
        )
    )
    db_session.commit()
    failed = _payment(db_session, "pi_1")
    assert failed.status == PaymentStatus.failed
    assert failed.failure_code == "insufficient_funds"
    assert failed.failure_message == "Declined"

    engine.apply(_event("payment_intent.succeeded", make_payment_intent("pi_1")))
    engine.upsert_payment_intent(make_payment_intent("pi_1", status="processing"))
    db_session.commit()

    assert _payment(db_session, "pi_1").status == PaymentStatus.succeeded


def test_charge_refund_marks_payment_refunded(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)
    engine.upsert_payment_intent(make_payment_intent("pi_1"))
    db_session.commit()

    engine.apply(
        _event(
            "charge.refunded",
            {
                "id": "ch_pi_1",
                "object": "charge",
                "payment_intent": "pi_1",
                "customer": "cus_1",
                "amount": 4900,
                "amount_refunded": 2000,
                "currency": "usd",
                "refunded": False,
                "status": "succeeded",
            },
        )
    )
    db_session.commit()

    payment = _payment(db_session, "pi_1")
    assert payment.status == PaymentStatus.refunded
    assert payment.refunded_amount == 2000
    assert payment.refunded_at is not None
    assert db_session.query(Payment).count() == 1


def test_charge_without_known_intent_creates_payment(db_session, customer, fake_gateway):
    engine = ReconciliationEngine(db_session, fake_gateway)

    engine.upsert_charge(
        {
            "id": "ch_9",
            "object": "charge",
            "payment_intent": None,
            "customer": "cus_1",
            "amount": 1900,
            "currency": "usd",
            "status": "succeeded",
        }
    )
    db_session.commit()

    payment = _payment(db_session, "ch_9")
    assert payment.status == PaymentStatus.succeeded
    assert payment.external_charge_id == "ch_9"
    assert payment.customer_id == "bc_1"
