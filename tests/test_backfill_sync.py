import pytest

from app.models.billing import BillingCustomer, Invoice, Payment, Subscription, SubscriptionStatus
from app.models.license import UserLicense
from app.services.billing.backfill import BackfillSync
from app.services.billing.ingestion import WebhookIngestor
from app.services.gateways.errors import TransientError, ValidationError
from tests.mocks import (
    VALID_SIGNATURE,
    FakeGateway,
    make_event_body,
    make_invoice,
    make_subscription,
)


@pytest.fixture()
def paged_gateway():
    gateway = FakeGateway(page_size=2)
    for index in range(1, 6):
        gateway.subscriptions[f"sub_{index}"] = make_subscription(
            f"sub_{index}",
            customer=f"cus_{index}",
            created=1_700_000_000 + index,
        )
    return gateway


@pytest.fixture()
def many_customers(db_session, plans):
    for index in range(1, 6):
        db_session.add(
            BillingCustomer(
                id=f"bc_{index}",
                user_id=f"user_{index}",
                external_customer_id=f"cus_{index}",
            )
        )
    db_session.commit()


def test_iterate_follows_cursor_across_pages(db_session, paged_gateway):
    sync = BackfillSync(db_session, paged_gateway, page_size=2)

    ids = [obj["id"] for obj in sync.iterate("subscriptions")]

    assert ids == ["sub_1", "sub_2", "sub_3", "sub_4", "sub_5"]
    cursors = [call["starting_after"] for call in paged_gateway.calls_for("list_subscriptions")]
    assert cursors == [None, "sub_2", "sub_4"]


def test_run_counts_each_resource(db_session, many_customers, paged_gateway):
    paged_gateway.invoices["in_1"] = make_invoice("in_1", subscription="sub_1")

    result = BackfillSync(db_session, paged_gateway, page_size=2).run()

    assert result.subscriptions == 5
    assert result.invoices == 1
    assert result.errors == []
    assert result.aborted is False
    assert db_session.query(Subscription).count() == 5
    invoice = db_session.query(Invoice).one()
    assert invoice.customer_id == "bc_1"


def test_rerun_is_idempotent(db_session, many_customers, paged_gateway):
    BackfillSync(db_session, paged_gateway).run(["subscriptions"])
    first = {
        sub.external_id: (sub.status, sub.updated_at)
        for sub in db_session.query(Subscription).all()
    }

    result = BackfillSync(db_session, paged_gateway).run(["subscriptions"])

    assert result.subscriptions == 5
    second = {
        sub.external_id: (sub.status, sub.updated_at)
        for sub in db_session.query(Subscription).all()
    }
    assert second == first


def test_backfill_after_webhook_converges(db_session, customer, fake_gateway):
    obj = make_subscription("sub_1", status="active")
    WebhookIngestor(db_session, fake_gateway).handle(
        make_event_body("evt_1", "customer.subscription.created", obj), VALID_SIGNATURE
    )
    fake_gateway.subscriptions["sub_1"] = {**obj, "cancel_at_period_end": True}

    BackfillSync(db_session, fake_gateway).run(["subscriptions"])

    sub = db_session.query(Subscription).one()
    assert sub.status == SubscriptionStatus.active
    assert sub.cancel_at_period_end is True


def test_backfill_replaying_webhook_state_changes_nothing(db_session, customer, fake_gateway):
    obj = make_subscription("sub_1")
    WebhookIngestor(db_session, fake_gateway).handle(
        make_event_body("evt_1", "customer.subscription.created", obj), VALID_SIGNATURE
    )
    fake_gateway.subscriptions["sub_1"] = obj

    def snapshot():
        db_session.expire_all()
        sub = db_session.query(Subscription).one()
        license_row = db_session.query(UserLicense).one()
        return (
            sub.status,
            sub.license_type_id,
            sub.current_period_end,
            sub.updated_at,
            license_row.status,
            license_row.end_date,
            license_row.updated_at,
        )

    before = snapshot()
    result = BackfillSync(db_session, fake_gateway).run(["subscriptions"])

    assert result.subscriptions == 1
    assert snapshot() == before


def test_customers_link_through_metadata(db_session, plans, fake_gateway):
    db_session.add(BillingCustomer(id="bc_7", user_id="user_7"))
    db_session.commit()
    fake_gateway.customers = [
        {"id": "cus_7", "metadata": {"customerId": "bc_7"}},
        {"id": "cus_stranger", "metadata": {}},
    ]
    fake_gateway.subscriptions["sub_7"] = make_subscription("sub_7", customer="cus_7")

    result = BackfillSync(db_session, fake_gateway).run(["subscriptions", "customers"])

    assert result.customers == 1
    assert result.skipped == 1
    assert result.subscriptions == 1
    assert db_session.get(BillingCustomer, "bc_7").external_customer_id == "cus_7"
    assert [name for name, _ in fake_gateway.calls][:2] == ["list_customers", "list_subscriptions"]


def test_unresolvable_objects_are_skipped(db_session, customer, fake_gateway):
    fake_gateway.subscriptions["sub_1"] = make_subscription("sub_1")
    fake_gateway.subscriptions["sub_orphan"] = make_subscription("sub_orphan", customer="cus_x")

    result = BackfillSync(db_session, fake_gateway).run(["subscriptions"])

    assert result.subscriptions == 1
    assert result.skipped == 1
    assert result.errors == []


def test_object_failure_is_recorded_and_run_continues(db_session, customer, fake_gateway):
    fake_gateway.invoices["in_bad"] = {
        "id": "in_bad",
        "object": "invoice",
        "customer": "cus_1",
        "status": "open",
        "amount_due": "not-a-number",
    }
    fake_gateway.invoices["in_ok"] = make_invoice("in_ok")

    result = BackfillSync(db_session, fake_gateway).run(["invoices"])

    assert result.invoices == 1
    assert len(result.errors) == 1
    assert result.errors[0].startswith("invoices in_bad:")
    assert db_session.query(Invoice).filter(Invoice.external_id == "in_ok").count() == 1


def test_transient_listing_failure_aborts_with_partial_counts(
    db_session, customer, fake_gateway
):
    fake_gateway.subscriptions["sub_1"] = make_subscription("sub_1")
    fake_gateway.errors["list_invoices"] = TransientError("rate limited", gateway="stripe")
    fake_gateway.charges = [
        {"id": "ch_1", "object": "charge", "customer": "cus_1", "amount": 100, "status": "succeeded"}
    ]

    result = BackfillSync(db_session, fake_gateway).run()

    assert result.aborted is True
    assert result.subscriptions == 1
    assert result.errors == ["invoices: rate limited"]
    assert fake_gateway.calls_for("list_charges") == []
    assert db_session.query(Payment).count() == 0


def test_unknown_resource_is_rejected(db_session, fake_gateway):
    with pytest.raises(ValidationError, match="plans"):
        BackfillSync(db_session, fake_gateway).run(["subscriptions", "plans"])
