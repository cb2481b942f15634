from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from app.api.deps import (
    get_db,
    get_gateway,
    get_paystack_gateway,
    get_raw_body,
    get_stripe_gateway,
)
from app.schemas.billing import (
    CancelRequest,
    CheckoutRequest,
    CheckoutSessionRead,
    InvoiceRead,
    PaymentMethodAttach,
    PaymentMethodRead,
    PaymentRead,
    PlanChangeRead,
    PlanChangeRequest,
    PortalSessionRead,
    PortalSessionRequest,
    ProrationPreviewRead,
    RefundRequest,
    SubscriptionRead,
    SyncQueued,
    SyncRequest,
    WebhookEventDetail,
    WebhookEventRead,
)
from app.schemas.common import ListResponse
from app.services import api_billing_webhooks as api_billing_webhooks_service
from app.services import billing as billing_service
from app.services.billing.backfill import RESOURCES
from app.services.gateways import PaymentGateway, resolve_provider
from app.services.gateways.errors import ValidationError
from app.tasks.billing import run_backfill_sync

router = APIRouter(prefix="/billing")


# --- Webhooks ---


@router.post("/webhooks/stripe", tags=["billing-webhooks"])
def stripe_webhook(
    body: bytes = Depends(get_raw_body),
    signature: str | None = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_stripe_gateway),
):
    return api_billing_webhooks_service.process_webhook(
        db=db, gateway=gateway, body=body, signature=signature
    )


@router.post("/webhooks/paystack", tags=["billing-webhooks"])
def paystack_webhook(
    body: bytes = Depends(get_raw_body),
    signature: str | None = Header(default=None, alias="X-Paystack-Signature"),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_paystack_gateway),
):
    return api_billing_webhooks_service.process_webhook(
        db=db, gateway=gateway, body=body, signature=signature
    )


@router.get(
    "/webhook-events",
    response_model=ListResponse[WebhookEventRead],
    tags=["billing-webhooks"],
)
def list_webhook_events(
    status: str | None = None,
    event_type: str | None = None,
    order_by: str = Query(default="received_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.webhook_events.list_response(
        db, status, event_type, order_by, order_dir, limit, offset
    )


@router.get(
    "/webhook-events/{event_row_id}",
    response_model=WebhookEventDetail,
    tags=["billing-webhooks"],
)
def get_webhook_event(event_row_id: str, db: Session = Depends(get_db)):
    return billing_service.webhook_events.get(db, event_row_id)


# --- Subscriptions ---


@router.get(
    "/subscriptions",
    response_model=ListResponse[SubscriptionRead],
    tags=["subscriptions"],
)
def list_subscriptions(
    customer_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.subscriptions.list_response(
        db, customer_id, status, order_by, order_dir, limit, offset
    )


@router.get(
    "/subscriptions/{subscription_id}",
    response_model=SubscriptionRead,
    tags=["subscriptions"],
)
def get_subscription(subscription_id: str, db: Session = Depends(get_db)):
    return billing_service.subscriptions.get(db, subscription_id)


@router.post(
    "/subscriptions/{subscription_id}/preview-change",
    response_model=ProrationPreviewRead,
    tags=["subscriptions"],
)
def preview_plan_change(
    subscription_id: str,
    payload: PlanChangeRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    preview = billing_service.subscriptions.preview_change(
        db, gateway, subscription_id, payload.plan_id, payload.billing_cycle
    )
    summary = preview.summary
    return ProrationPreviewRead(
        subscription_id=preview.subscription_id,
        current_plan_id=preview.current_plan_id,
        new_plan_id=preview.new_plan_id,
        billing_cycle=preview.billing_cycle,
        amount_due=summary.amount_due,
        credit=summary.credit,
        net_amount_due=summary.net_amount_due,
        currency=summary.currency,
        remaining_days=preview.remaining_days,
        is_upgrade=preview.is_upgrade,
        message=preview.message,
        lines=[asdict(line) for line in summary.lines],
    )


@router.post(
    "/subscriptions/{subscription_id}/change-plan",
    response_model=PlanChangeRead,
    tags=["subscriptions"],
)
def change_plan(
    subscription_id: str,
    payload: PlanChangeRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    result = billing_service.subscriptions.change_plan(
        db,
        gateway,
        subscription_id,
        payload.plan_id,
        payload.billing_cycle,
        payload.idempotency_key,
    )
    return PlanChangeRead(
        subscription=SubscriptionRead.model_validate(result.subscription),
        invoice=InvoiceRead.model_validate(result.invoice) if result.invoice else None,
        amount_charged=result.amount_charged,
        invoice_deleted=result.invoice_deleted,
    )


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionRead,
    tags=["subscriptions"],
)
def cancel_subscription(
    subscription_id: str,
    payload: CancelRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return billing_service.subscriptions.cancel(
        db, gateway, subscription_id, immediately=payload.immediately
    )


@router.post(
    "/subscriptions/{subscription_id}/resume",
    response_model=SubscriptionRead,
    tags=["subscriptions"],
)
def resume_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return billing_service.subscriptions.resume(db, gateway, subscription_id)


@router.post(
    "/checkout-sessions",
    response_model=CheckoutSessionRead,
    status_code=status.HTTP_201_CREATED,
    tags=["subscriptions"],
)
def create_checkout_session(
    payload: CheckoutRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    session = billing_service.subscriptions.start_checkout(
        db,
        gateway,
        payload.customer_id,
        payload.plan_id,
        payload.billing_cycle,
        payload.success_url,
        payload.cancel_url,
    )
    return CheckoutSessionRead(id=session["id"], url=session.get("url"))


# --- Invoices ---


@router.get(
    "/invoices",
    response_model=ListResponse[InvoiceRead],
    tags=["invoices"],
)
def list_invoices(
    customer_id: str | None = None,
    subscription_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.invoices.list_response(
        db, customer_id, subscription_id, status, order_by, order_dir, limit, offset
    )


@router.get(
    "/invoices/{invoice_id}",
    response_model=InvoiceRead,
    tags=["invoices"],
)
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.get(db, invoice_id)


# --- Payments ---


@router.get(
    "/payments",
    response_model=ListResponse[PaymentRead],
    tags=["payments"],
)
def list_payments(
    customer_id: str | None = None,
    invoice_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.payments.list_response(
        db, customer_id, invoice_id, status, order_by, order_dir, limit, offset
    )


@router.post(
    "/payments/{payment_id}/refund",
    response_model=PaymentRead,
    tags=["payments"],
)
def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return billing_service.payments.refund(
        db, gateway, payment_id, payload.amount, payload.idempotency_key
    )


# --- Customers ---


@router.get(
    "/customers/{customer_id}/payment-methods",
    response_model=list[PaymentMethodRead],
    tags=["customers"],
)
def list_payment_methods(
    customer_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    methods = billing_service.customers.list_payment_methods(db, gateway, customer_id)
    return [PaymentMethodRead.from_gateway(method) for method in methods]


@router.post(
    "/customers/{customer_id}/payment-methods",
    response_model=PaymentMethodRead,
    status_code=status.HTTP_201_CREATED,
    tags=["customers"],
)
def attach_payment_method(
    customer_id: str,
    payload: PaymentMethodAttach,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    method = billing_service.customers.attach_payment_method(
        db, gateway, customer_id, payload.payment_method_id, payload.make_default
    )
    return PaymentMethodRead.from_gateway(method)


@router.delete(
    "/customers/{customer_id}/payment-methods/{payment_method_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["customers"],
)
def detach_payment_method(
    customer_id: str,
    payment_method_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> None:
    billing_service.customers.detach_payment_method(db, gateway, customer_id, payment_method_id)


@router.post(
    "/customers/{customer_id}/payment-methods/{payment_method_id}/default",
    response_model=PaymentMethodRead,
    tags=["customers"],
)
def set_default_payment_method(
    customer_id: str,
    payment_method_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    method = billing_service.customers.set_default_payment_method(
        db, gateway, customer_id, payment_method_id
    )
    return PaymentMethodRead.from_gateway(method)


@router.post(
    "/customers/{customer_id}/portal-sessions",
    response_model=PortalSessionRead,
    status_code=status.HTTP_201_CREATED,
    tags=["customers"],
)
def create_portal_session(
    customer_id: str,
    payload: PortalSessionRequest,
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    session = billing_service.customers.create_portal_session(
        db, gateway, customer_id, payload.return_url
    )
    return PortalSessionRead(id=session.get("id"), url=session["url"])


# --- Sync ---


@router.post(
    "/sync",
    response_model=SyncQueued,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["billing-sync"],
)
def queue_backfill_sync(payload: SyncRequest):
    resources = payload.resources or list(RESOURCES)
    unknown = [name for name in resources if name not in RESOURCES]
    if unknown:
        raise ValidationError(f"Unknown sync resources: {', '.join(unknown)}")
    provider = resolve_provider(payload.provider)
    result = run_backfill_sync.delay(provider.value, resources)
    return SyncQueued(task_id=str(result.id), resources=resources)
