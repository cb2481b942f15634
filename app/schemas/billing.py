from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.models.billing import (
    BillingCycle,
    GatewayProvider,
    InvoiceStatus,
    PaymentStatus,
    SubscriptionStatus,
)
from app.models.event_store import WebhookEventStatus


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: str
    license_type_id: str | None = None
    gateway: GatewayProvider
    external_id: str
    external_price_id: str | None = None
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    unit_amount: int
    currency: str
    cancel_at_period_end: bool
    canceled_at: datetime | None = None
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class InvoiceLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    external_id: str | None = None
    description: str | None = None
    quantity: int
    unit_amount: int | None = None
    amount: int
    currency: str
    proration: bool
    period_start: datetime | None = None
    period_end: datetime | None = None


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: str
    invoice_id: UUID | None = None
    gateway: GatewayProvider
    external_id: str
    external_charge_id: str | None = None
    status: PaymentStatus
    amount: int
    currency: str
    failure_code: str | None = None
    failure_message: str | None = None
    refunded_amount: int
    refunded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: str
    subscription_id: UUID | None = None
    gateway: GatewayProvider
    external_id: str
    number: str | None = None
    status: InvoiceStatus
    currency: str
    subtotal: int
    total: int
    amount_due: int
    amount_paid: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    due_at: datetime | None = None
    paid_at: datetime | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf_url: str | None = None
    created_at: datetime
    updated_at: datetime
    lines: list[InvoiceLineRead] = Field(default_factory=list)
    payments: list[PaymentRead] = Field(default_factory=list)


class WebhookEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_id: str
    gateway: str
    event_type: str
    status: WebhookEventStatus
    processed: bool
    processed_at: datetime | None = None
    attempts: int
    last_error: str | None = None
    outcome: str | None = None
    received_at: datetime


class WebhookEventDetail(WebhookEventRead):
    payload: dict


class PlanChangeRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)
    billing_cycle: BillingCycle | None = None
    idempotency_key: str | None = Field(default=None, max_length=120)


class ProrationLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    description: str | None = None
    amount: int
    proration: bool
    period_start: datetime | None = None
    period_end: datetime | None = None


class ProrationPreviewRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subscription_id: str
    current_plan_id: str | None = None
    new_plan_id: str
    billing_cycle: BillingCycle
    amount_due: int
    credit: int
    net_amount_due: int
    currency: str
    remaining_days: int
    is_upgrade: bool
    message: str
    lines: list[ProrationLineRead] = Field(default_factory=list)


class PlanChangeRead(BaseModel):
    subscription: SubscriptionRead
    invoice: InvoiceRead | None = None
    amount_charged: int
    invoice_deleted: bool = False


class CancelRequest(BaseModel):
    immediately: bool = False


class CheckoutRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=64)
    plan_id: str = Field(min_length=1, max_length=64)
    billing_cycle: BillingCycle = BillingCycle.monthly
    success_url: str = Field(min_length=1, max_length=500)
    cancel_url: str = Field(min_length=1, max_length=500)


class CheckoutSessionRead(BaseModel):
    id: str
    url: str | None = None


class SyncRequest(BaseModel):
    resources: list[str] | None = None
    provider: GatewayProvider | None = None


class SyncQueued(BaseModel):
    task_id: str
    resources: list[str]


class RefundRequest(BaseModel):
    amount: int | None = Field(default=None, gt=0)
    idempotency_key: str | None = Field(default=None, max_length=120)


class PaymentMethodAttach(BaseModel):
    payment_method_id: str = Field(min_length=1, max_length=120)
    make_default: bool = False


class PaymentMethodRead(BaseModel):
    id: str
    type: str | None = None
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None

    @classmethod
    def from_gateway(cls, method: dict) -> PaymentMethodRead:
        card = method.get("card") or {}
        return cls(
            id=method["id"],
            type=method.get("type"),
            brand=card.get("brand"),
            last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )


class PortalSessionRequest(BaseModel):
    return_url: str = Field(min_length=1, max_length=500)


class PortalSessionRead(BaseModel):
    id: str | None = None
    url: str
