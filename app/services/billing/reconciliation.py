"""Reconciliation engine.

Applies verified gateway objects to local billing state. Webhook handlers and
the backfill sync both go through the public ``sync_*``/``upsert_*`` methods,
so there is exactly one implementation of every state transition.

Handlers flush but never commit; the caller owns the transaction so the
event bookkeeping and the business writes land together.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.models.billing import (
    ACTIVE_LIKE_STATUSES,
    BillingCustomer,
    GatewayProvider,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from app.services import numbering
from app.services.billing.customers import CustomerDirectory, DatabaseCustomerDirectory
from app.services.billing.licenses import DatabaseLicenseSink, LicenseSink
from app.services.billing.plans import (
    PlanCatalog,
    billing_cycle_from_interval,
    primary_item,
    primary_price,
)
from app.services.common import as_utc, from_timestamp
from app.services.gateways.base import GatewayEvent, PaymentGateway
from app.services.gateways.errors import (
    TransientError,
    UnresolvableCustomerError,
    ValidationError,
)

logger = logging.getLogger(__name__)

REPLACED_REASON = "Replaced by new subscription"

OUTCOME_PROCESSED = "processed"
OUTCOME_IGNORED = "ignored"
OUTCOME_DROPPED = "dropped"

_SUBSCRIPTION_STATUS_MAP = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.trialing,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "paused": SubscriptionStatus.paused,
    "canceled": SubscriptionStatus.canceled,
    "cancelled": SubscriptionStatus.canceled,
    "incomplete_expired": SubscriptionStatus.canceled,
    "incomplete": SubscriptionStatus.active,
}

_INVOICE_STATUS_MAP = {
    "draft": InvoiceStatus.draft,
    "open": InvoiceStatus.open,
    "paid": InvoiceStatus.paid,
    "void": InvoiceStatus.void,
    "uncollectible": InvoiceStatus.uncollectible,
}

# Invoice status never moves to a lower rank
_INVOICE_STATUS_RANK = {
    InvoiceStatus.draft: 0,
    InvoiceStatus.open: 1,
    InvoiceStatus.uncollectible: 2,
    InvoiceStatus.paid: 3,
    InvoiceStatus.void: 3,
}

_PAYMENT_INTENT_STATUS_MAP = {
    "succeeded": PaymentStatus.succeeded,
    "canceled": PaymentStatus.failed,
    "failed": PaymentStatus.failed,
    "requires_payment_method": PaymentStatus.failed,
}

# Payment status never moves to a lower rank
_PAYMENT_STATUS_RANK = {
    PaymentStatus.pending: 0,
    PaymentStatus.failed: 1,
    PaymentStatus.succeeded: 2,
    PaymentStatus.refunded: 3,
}


def map_subscription_status(external: str | None) -> SubscriptionStatus:
    """Translate a gateway subscription status.

    Unknown values fail open to ``active`` so entitlement is never lost
    silently because the gateway added a status.
    """
    mapped = _SUBSCRIPTION_STATUS_MAP.get((external or "").lower())
    if mapped is None:
        logger.warning("Unmapped subscription status %r, treating as active", external)
        return SubscriptionStatus.active
    return mapped


def map_invoice_status(external: str | None) -> InvoiceStatus:
    mapped = _INVOICE_STATUS_MAP.get((external or "").lower())
    if mapped is None:
        logger.warning("Unmapped invoice status %r, treating as open", external)
        return InvoiceStatus.open
    return mapped


def map_payment_status(external: str | None) -> PaymentStatus:
    return _PAYMENT_INTENT_STATUS_MAP.get((external or "").lower(), PaymentStatus.pending)


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _differs(current, value) -> bool:
    if isinstance(current, datetime) or isinstance(value, datetime):
        return as_utc(current) != as_utc(value)
    return current != value


def _ranked_payment_status(current: PaymentStatus | None, new: PaymentStatus) -> PaymentStatus:
    if current is not None and _PAYMENT_STATUS_RANK[new] < _PAYMENT_STATUS_RANK[current]:
        return current
    return new


def _assign(row, **values) -> bool:
    """Set attributes that actually differ; return True if anything changed."""
    changed = False
    for key, value in values.items():
        if _differs(getattr(row, key), value):
            setattr(row, key, value)
            changed = True
    return changed


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        licenses: LicenseSink | None = None,
        directory: CustomerDirectory | None = None,
        plans: PlanCatalog | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.licenses = licenses or DatabaseLicenseSink(db)
        self.directory = directory or DatabaseCustomerDirectory(db)
        self.plans = plans or PlanCatalog(db)
        self._handlers: dict[str, Callable[[dict[str, Any]], Any]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self.sync_subscription,
            "customer.subscription.updated": self.sync_subscription,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.created": self.upsert_invoice,
            "invoice.finalized": self.upsert_invoice,
            "invoice.updated": self.upsert_invoice,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "invoice.voided": self._on_invoice_voided,
            "invoice.marked_uncollectible": self._on_invoice_uncollectible,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
            "payment_intent.payment_failed": self._on_payment_intent_failed,
            "charge.refunded": self.upsert_charge,
        }

    @property
    def gateway_provider(self) -> GatewayProvider:
        return GatewayProvider(self.gateway.name)

    def handles(self, event_type: str) -> bool:
        return event_type in self._handlers

    def apply(self, event: GatewayEvent) -> str:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("No handler for %s event %s", event.type, event.id)
            return OUTCOME_IGNORED
        try:
            handler(event.data)
        except UnresolvableCustomerError as exc:
            logger.warning("Dropping %s event %s: %s", event.type, event.id, exc)
            return OUTCOME_DROPPED
        return OUTCOME_PROCESSED

    # Customers

    def resolve_customer(
        self, external_customer_id: str | None, metadata: dict[str, Any] | None = None
    ) -> BillingCustomer:
        """Find the local customer, self-healing the external id link.

        Raises:
            UnresolvableCustomerError: Neither the external id nor
                ``metadata.customerId`` identifies a local customer.
        """
        external_customer_id = _object_id(external_customer_id)
        internal_id = self.directory.resolve_internal_customer_id(external_customer_id)
        fallback_id = (metadata or {}).get("customerId")
        if internal_id is None and fallback_id:
            if self.db.get(BillingCustomer, fallback_id) is not None:
                internal_id = fallback_id
                if external_customer_id:
                    logger.info(
                        "Linking customer %s to external id %s from metadata",
                        fallback_id,
                        external_customer_id,
                    )
                    self.directory.link_external_customer(fallback_id, external_customer_id)
        if internal_id is None:
            raise UnresolvableCustomerError(external_customer_id, fallback_id)
        customer = self.db.get(BillingCustomer, internal_id)
        if customer is None:
            raise UnresolvableCustomerError(external_customer_id, fallback_id)
        return customer

    def _lock_customer(self, customer_id: str) -> None:
        # Serializes duplicate checks per customer on PostgreSQL
        (
            self.db.query(BillingCustomer)
            .filter(BillingCustomer.id == customer_id)
            .with_for_update()
            .first()
        )

    def sync_customer(self, obj: dict[str, Any]) -> bool:
        """Link a gateway customer whose metadata names a local customer."""
        internal_id = (obj.get("metadata") or {}).get("customerId")
        if not internal_id or self.db.get(BillingCustomer, internal_id) is None:
            return False
        self.directory.link_external_customer(internal_id, obj["id"])
        return True

    # Subscriptions

    def _find_subscription(self, external_id: str | None) -> Subscription | None:
        if not external_id:
            return None
        return (
            self.db.query(Subscription)
            .filter(Subscription.external_id == external_id)
            .first()
        )

    def _cancel_at_gateway(self, subscription: Subscription) -> None:
        if subscription.gateway != self.gateway_provider:
            logger.warning(
                "Cannot cancel %s subscription %s through %s",
                subscription.gateway.value,
                subscription.external_id,
                self.gateway.name,
            )
            return
        try:
            self.gateway.cancel_subscription(subscription.external_id, immediately=True)
        except TransientError:
            raise
        except ValidationError as exc:
            # Already canceled or gone at the gateway; the local state still wins
            logger.warning(
                "Gateway cancel of %s rejected: %s", subscription.external_id, exc
            )

    def _mark_replaced(self, subscription: Subscription) -> None:
        subscription.status = SubscriptionStatus.canceled
        subscription.canceled_at = datetime.now(timezone.utc)
        subscription.cancel_at_period_end = False
        subscription.cancel_reason = REPLACED_REASON

    def _suppress_duplicates(
        self, customer: BillingCustomer, external_id: str, created: datetime | None
    ) -> bool:
        """Cancel competing active subscriptions; return False if the incoming one loses.

        The subscription with the older gateway ``created`` loses. An incoming
        subscription with no ``created`` is treated as the newer one.
        """
        others = (
            self.db.query(Subscription)
            .filter(Subscription.customer_id == customer.id)
            .filter(Subscription.external_id != external_id)
            .filter(Subscription.status.in_(ACTIVE_LIKE_STATUSES))
            .order_by(Subscription.created_at.asc())
            .all()
        )
        incoming_survives = True
        for other in others:
            other_created = as_utc(other.gateway_created_at)
            if created is not None and other_created is not None and created < other_created:
                incoming_survives = False
                continue
            logger.warning(
                "Customer %s has duplicate active subscription %s, replacing with %s",
                customer.id,
                other.external_id,
                external_id,
            )
            self._cancel_at_gateway(other)
            self._mark_replaced(other)
        self.db.flush()
        return incoming_survives

    def sync_subscription(self, obj: dict[str, Any]) -> Subscription | None:
        """Upsert a gateway subscription and bring the license in line.

        Used for ``created``/``updated`` events and backfill. Unknown
        subscriptions are inserted whatever the event type, so reordered
        deliveries converge.
        """
        customer = self.resolve_customer(obj.get("customer"), obj.get("metadata"))
        self._lock_customer(customer.id)
        external_id = obj["id"]
        subscription = self._find_subscription(external_id)
        status = map_subscription_status(obj.get("status"))

        if subscription is not None and subscription.status == SubscriptionStatus.canceled:
            if status != SubscriptionStatus.canceled:
                logger.info(
                    "Ignoring %s payload for canceled subscription %s",
                    obj.get("status"),
                    external_id,
                )
                status = SubscriptionStatus.canceled

        created = from_timestamp(obj.get("created"))
        replaced = False
        if status in ACTIVE_LIKE_STATUSES:
            if not self._suppress_duplicates(customer, external_id, created):
                replaced = True

        plan = self.plans.resolve_for_subscription(obj)
        previous_plan_id = subscription.license_type_id if subscription else None
        if subscription is None:
            subscription = Subscription(
                external_id=external_id,
                customer_id=customer.id,
                gateway=self.gateway_provider,
            )
            self.db.add(subscription)

        item = primary_item(obj)
        price = primary_price(obj)
        canceled_at = from_timestamp(obj.get("canceled_at") or obj.get("ended_at"))
        if status == SubscriptionStatus.canceled and canceled_at is None:
            canceled_at = subscription.canceled_at or datetime.now(timezone.utc)
        _assign(
            subscription,
            customer_id=customer.id,
            license_type_id=plan.id if plan else subscription.license_type_id,
            external_price_id=price.get("id"),
            external_item_id=item.get("id"),
            status=status,
            billing_cycle=billing_cycle_from_interval(
                (price.get("recurring") or {}).get("interval")
            ),
            current_period_start=from_timestamp(
                obj.get("current_period_start") or item.get("current_period_start")
            ),
            current_period_end=from_timestamp(
                obj.get("current_period_end") or item.get("current_period_end")
            ),
            unit_amount=int(price.get("unit_amount") or 0),
            currency=str(price.get("currency") or obj.get("currency") or "usd").lower(),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=canceled_at,
            gateway_created_at=created or subscription.gateway_created_at,
        )
        if replaced:
            logger.warning(
                "Incoming subscription %s is older than an active one, canceling it",
                external_id,
            )
            self._cancel_at_gateway(subscription)
            self._mark_replaced(subscription)
        self.db.flush()

        self._sync_license(customer, subscription, previous_plan_id)
        return subscription

    def _plan_in_use(self, customer_id: str, plan_id: str, exclude_id) -> bool:
        return (
            self.db.query(Subscription)
            .filter(Subscription.customer_id == customer_id)
            .filter(Subscription.license_type_id == plan_id)
            .filter(Subscription.id != exclude_id)
            .filter(Subscription.status.in_(ACTIVE_LIKE_STATUSES))
            .first()
            is not None
        )

    def _sync_license(
        self,
        customer: BillingCustomer,
        subscription: Subscription,
        previous_plan_id: str | None,
    ) -> None:
        plan_id = subscription.license_type_id
        if plan_id is None:
            logger.warning(
                "Subscription %s has no resolvable plan, license unchanged",
                subscription.external_id,
            )
            return
        if subscription.status in (SubscriptionStatus.canceled, SubscriptionStatus.paused):
            if subscription.cancel_reason == REPLACED_REASON:
                return
            if not self._plan_in_use(customer.id, plan_id, subscription.id):
                self.licenses.deactivate_license(customer.user_id, plan_id)
            return
        if previous_plan_id and previous_plan_id != plan_id:
            logger.info(
                "Subscription %s moved from %s to %s",
                subscription.external_id,
                previous_plan_id,
                plan_id,
            )
        self.licenses.activate_license(
            customer.user_id, plan_id, as_utc(subscription.current_period_end)
        )

    def _on_subscription_deleted(self, obj: dict[str, Any]) -> Subscription:
        subscription = self._find_subscription(obj.get("id"))
        if subscription is None:
            return self.sync_subscription({**obj, "status": "canceled"})
        customer = self.db.get(BillingCustomer, subscription.customer_id)
        canceled_at = from_timestamp(obj.get("canceled_at") or obj.get("ended_at"))
        _assign(
            subscription,
            status=SubscriptionStatus.canceled,
            cancel_at_period_end=False,
            canceled_at=subscription.canceled_at or canceled_at or datetime.now(timezone.utc),
        )
        self.db.flush()
        if subscription.license_type_id and subscription.cancel_reason != REPLACED_REASON:
            if not self._plan_in_use(
                customer.id, subscription.license_type_id, subscription.id
            ):
                self.licenses.deactivate_license(
                    customer.user_id, subscription.license_type_id
                )
        return subscription

    def _on_checkout_completed(self, session: dict[str, Any]) -> Subscription | None:
        subscription_ref = session.get("subscription")
        if session.get("mode") not in (None, "subscription") or not subscription_ref:
            logger.info("Checkout session %s has no subscription", session.get("id"))
            return None
        metadata = session.get("metadata") or {}
        customer = self.resolve_customer(session.get("customer"), metadata)
        obj = (
            subscription_ref
            if isinstance(subscription_ref, dict)
            else self.gateway.retrieve_subscription(subscription_ref)
        )
        merged_metadata = {**metadata, **(obj.get("metadata") or {})}
        merged_metadata.setdefault("customerId", customer.id)
        return self.sync_subscription({**obj, "metadata": merged_metadata})

    # Invoices

    def _invoice_subscription(self, obj: dict[str, Any]) -> Subscription | None:
        ref = obj.get("subscription")
        if ref is None:
            details = ((obj.get("parent") or {}).get("subscription_details")) or {}
            ref = details.get("subscription")
        return self._find_subscription(_object_id(ref))

    @staticmethod
    def _invoice_metadata(obj: dict[str, Any]) -> dict[str, Any]:
        metadata = dict(obj.get("metadata") or {})
        details = obj.get("subscription_details") or (
            (obj.get("parent") or {}).get("subscription_details") or {}
        )
        for key, value in (details.get("metadata") or {}).items():
            metadata.setdefault(key, value)
        return metadata

    def upsert_invoice(
        self, obj: dict[str, Any], *, status: InvoiceStatus | None = None
    ) -> Invoice:
        customer = self.resolve_customer(obj.get("customer"), self._invoice_metadata(obj))
        invoice = (
            self.db.query(Invoice).filter(Invoice.external_id == obj["id"]).first()
        )
        if invoice is None:
            invoice = Invoice(
                external_id=obj["id"],
                customer_id=customer.id,
                gateway=self.gateway_provider,
                number=numbering.generate_invoice_number(self.db),
            )
            self.db.add(invoice)
            current_status = None
        else:
            current_status = invoice.status

        new_status = status or map_invoice_status(obj.get("status"))
        if current_status is not None and (
            _INVOICE_STATUS_RANK[new_status] < _INVOICE_STATUS_RANK[current_status]
        ):
            logger.info(
                "Ignoring stale %s payload for %s invoice %s",
                new_status.value,
                current_status.value,
                invoice.external_id,
            )
            return invoice

        subscription = self._invoice_subscription(obj)
        values: dict[str, Any] = {
            "customer_id": customer.id,
            "status": new_status,
            "currency": str(obj.get("currency") or invoice.currency or "usd").lower(),
            "subtotal": int(obj.get("subtotal") or 0),
            "total": int(obj.get("total") or 0),
            "amount_due": int(obj.get("amount_due") or 0),
            "amount_paid": int(obj.get("amount_paid") or 0),
            "period_start": from_timestamp(obj.get("period_start")),
            "period_end": from_timestamp(obj.get("period_end")),
            "due_at": from_timestamp(obj.get("due_date")),
        }
        if subscription is not None:
            values["subscription_id"] = subscription.id
        if obj.get("hosted_invoice_url"):
            values["hosted_invoice_url"] = obj["hosted_invoice_url"]
        if obj.get("invoice_pdf"):
            values["invoice_pdf_url"] = obj["invoice_pdf"]
        if new_status == InvoiceStatus.paid:
            paid_at = from_timestamp((obj.get("status_transitions") or {}).get("paid_at"))
            values["paid_at"] = invoice.paid_at or paid_at or datetime.now(timezone.utc)
            values["amount_paid"] = max(values["amount_paid"], invoice.amount_paid or 0)
        _assign(invoice, **values)

        if "lines" in obj:
            self._replace_lines(invoice, (obj.get("lines") or {}).get("data") or [])
        self.db.flush()
        return invoice

    @staticmethod
    def _line_values(position: int, line: dict[str, Any], currency: str) -> dict[str, Any]:
        period = line.get("period") or {}
        price = line.get("price") or {}
        unit_amount = price.get("unit_amount", line.get("unit_amount"))
        return {
            "position": position,
            "external_id": line.get("id"),
            "description": line.get("description"),
            "quantity": int(line.get("quantity") or 1),
            "unit_amount": int(unit_amount) if unit_amount is not None else None,
            "amount": int(line.get("amount") or 0),
            "currency": str(line.get("currency") or currency).lower(),
            "proration": bool(line.get("proration")),
            "period_start": from_timestamp(period.get("start")),
            "period_end": from_timestamp(period.get("end")),
        }

    def _replace_lines(self, invoice: Invoice, lines: list[dict[str, Any]]) -> None:
        incoming = [
            self._line_values(position, line, invoice.currency)
            for position, line in enumerate(lines)
        ]
        existing = list(invoice.lines)
        if len(existing) == len(incoming) and all(
            not any(_differs(getattr(row, key), value) for key, value in values.items())
            for row, values in zip(existing, incoming)
        ):
            return
        invoice.lines.clear()
        self.db.flush()
        for values in incoming:
            invoice.lines.append(InvoiceLineItem(**values))

    def _on_invoice_paid(self, obj: dict[str, Any]) -> Invoice:
        return self.upsert_invoice(obj, status=InvoiceStatus.paid)

    def _on_invoice_payment_failed(self, obj: dict[str, Any]) -> Invoice:
        # Left actionable; the gateway's dunning drives retries
        return self.upsert_invoice(obj, status=InvoiceStatus.open)

    def _on_invoice_voided(self, obj: dict[str, Any]) -> Invoice:
        return self.upsert_invoice(obj, status=InvoiceStatus.void)

    def _on_invoice_uncollectible(self, obj: dict[str, Any]) -> Invoice:
        return self.upsert_invoice(obj, status=InvoiceStatus.uncollectible)

    # Payments

    def _correlate_invoice(
        self, customer: BillingCustomer, invoice_ref: Any
    ) -> Invoice | None:
        external_invoice_id = _object_id(invoice_ref)
        if external_invoice_id:
            return (
                self.db.query(Invoice)
                .filter(Invoice.external_id == external_invoice_id)
                .first()
            )
        # Heuristic: payment events do not always name their invoice
        return (
            self.db.query(Invoice)
            .filter(Invoice.customer_id == customer.id)
            .filter(Invoice.status == InvoiceStatus.open)
            .order_by(Invoice.created_at.desc())
            .first()
        )

    def upsert_payment_intent(
        self, obj: dict[str, Any], *, status: PaymentStatus | None = None
    ) -> Payment:
        customer = self.resolve_customer(obj.get("customer"), obj.get("metadata"))
        payment = (
            self.db.query(Payment).filter(Payment.external_id == obj["id"]).first()
        )
        if payment is None:
            payment = Payment(
                external_id=obj["id"],
                customer_id=customer.id,
                gateway=self.gateway_provider,
            )
            self.db.add(payment)

        new_status = _ranked_payment_status(
            payment.status, status or map_payment_status(obj.get("status"))
        )
        error = obj.get("last_payment_error") or {}
        values: dict[str, Any] = {
            "status": new_status,
            "amount": int(obj.get("amount") or 0),
            "currency": str(obj.get("currency") or "usd").lower(),
        }
        if obj.get("latest_charge"):
            values["external_charge_id"] = _object_id(obj["latest_charge"])
        if new_status == PaymentStatus.failed:
            values["failure_code"] = error.get("decline_code") or error.get("code")
            values["failure_message"] = error.get("message")
        if payment.invoice_id is None:
            invoice = self._correlate_invoice(customer, obj.get("invoice"))
            if invoice is not None:
                values["invoice_id"] = invoice.id
        _assign(payment, **values)
        self.db.flush()
        return payment

    def _on_payment_intent_succeeded(self, obj: dict[str, Any]) -> Payment:
        return self.upsert_payment_intent(obj, status=PaymentStatus.succeeded)

    def _on_payment_intent_failed(self, obj: dict[str, Any]) -> Payment:
        return self.upsert_payment_intent(obj, status=PaymentStatus.failed)

    def upsert_charge(self, obj: dict[str, Any]) -> Payment:
        """Upsert the Payment behind a charge, recording refunds."""
        if obj.get("object") == "payment_intent":
            return self.upsert_payment_intent(obj)
        intent_id = _object_id(obj.get("payment_intent"))
        query = self.db.query(Payment)
        payment = None
        if intent_id:
            payment = query.filter(Payment.external_id == intent_id).first()
        if payment is None:
            payment = query.filter(Payment.external_charge_id == obj["id"]).first()
        if payment is None:
            customer = self.resolve_customer(obj.get("customer"), obj.get("metadata"))
            payment = Payment(
                external_id=intent_id or obj["id"],
                customer_id=customer.id,
                gateway=self.gateway_provider,
                status=PaymentStatus.pending,
            )
            self.db.add(payment)
            if obj.get("invoice"):
                invoice = self._correlate_invoice(customer, obj["invoice"])
                if invoice is not None:
                    payment.invoice_id = invoice.id

        refunded_amount = int(obj.get("amount_refunded") or 0)
        values: dict[str, Any] = {
            "external_charge_id": obj["id"],
            "amount": int(obj.get("amount") or payment.amount or 0),
            "currency": str(obj.get("currency") or payment.currency or "usd").lower(),
        }
        if refunded_amount > 0 or obj.get("refunded"):
            values["status"] = PaymentStatus.refunded
            values["refunded_amount"] = refunded_amount or values["amount"]
            if values["refunded_amount"] != (payment.refunded_amount or 0):
                values["refunded_at"] = datetime.now(timezone.utc)
        else:
            values["status"] = _ranked_payment_status(
                payment.status, map_payment_status(obj.get("status"))
            )
            if values["status"] == PaymentStatus.failed:
                values["failure_code"] = obj.get("failure_code")
                values["failure_message"] = obj.get("failure_message")
        _assign(payment, **values)
        self.db.flush()
        return payment

