"""Mock utilities for testing external dependencies."""

from __future__ import annotations

import copy
import json
from typing import Any

from app.services.gateways.base import GatewayEvent, ListPage, PaymentGateway
from app.services.gateways.errors import InvalidSignatureError, ValidationError

VALID_SIGNATURE = "valid"

PERIOD_START = 1_760_000_000
PERIOD_END = PERIOD_START + 30 * 86400


def make_price(
    price_id: str = "price_pro_monthly",
    amount: int = 4900,
    interval: str = "month",
    metadata: dict | None = None,
) -> dict[str, Any]:
    return {
        "id": price_id,
        "unit_amount": amount,
        "currency": "usd",
        "recurring": {"interval": interval},
        "metadata": metadata or {},
    }


def make_subscription(
    sub_id: str = "sub_1",
    *,
    customer: str = "cus_1",
    status: str = "active",
    created: int | None = 1_700_000_000,
    price: dict | None = None,
    metadata: dict | None = None,
    item_id: str | None = None,
    period_start: int = PERIOD_START,
    period_end: int = PERIOD_END,
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata or {},
        "items": {
            "data": [
                {
                    "id": item_id or f"si_{sub_id}",
                    "price": price or make_price(),
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            ]
        },
    }
    if created is not None:
        obj["created"] = created
    return obj


def make_invoice(
    invoice_id: str = "in_1",
    *,
    customer: str = "cus_1",
    subscription: str | None = "sub_1",
    status: str = "open",
    amount_due: int = 4900,
    amount_paid: int = 0,
    lines: list[dict] | None = None,
) -> dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer,
        "subscription": subscription,
        "status": status,
        "currency": "usd",
        "subtotal": amount_due,
        "total": amount_due,
        "amount_due": amount_due,
        "amount_paid": amount_paid,
        "period_start": PERIOD_START,
        "period_end": PERIOD_END,
        "lines": {"data": lines if lines is not None else [make_line(amount=amount_due)]},
    }


def make_line(
    amount: int,
    *,
    start: int = PERIOD_START,
    end: int = PERIOD_END,
    proration: bool = False,
    description: str = "Pro plan",
) -> dict[str, Any]:
    return {
        "id": f"il_{abs(amount)}_{start}",
        "amount": amount,
        "currency": "usd",
        "description": description,
        "quantity": 1,
        "proration": proration,
        "period": {"start": start, "end": end},
    }


def make_payment_intent(
    pi_id: str = "pi_1",
    *,
    customer: str = "cus_1",
    status: str = "succeeded",
    amount: int = 4900,
    invoice: str | None = None,
    error: dict | None = None,
) -> dict[str, Any]:
    obj = {
        "id": pi_id,
        "object": "payment_intent",
        "customer": customer,
        "status": status,
        "amount": amount,
        "currency": "usd",
        "latest_charge": f"ch_{pi_id}",
        "invoice": invoice,
    }
    if error:
        obj["last_payment_error"] = error
    return obj


def make_payment_method(pm_id: str = "pm_1", *, customer: str = "cus_1", last4: str = "4242") -> dict[str, Any]:
    return {
        "id": pm_id,
        "object": "payment_method",
        "type": "card",
        "customer": customer,
        "card": {"brand": "visa", "last4": last4, "exp_month": 12, "exp_year": 2030},
    }

def make_event_body(event_id: str, event_type: str, obj: dict[str, Any]) -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "created": 1_700_000_100, "data": {"object": obj}}
    ).encode()


class FakeGateway(PaymentGateway):
    """In-memory gateway that records every call.

    ``calls`` holds ``(operation, kwargs)`` tuples in call order. Seed
    ``subscriptions``, ``customers``, ``invoices``, ``charges`` and
    ``payment_methods`` (keyed by customer) for
    retrieval and listing; set ``errors[operation]`` to make a verb raise.
    """

    name = "stripe"

    def __init__(self, page_size: int | None = None):
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.customers: list[dict[str, Any]] = []
        self.invoices: dict[str, dict[str, Any]] = {}
        self.charges: list[dict[str, Any]] = []
        self.payment_methods: dict[str, list[dict[str, Any]]] = {}
        self.errors: dict[str, Exception] = {}
        self.preview: dict[str, Any] = {"currency": "usd", "lines": {"data": []}}
        self.next_invoice: dict[str, Any] | None = None
        self.page_size = page_size

    def _record(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        error = self.errors.get(operation)
        if error is not None:
            raise error

    def calls_for(self, operation: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    # Customers

    def create_customer(self, *, email, name=None, metadata=None, idempotency_key=None):
        self._record("create_customer", email=email, metadata=metadata)
        return {"id": f"cus_new_{len(self.calls)}", "email": email, "metadata": metadata or {}}

    def update_customer(self, customer_id, **fields):
        self._record("update_customer", customer_id=customer_id, **fields)
        return {"id": customer_id, **fields}

    # Subscriptions

    def create_checkout_session(
        self,
        *,
        customer_id,
        price_id,
        success_url,
        cancel_url,
        metadata=None,
        idempotency_key=None,
    ):
        self._record(
            "create_checkout_session",
            customer_id=customer_id,
            price_id=price_id,
            metadata=metadata,
        )
        return {"id": "cs_test_1", "url": "https://checkout.example.com/cs_test_1"}

    def create_subscription(
        self, *, customer_id, price_id, metadata=None, trial_days=None, idempotency_key=None
    ):
        self._record("create_subscription", customer_id=customer_id, price_id=price_id)
        sub = make_subscription(
            f"sub_new_{len(self.calls)}", customer=customer_id, metadata=metadata
        )
        self.subscriptions[sub["id"]] = sub
        return sub

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id=subscription_id)
        if subscription_id not in self.subscriptions:
            raise ValidationError(f"No such subscription: {subscription_id}", code="resource_missing")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def cancel_subscription(self, subscription_id, *, immediately=False):
        self._record(
            "cancel_subscription", subscription_id=subscription_id, immediately=immediately
        )
        sub = self.subscriptions.get(subscription_id) or make_subscription(subscription_id)
        if immediately:
            sub = {**sub, "status": "canceled", "canceled_at": PERIOD_START + 86400}
        else:
            sub = {**sub, "cancel_at_period_end": True}
        self.subscriptions[subscription_id] = sub
        return copy.deepcopy(sub)

    def resume_subscription(self, subscription_id):
        self._record("resume_subscription", subscription_id=subscription_id)
        sub = {**self.subscriptions[subscription_id], "cancel_at_period_end": False}
        self.subscriptions[subscription_id] = sub
        return copy.deepcopy(sub)

    def update_subscription(
        self,
        subscription_id,
        *,
        item_id,
        new_price_id,
        proration_behavior="create_prorations",
        payment_behavior="error_if_incomplete",
        metadata=None,
        idempotency_key=None,
    ):
        self._record(
            "update_subscription",
            subscription_id=subscription_id,
            item_id=item_id,
            new_price_id=new_price_id,
            proration_behavior=proration_behavior,
            payment_behavior=payment_behavior,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        sub = copy.deepcopy(self.subscriptions[subscription_id])
        item = sub["items"]["data"][0]
        amount, interval = self.price_catalog.get(new_price_id, (0, "month"))
        item["price"] = make_price(new_price_id, amount, interval)
        sub["metadata"] = {**sub.get("metadata", {}), **(metadata or {})}
        self.subscriptions[subscription_id] = sub
        return copy.deepcopy(sub)

    price_catalog: dict[str, tuple[int, str]] = {
        "price_basic_monthly": (1900, "month"),
        "price_basic_yearly": (19000, "year"),
        "price_pro_monthly": (4900, "month"),
        "price_pro_yearly": (49000, "year"),
    }

    # Invoices

    def retrieve_invoice(self, invoice_id):
        self._record("retrieve_invoice", invoice_id=invoice_id)
        return copy.deepcopy(self.invoices[invoice_id])

    def create_invoice(
        self, *, customer_id, subscription_id=None, auto_advance=False, idempotency_key=None
    ):
        self._record(
            "create_invoice",
            customer_id=customer_id,
            subscription_id=subscription_id,
            auto_advance=auto_advance,
        )
        if self.next_invoice is None:
            raise ValidationError("Nothing to invoice for customer", code="invoice_no_customer_line_items")
        invoice = copy.deepcopy(self.next_invoice)
        self.invoices[invoice["id"]] = invoice
        return copy.deepcopy(invoice)

    def finalize_invoice(self, invoice_id):
        self._record("finalize_invoice", invoice_id=invoice_id)
        self.invoices[invoice_id]["status"] = "open"
        return copy.deepcopy(self.invoices[invoice_id])

    def pay_invoice(self, invoice_id, *, idempotency_key=None):
        self._record("pay_invoice", invoice_id=invoice_id)
        invoice = self.invoices[invoice_id]
        invoice["status"] = "paid"
        invoice["amount_paid"] = invoice["amount_due"]
        return copy.deepcopy(invoice)

    def delete_invoice(self, invoice_id):
        self._record("delete_invoice", invoice_id=invoice_id)
        self.invoices.pop(invoice_id, None)
        return {"id": invoice_id, "deleted": True}

    def preview_invoice(self, *, customer_id, subscription_id, item_id, new_price_id):
        self._record(
            "preview_invoice",
            customer_id=customer_id,
            subscription_id=subscription_id,
            item_id=item_id,
            new_price_id=new_price_id,
        )
        return copy.deepcopy(self.preview)

    # Payments

    def create_payment_intent(
        self, *, amount, currency, customer_id=None, metadata=None, idempotency_key=None
    ):
        self._record("create_payment_intent", amount=amount, currency=currency)
        return make_payment_intent(
            f"pi_new_{len(self.calls)}", customer=customer_id, status="requires_payment_method"
        )

    def refund(self, payment_id, *, amount=None, idempotency_key=None):
        self._record(
            "refund", payment_id=payment_id, amount=amount, idempotency_key=idempotency_key
        )
        return {"id": f"re_{payment_id}", "object": "refund", "amount": amount, "charge": payment_id}

    def attach_payment_method(self, payment_method_id, customer_id):
        self._record(
            "attach_payment_method", payment_method_id=payment_method_id, customer_id=customer_id
        )
        method = make_payment_method(payment_method_id, customer=customer_id)
        self.payment_methods.setdefault(customer_id, []).append(method)
        return copy.deepcopy(method)

    def detach_payment_method(self, payment_method_id):
        self._record("detach_payment_method", payment_method_id=payment_method_id)
        for methods in self.payment_methods.values():
            methods[:] = [method for method in methods if method["id"] != payment_method_id]
        return {"id": payment_method_id, "customer": None}

    def list_payment_methods(self, customer_id):
        self._record("list_payment_methods", customer_id=customer_id)
        return copy.deepcopy(self.payment_methods.get(customer_id, []))

    def set_default_payment_method(self, customer_id, payment_method_id):
        self._record(
            "set_default_payment_method",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
        )
        return {"id": customer_id, "invoice_settings": {"default_payment_method": payment_method_id}}

    def create_customer_portal_session(self, customer_id, *, return_url):
        self._record(
            "create_customer_portal_session", customer_id=customer_id, return_url=return_url
        )
        return {"id": "bps_1", "url": f"https://billing.example.com/session/{customer_id}"}

    # Webhooks

    def verify_webhook_signature(self, payload, signature):
        if signature != VALID_SIGNATURE:
            raise InvalidSignatureError("Signature mismatch", gateway=self.name)
        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise InvalidSignatureError("Undecodable payload", gateway=self.name) from exc
        if not body.get("id") or not body.get("type"):
            raise ValidationError("Event is missing id or type", gateway=self.name)
        return GatewayEvent(
            id=body["id"],
            type=body["type"],
            data=(body.get("data") or {}).get("object") or {},
            gateway=self.name,
            created=body.get("created"),
            raw=body,
        )

    # Pagination

    def _page(self, operation, items, starting_after, limit):
        self._record(operation, starting_after=starting_after, limit=limit)
        size = self.page_size or limit
        start = 0
        if starting_after is not None:
            ids = [item["id"] for item in items]
            start = ids.index(starting_after) + 1
        page = items[start : start + size]
        has_more = start + size < len(items)
        return ListPage(
            items=copy.deepcopy(page),
            has_more=has_more,
            next_cursor=page[-1]["id"] if page else None,
        )

    def list_subscriptions(self, *, starting_after=None, limit=100):
        return self._page(
            "list_subscriptions", list(self.subscriptions.values()), starting_after, limit
        )

    def list_customers(self, *, starting_after=None, limit=100):
        return self._page("list_customers", self.customers, starting_after, limit)

    def list_invoices(self, *, starting_after=None, limit=100, customer=None):
        return self._page(
            "list_invoices", list(self.invoices.values()), starting_after, limit
        )

    def list_charges(self, *, starting_after=None, limit=100, customer=None):
        return self._page("list_charges", self.charges, starting_after, limit)
