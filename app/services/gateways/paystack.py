"""Paystack payment gateway client.

Paystack objects are normalized into the canonical subscription, invoice and
payment shapes on the way in, so the reconciliation engine handles them
exactly like Stripe objects.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from datetime import datetime
from typing import Any

import httpx

from app.services.gateways.base import (
    GatewayEvent,
    ListPage,
    PaymentGateway,
    call_with_retry,
)
from app.services.gateways.errors import (
    InvalidSignatureError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

PAYSTACK_API_BASE = "https://api.paystack.co"

_SUBSCRIPTION_STATUS = {
    "active": "active",
    "non-renewing": "active",
    "attention": "past_due",
    "completed": "canceled",
    "cancelled": "canceled",
}

# Paystack event name -> canonical event type
_EVENT_TYPES = {
    "subscription.create": "customer.subscription.created",
    "subscription.not_renew": "customer.subscription.updated",
    "subscription.disable": "customer.subscription.deleted",
    "subscription.expiring_cards": "customer.subscription.updated",
    "invoice.create": "invoice.created",
    "invoice.payment_failed": "invoice.payment_failed",
    "charge.success": "payment_intent.succeeded",
    "charge.failed": "payment_intent.payment_failed",
    "refund.processed": "charge.refunded",
}


def generate_reference(prefix: str = "BILL") -> str:
    """Generate a unique transaction reference, e.g. ``BILL-3f2a9c1e``."""
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _to_unix(value: Any) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return int(parsed.timestamp())


def _customer_code(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("customer_code")
    return str(value) if value else None


def _customer_metadata(value: Any) -> dict[str, Any]:
    if isinstance(value, dict) and isinstance(value.get("metadata"), dict):
        return value["metadata"]
    return {}


def normalize_subscription(data: dict[str, Any]) -> dict[str, Any]:
    plan = data.get("plan") or {}
    code = data.get("subscription_code")
    status = str(data.get("status") or "").lower()
    interval = "year" if plan.get("interval") == "annually" else "month"
    period_end = _to_unix(data.get("next_payment_date"))
    metadata = dict(_customer_metadata(data.get("customer")))
    if isinstance(data.get("metadata"), dict):
        metadata.update(data["metadata"])
    return {
        "id": code,
        "object": "subscription",
        "customer": _customer_code(data.get("customer")),
        "status": _SUBSCRIPTION_STATUS.get(status, status),
        "created": _to_unix(data.get("createdAt") or data.get("created_at")),
        "current_period_start": None,
        "current_period_end": period_end,
        "cancel_at_period_end": status == "non-renewing",
        "canceled_at": _to_unix(data.get("cancelledAt")) if status == "cancelled" else None,
        "metadata": metadata,
        "email_token": data.get("email_token"),
        "items": {
            "data": [
                {
                    "id": code,
                    "current_period_end": period_end,
                    "price": {
                        "id": plan.get("plan_code"),
                        "unit_amount": plan.get("amount") or data.get("amount"),
                        "currency": str(plan.get("currency") or "ngn").lower(),
                        "recurring": {"interval": interval},
                        "metadata": {},
                    },
                }
            ]
        },
    }


def normalize_invoice(data: dict[str, Any]) -> dict[str, Any]:
    subscription = data.get("subscription") or {}
    transaction = data.get("transaction") or {}
    amount = int(data.get("amount") or 0)
    paid = bool(data.get("paid"))
    status = "paid" if paid else "open"
    period_start = _to_unix(data.get("period_start"))
    period_end = _to_unix(data.get("period_end"))
    return {
        "id": data.get("invoice_code"),
        "object": "invoice",
        "customer": _customer_code(data.get("customer")),
        "subscription": subscription.get("subscription_code")
        if isinstance(subscription, dict)
        else subscription,
        "status": status,
        "currency": str(transaction.get("currency") or "ngn").lower(),
        "subtotal": amount,
        "total": amount,
        "amount_due": 0 if paid else amount,
        "amount_paid": amount if paid else 0,
        "period_start": period_start,
        "period_end": period_end,
        "due_date": period_end,
        "status_transitions": {"paid_at": _to_unix(data.get("paid_at"))},
        "lines": {
            "data": [
                {
                    "id": data.get("invoice_code"),
                    "description": data.get("description"),
                    "quantity": 1,
                    "amount": amount,
                    "proration": False,
                    "period": {"start": period_start, "end": period_end},
                }
            ]
        },
    }


def normalize_transaction(data: dict[str, Any]) -> dict[str, Any]:
    status = str(data.get("status") or "").lower()
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    return {
        "id": data.get("reference"),
        "object": "payment_intent",
        "customer": _customer_code(data.get("customer")),
        "amount": int(data.get("amount") or 0),
        "currency": str(data.get("currency") or "ngn").lower(),
        "status": "succeeded" if status == "success" else status,
        "invoice": metadata.get("invoice_id"),
        "metadata": metadata,
        "latest_charge": str(data["id"]) if data.get("id") is not None else None,
        "last_payment_error": None
        if status == "success"
        else {"code": status or None, "message": data.get("gateway_response")},
    }


def normalize_refund(data: dict[str, Any]) -> dict[str, Any]:
    reference = data.get("transaction_reference")
    if reference is None and isinstance(data.get("transaction"), dict):
        reference = data["transaction"].get("reference")
    transaction = data.get("transaction")
    if isinstance(transaction, dict):
        transaction = transaction.get("id")
    amount = int(data.get("amount") or 0)
    return {
        "id": str(transaction),
        "object": "charge",
        "payment_intent": reference,
        "customer": _customer_code(data.get("customer")),
        "amount": amount,
        "amount_refunded": amount,
        "currency": str(data.get("currency") or "ngn").lower(),
        "refunded": True,
    }


_NORMALIZERS = {
    "customer.subscription.created": normalize_subscription,
    "customer.subscription.updated": normalize_subscription,
    "customer.subscription.deleted": normalize_subscription,
    "invoice.created": normalize_invoice,
    "invoice.updated": normalize_invoice,
    "invoice.paid": normalize_invoice,
    "invoice.payment_failed": normalize_invoice,
    "payment_intent.succeeded": normalize_transaction,
    "payment_intent.payment_failed": normalize_transaction,
    "charge.refunded": normalize_refund,
}


class PaystackGateway(PaymentGateway):
    name = "paystack"

    def __init__(
        self,
        secret_key: str,
        *,
        api_base: str = PAYSTACK_API_BASE,
        timeout: float = 30,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.5,
        client: httpx.Client | None = None,
        sleep=time.sleep,
    ):
        if not secret_key:
            raise ValidationError("Paystack secret key is not configured", gateway=self.name)
        # Paystack signs webhooks with the API secret key
        self.webhook_secret = secret_key
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=api_base, timeout=timeout)
        self._client.headers["Authorization"] = f"Bearer {secret_key}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        retry: bool = True,
    ) -> tuple[Any, dict[str, Any]]:
        """Send one API call.

        Paystack has no idempotency header, so creates it cannot dedupe pass
        ``retry=False`` and get a single attempt.
        """
        query = {k: v for k, v in (params or {}).items() if v is not None} or None

        def _send():
            try:
                resp = self._client.request(method, path, json=json_body, params=query)
            except httpx.TransportError as exc:
                raise TransientError(
                    f"Paystack {operation} transport error: {exc}", gateway=self.name
                ) from exc
            try:
                body = resp.json()
            except ValueError:
                body = {}
            if resp.status_code == 429 or resp.status_code >= 500:
                raise TransientError(
                    body.get("message") or f"Paystack returned HTTP {resp.status_code}",
                    gateway=self.name,
                    status_code=resp.status_code,
                )
            if resp.status_code >= 400 or not body.get("status"):
                logger.error("Paystack %s failed: %s", operation, body.get("message"))
                raise ValidationError(
                    body.get("message") or f"Paystack {operation} failed",
                    gateway=self.name,
                    status_code=resp.status_code,
                )
            return body.get("data"), body.get("meta") or {}

        return call_with_retry(
            _send,
            gateway=self.name,
            operation=operation,
            max_retries=self.max_retries if retry else 1,
            backoff_seconds=self.retry_backoff_seconds,
            sleep=self._sleep,
        )

    def _list(self, path: str, operation: str, starting_after, limit, **params) -> ListPage:
        page = int(starting_after) if starting_after else 1
        data, meta = self._request(
            "GET",
            path,
            operation=operation,
            params={"perPage": limit, "page": page, **params},
        )
        page_count = int(meta.get("pageCount") or page)
        has_more = page < page_count
        return ListPage(
            items=data or [],
            has_more=has_more,
            next_cursor=str(page + 1) if has_more else None,
        )

    # Customers

    def create_customer(self, *, email, name=None, metadata=None, idempotency_key=None):
        first_name, _, last_name = (name or "").partition(" ")
        data, _ = self._request(
            "POST",
            "/customer",
            operation="create_customer",
            retry=False,
            json_body={
                "email": email,
                "first_name": first_name or None,
                "last_name": last_name or None,
                "metadata": metadata or {},
            },
        )
        return {"id": data.get("customer_code"), "email": data.get("email"), "metadata": data.get("metadata") or {}}

    def update_customer(self, customer_id, **fields):
        data, _ = self._request(
            "PUT", f"/customer/{customer_id}", operation="update_customer", json_body=fields
        )
        return {"id": data.get("customer_code"), "email": data.get("email"), "metadata": data.get("metadata") or {}}

    def _fetch_customer(self, customer_id: str) -> dict[str, Any]:
        data, _ = self._request("GET", f"/customer/{customer_id}", operation="fetch_customer")
        return data or {}

    # Subscriptions

    def create_subscription(
        self, *, customer_id, price_id, metadata=None, trial_days=None, idempotency_key=None
    ):
        data, _ = self._request(
            "POST",
            "/subscription",
            operation="create_subscription",
            retry=False,
            json_body={"customer": customer_id, "plan": price_id},
        )
        return normalize_subscription(data or {})

    def retrieve_subscription(self, subscription_id):
        data, _ = self._request(
            "GET", f"/subscription/{subscription_id}", operation="retrieve_subscription"
        )
        return normalize_subscription(data or {})

    def _toggle_subscription(self, subscription_id: str, action: str) -> dict[str, Any]:
        current = self.retrieve_subscription(subscription_id)
        self._request(
            "POST",
            f"/subscription/{action}",
            operation=f"{action}_subscription",
            json_body={"code": subscription_id, "token": current.get("email_token")},
        )
        return current

    def cancel_subscription(self, subscription_id, *, immediately=False):
        subscription = self._toggle_subscription(subscription_id, "disable")
        if immediately:
            subscription["status"] = "canceled"
            subscription["canceled_at"] = int(time.time())
        else:
            subscription["cancel_at_period_end"] = True
        return subscription

    def resume_subscription(self, subscription_id):
        subscription = self._toggle_subscription(subscription_id, "enable")
        subscription["status"] = "active"
        subscription["cancel_at_period_end"] = False
        return subscription

    # Payments

    def create_payment_intent(
        self, *, amount, currency, customer_id=None, metadata=None, idempotency_key=None
    ):
        if not customer_id:
            raise ValidationError("Paystack payments require a customer", gateway=self.name)
        customer = self._fetch_customer(customer_id)
        reference = idempotency_key or generate_reference()
        data, _ = self._request(
            "POST",
            "/transaction/initialize",
            operation="create_payment_intent",
            json_body={
                "email": customer.get("email"),
                "amount": amount,
                "currency": currency.upper(),
                "reference": reference,
                "metadata": metadata or {},
            },
        )
        return {
            "id": data.get("reference") or reference,
            "object": "payment_intent",
            "status": "requires_action",
            "amount": amount,
            "currency": currency.lower(),
            "customer": customer_id,
            "next_action": {"redirect_to_url": {"url": data.get("authorization_url")}},
        }

    def refund(self, payment_id, *, amount=None, idempotency_key=None):
        data, _ = self._request(
            "POST",
            "/refund",
            operation="refund",
            retry=False,
            json_body={"transaction": payment_id, "amount": amount},
        )
        return normalize_refund(data or {})

    # Webhooks

    def verify_webhook_signature(self, payload, signature):
        if not self.webhook_secret:
            raise InvalidSignatureError(
                "Paystack secret key is not configured", gateway=self.name
            )
        if not signature:
            raise InvalidSignatureError(
                "Missing X-Paystack-Signature header", gateway=self.name
            )
        expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha512).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignatureError("Paystack signature mismatch", gateway=self.name)

        try:
            body = json.loads(payload)
        except ValueError as exc:
            raise InvalidSignatureError(
                "Webhook payload is not valid JSON", gateway=self.name
            ) from exc
        raw_type = body.get("event") if isinstance(body, dict) else None
        if not raw_type:
            raise ValidationError("Webhook payload missing event", gateway=self.name)
        data = body.get("data") or {}
        event_type = _EVENT_TYPES.get(raw_type, raw_type)
        if raw_type == "invoice.update":
            event_type = "invoice.paid" if data.get("paid") else "invoice.updated"
        normalizer = _NORMALIZERS.get(event_type)
        # Paystack does not assign event ids; the body digest is stable across redeliveries
        event_id = body.get("id") or f"paystack_{hashlib.sha256(payload).hexdigest()}"
        return GatewayEvent(
            id=str(event_id),
            type=event_type,
            data=normalizer(data) if normalizer else data,
            gateway=self.name,
            created=_to_unix(data.get("createdAt") or data.get("created_at")),
            raw=body,
        )

    # Pagination

    def list_subscriptions(self, *, starting_after=None, limit=100):
        page = self._list("/subscription", "list_subscriptions", starting_after, limit)
        return ListPage(
            items=[normalize_subscription(item) for item in page.items],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )

    def list_customers(self, *, starting_after=None, limit=100):
        page = self._list("/customer", "list_customers", starting_after, limit)
        return ListPage(
            items=[
                {
                    "id": item.get("customer_code"),
                    "email": item.get("email"),
                    "metadata": item.get("metadata") or {},
                }
                for item in page.items
            ],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )

    def list_invoices(self, *, starting_after=None, limit=100, customer=None):
        page = self._list(
            "/paymentrequest", "list_invoices", starting_after, limit, customer=customer
        )
        return ListPage(
            items=[normalize_invoice(item) for item in page.items],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )

    def list_charges(self, *, starting_after=None, limit=100, customer=None):
        page = self._list(
            "/transaction", "list_charges", starting_after, limit, customer=customer
        )
        return ListPage(
            items=[normalize_transaction(item) for item in page.items],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )
