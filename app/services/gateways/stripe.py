"""Stripe REST client."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any
from urllib.parse import urlencode

import httpx

from app.services.gateways.base import (
    GatewayEvent,
    ListPage,
    PaymentGateway,
    call_with_retry,
    new_idempotency_key,
)
from app.services.gateways.errors import (
    DeclinedError,
    InvalidSignatureError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com"


def _flatten_params(params: dict[str, Any], prefix: str = "") -> list[tuple[str, str]]:
    """Encode nested params the way Stripe expects (``items[0][price]=...``)."""
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        if value is None:
            continue
        full_key = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, dict):
            pairs.extend(_flatten_params(value, full_key))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, dict):
                    pairs.extend(_flatten_params(item, f"{full_key}[{index}]"))
                else:
                    pairs.append((f"{full_key}[{index}]", _scalar(item)))
        else:
            pairs.append((full_key, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                timestamp = None
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(
        self,
        secret_key: str,
        *,
        webhook_secret: str | None = None,
        api_base: str = STRIPE_API_BASE,
        timeout: float = 30,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.5,
        webhook_tolerance_seconds: int = 300,
        client: httpx.Client | None = None,
        sleep=time.sleep,
    ):
        if not secret_key:
            raise ValidationError("Stripe secret key is not configured", gateway=self.name)
        self.webhook_secret = webhook_secret
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=api_base, timeout=timeout)
        self._client.headers["Authorization"] = f"Bearer {secret_key}"

    # Transport

    def _classify(self, resp: httpx.Response) -> Exception:
        try:
            error = resp.json().get("error") or {}
        except ValueError:
            error = {}
        status_code = resp.status_code
        message = error.get("message") or f"Stripe returned HTTP {status_code}"
        code = error.get("code")
        if error.get("type") == "card_error" or status_code == 402:
            return DeclinedError(
                decline_code=error.get("decline_code") or code,
                gateway=self.name,
                code=code,
                status_code=status_code,
            )
        if status_code in (409, 429) or status_code >= 500:
            return TransientError(
                message, gateway=self.name, code=code, status_code=status_code
            )
        return ValidationError(message, gateway=self.name, code=code, status_code=status_code)

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        operation: str,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers: dict[str, str] = {}
        content: str | None = None
        query: list[tuple[str, str]] | None = None
        encoded = _flatten_params(params or {})
        if method == "POST":
            # One key per logical call; retries below reuse it
            headers["Idempotency-Key"] = idempotency_key or new_idempotency_key()
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            content = urlencode(encoded)
        else:
            query = encoded or None

        def _send() -> dict[str, Any]:
            try:
                resp = self._client.request(
                    method, path, params=query, content=content, headers=headers
                )
            except httpx.TransportError as exc:
                raise TransientError(
                    f"Stripe {operation} transport error: {exc}", gateway=self.name
                ) from exc
            if resp.status_code >= 400:
                raise self._classify(resp)
            return resp.json()

        return call_with_retry(
            _send,
            gateway=self.name,
            operation=operation,
            max_retries=self.max_retries,
            backoff_seconds=self.retry_backoff_seconds,
            sleep=self._sleep,
        )

    def _list(self, path: str, operation: str, params: dict[str, Any]) -> ListPage:
        body = self._request("GET", path, params, operation=operation)
        items = body.get("data") or []
        return ListPage(
            items=items,
            has_more=bool(body.get("has_more")),
            next_cursor=items[-1]["id"] if items else None,
        )

    # Customers

    def create_customer(self, *, email, name=None, metadata=None, idempotency_key=None):
        return self._request(
            "POST",
            "/v1/customers",
            {"email": email, "name": name, "metadata": metadata or {}},
            operation="create_customer",
            idempotency_key=idempotency_key,
        )

    def update_customer(self, customer_id, **fields):
        return self._request(
            "POST", f"/v1/customers/{customer_id}", fields, operation="update_customer"
        )

    def delete_customer(self, customer_id):
        return self._request(
            "DELETE", f"/v1/customers/{customer_id}", operation="delete_customer"
        )

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
        return self._request(
            "POST",
            "/v1/checkout/sessions",
            {
                "mode": "subscription",
                "customer": customer_id,
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata or {},
                "subscription_data": {"metadata": metadata or {}},
            },
            operation="create_checkout_session",
            idempotency_key=idempotency_key,
        )

    def create_subscription(
        self, *, customer_id, price_id, metadata=None, trial_days=None, idempotency_key=None
    ):
        return self._request(
            "POST",
            "/v1/subscriptions",
            {
                "customer": customer_id,
                "items": [{"price": price_id}],
                "metadata": metadata or {},
                "trial_period_days": trial_days,
            },
            operation="create_subscription",
            idempotency_key=idempotency_key,
        )

    def retrieve_subscription(self, subscription_id):
        return self._request(
            "GET", f"/v1/subscriptions/{subscription_id}", operation="retrieve_subscription"
        )

    def cancel_subscription(self, subscription_id, *, immediately=False):
        if immediately:
            return self._request(
                "DELETE",
                f"/v1/subscriptions/{subscription_id}",
                operation="cancel_subscription",
            )
        return self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            {"cancel_at_period_end": True},
            operation="cancel_subscription",
        )

    def resume_subscription(self, subscription_id):
        return self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            {"cancel_at_period_end": False},
            operation="resume_subscription",
        )

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
        return self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            {
                "items": [{"id": item_id, "price": new_price_id}],
                "proration_behavior": proration_behavior,
                "payment_behavior": payment_behavior,
                "metadata": metadata,
            },
            operation="update_subscription",
            idempotency_key=idempotency_key,
        )

    # Invoices

    def retrieve_invoice(self, invoice_id):
        return self._request("GET", f"/v1/invoices/{invoice_id}", operation="retrieve_invoice")

    def create_invoice(
        self, *, customer_id, subscription_id=None, auto_advance=False, idempotency_key=None
    ):
        return self._request(
            "POST",
            "/v1/invoices",
            {
                "customer": customer_id,
                "subscription": subscription_id,
                "auto_advance": auto_advance,
            },
            operation="create_invoice",
            idempotency_key=idempotency_key,
        )

    def finalize_invoice(self, invoice_id):
        return self._request(
            "POST", f"/v1/invoices/{invoice_id}/finalize", operation="finalize_invoice"
        )

    def pay_invoice(self, invoice_id, *, idempotency_key=None):
        return self._request(
            "POST",
            f"/v1/invoices/{invoice_id}/pay",
            operation="pay_invoice",
            idempotency_key=idempotency_key,
        )

    def delete_invoice(self, invoice_id):
        return self._request("DELETE", f"/v1/invoices/{invoice_id}", operation="delete_invoice")

    def preview_invoice(self, *, customer_id, subscription_id, item_id, new_price_id):
        return self._request(
            "POST",
            "/v1/invoices/create_preview",
            {
                "customer": customer_id,
                "subscription": subscription_id,
                "subscription_details": {
                    "items": [{"id": item_id, "price": new_price_id}],
                    "proration_behavior": "create_prorations",
                },
            },
            operation="preview_invoice",
        )

    # Payments

    def create_payment_intent(
        self, *, amount, currency, customer_id=None, metadata=None, idempotency_key=None
    ):
        return self._request(
            "POST",
            "/v1/payment_intents",
            {
                "amount": amount,
                "currency": currency,
                "customer": customer_id,
                "metadata": metadata or {},
                "automatic_payment_methods": {"enabled": True},
            },
            operation="create_payment_intent",
            idempotency_key=idempotency_key,
        )

    def refund(self, payment_id, *, amount=None, idempotency_key=None):
        target = "charge" if payment_id.startswith("ch_") else "payment_intent"
        return self._request(
            "POST",
            "/v1/refunds",
            {target: payment_id, "amount": amount},
            operation="refund",
            idempotency_key=idempotency_key,
        )

    def attach_payment_method(self, payment_method_id, customer_id):
        return self._request(
            "POST",
            f"/v1/payment_methods/{payment_method_id}/attach",
            {"customer": customer_id},
            operation="attach_payment_method",
        )

    def detach_payment_method(self, payment_method_id):
        return self._request(
            "POST",
            f"/v1/payment_methods/{payment_method_id}/detach",
            operation="detach_payment_method",
        )

    def list_payment_methods(self, customer_id):
        body = self._request(
            "GET",
            "/v1/payment_methods",
            {"customer": customer_id, "type": "card"},
            operation="list_payment_methods",
        )
        return body.get("data") or []

    def set_default_payment_method(self, customer_id, payment_method_id):
        return self.update_customer(
            customer_id, invoice_settings={"default_payment_method": payment_method_id}
        )

    def create_coupon(
        self,
        *,
        percent_off=None,
        amount_off=None,
        currency=None,
        duration="once",
        duration_in_months=None,
        name=None,
        idempotency_key=None,
    ):
        if (percent_off is None) == (amount_off is None):
            raise ValidationError(
                "Exactly one of percent_off or amount_off is required", gateway=self.name
            )
        if amount_off is not None and not currency:
            raise ValidationError("currency is required with amount_off", gateway=self.name)
        return self._request(
            "POST",
            "/v1/coupons",
            {
                "percent_off": percent_off,
                "amount_off": amount_off,
                "currency": currency,
                "duration": duration,
                "duration_in_months": duration_in_months,
                "name": name,
            },
            operation="create_coupon",
            idempotency_key=idempotency_key,
        )

    def create_customer_portal_session(self, customer_id, *, return_url):
        return self._request(
            "POST",
            "/v1/billing_portal/sessions",
            {"customer": customer_id, "return_url": return_url},
            operation="create_customer_portal_session",
        )

    # Webhooks

    def verify_webhook_signature(self, payload, signature):
        if not self.webhook_secret:
            raise InvalidSignatureError(
                "Stripe webhook secret is not configured", gateway=self.name
            )
        if not signature:
            raise InvalidSignatureError("Missing Stripe-Signature header", gateway=self.name)
        timestamp, signatures = parse_signature_header(signature)
        if timestamp is None or not signatures:
            raise InvalidSignatureError(
                "Malformed Stripe-Signature header", gateway=self.name
            )

        signed_payload = f"{timestamp}.".encode() + payload
        expected = hmac.new(
            self.webhook_secret.encode(), signed_payload, hashlib.sha256
        ).hexdigest()
        if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
            raise InvalidSignatureError("Stripe signature mismatch", gateway=self.name)
        if (
            self.webhook_tolerance_seconds
            and abs(time.time() - timestamp) > self.webhook_tolerance_seconds
        ):
            raise InvalidSignatureError(
                "Stripe signature timestamp outside tolerance", gateway=self.name
            )

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise InvalidSignatureError(
                "Webhook payload is not valid JSON", gateway=self.name
            ) from exc
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise ValidationError("Webhook payload missing id or type", gateway=self.name)
        return GatewayEvent(
            id=event["id"],
            type=event["type"],
            data=(event.get("data") or {}).get("object") or {},
            gateway=self.name,
            created=event.get("created"),
            raw=event,
        )

    # Pagination

    def list_subscriptions(self, *, starting_after=None, limit=100):
        return self._list(
            "/v1/subscriptions",
            "list_subscriptions",
            {"status": "all", "limit": limit, "starting_after": starting_after},
        )

    def list_customers(self, *, starting_after=None, limit=100):
        return self._list(
            "/v1/customers",
            "list_customers",
            {"limit": limit, "starting_after": starting_after},
        )

    def list_invoices(self, *, starting_after=None, limit=100, customer=None):
        return self._list(
            "/v1/invoices",
            "list_invoices",
            {"limit": limit, "starting_after": starting_after, "customer": customer},
        )

    def list_charges(self, *, starting_after=None, limit=100, customer=None):
        return self._list(
            "/v1/charges",
            "list_charges",
            {"limit": limit, "starting_after": starting_after, "customer": customer},
        )
