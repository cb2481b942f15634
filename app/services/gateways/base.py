"""Gateway-agnostic payment client interface.

Concrete clients return gateway objects as plain dicts in the canonical
(Stripe-shaped) layout so the reconciliation engine never branches on the
processor: subscriptions carry ``items.data[0].price``, invoices carry
``lines.data`` with per-line ``period`` bounds, amounts are integer minor
units and timestamps are unix seconds.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from app.metrics import observe_gateway_call
from app.services.gateways.errors import TransientError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook notification."""

    id: str
    type: str
    data: dict[str, Any]
    gateway: str
    created: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ListPage:
    items: list[dict[str, Any]]
    has_more: bool
    next_cursor: str | None = None


def new_idempotency_key() -> str:
    return uuid.uuid4().hex


def call_with_retry(
    fn: Callable[[], T],
    *,
    gateway: str,
    operation: str,
    max_retries: int = 3,
    backoff_seconds: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` retrying only on TransientError with exponential backoff.

    Args:
        fn: Zero-argument callable performing one gateway request.
        gateway: Gateway name for logs and metrics.
        operation: Operation name for logs and metrics.
        max_retries: Total number of attempts.
        backoff_seconds: Delay before the second attempt; doubles each time.
        sleep: Injected for tests.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        TransientError: When every attempt failed transiently.
        GatewayError: Any non-transient error, immediately.
    """
    attempts = max(int(max_retries), 1)
    for attempt in range(attempts):
        started = time.perf_counter()
        try:
            result = fn()
        except TransientError as exc:
            observe_gateway_call(gateway, operation, "transient", time.perf_counter() - started)
            logger.warning(
                "%s %s attempt %d/%d failed: %s",
                gateway,
                operation,
                attempt + 1,
                attempts,
                exc,
            )
            if attempt < attempts - 1:
                sleep(backoff_seconds * (2**attempt))
                continue
            raise
        except ValidationError:
            observe_gateway_call(gateway, operation, "rejected", time.perf_counter() - started)
            raise
        observe_gateway_call(gateway, operation, "ok", time.perf_counter() - started)
        return result
    raise TransientError(f"{operation} was not attempted", gateway=gateway)


class PaymentGateway(ABC):
    """Uniform verb set over one payment processor.

    Optional capabilities default to raising ValidationError so callers get
    a clear, non-retryable error when a processor lacks a feature.
    """

    name: str = "gateway"
    _client: Any = None
    _owns_client: bool = False

    def close(self) -> None:
        """Release the HTTP connection pool unless it was injected."""
        if self._owns_client and self._client is not None:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _unsupported(self, operation: str):
        raise ValidationError(
            f"{operation} is not supported by {self.name}", gateway=self.name
        )

    # Customers

    @abstractmethod
    def create_customer(
        self,
        *,
        email: str | None,
        name: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def update_customer(self, customer_id: str, **fields: Any) -> dict[str, Any]: ...

    def delete_customer(self, customer_id: str) -> dict[str, Any]:
        return self._unsupported("delete_customer")

    # Subscriptions

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return self._unsupported("create_checkout_session")

    @abstractmethod
    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str] | None = None,
        trial_days: int | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]: ...

    @abstractmethod
    def cancel_subscription(
        self, subscription_id: str, *, immediately: bool = False
    ) -> dict[str, Any]: ...

    def resume_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._unsupported("resume_subscription")

    def update_subscription(
        self,
        subscription_id: str,
        *,
        item_id: str,
        new_price_id: str,
        proration_behavior: str = "create_prorations",
        payment_behavior: str = "error_if_incomplete",
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return self._unsupported("update_subscription")

    # Invoices (proration support)

    def retrieve_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._unsupported("retrieve_invoice")

    def create_invoice(
        self,
        *,
        customer_id: str,
        subscription_id: str | None = None,
        auto_advance: bool = False,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return self._unsupported("create_invoice")

    def finalize_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._unsupported("finalize_invoice")

    def pay_invoice(
        self, invoice_id: str, *, idempotency_key: str | None = None
    ) -> dict[str, Any]:
        return self._unsupported("pay_invoice")

    def delete_invoice(self, invoice_id: str) -> dict[str, Any]:
        return self._unsupported("delete_invoice")

    def preview_invoice(
        self,
        *,
        customer_id: str,
        subscription_id: str,
        item_id: str,
        new_price_id: str,
    ) -> dict[str, Any]:
        return self._unsupported("preview_invoice")

    # Payments

    @abstractmethod
    def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]: ...

    @abstractmethod
    def refund(
        self,
        payment_id: str,
        *,
        amount: int | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]: ...

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> dict[str, Any]:
        return self._unsupported("attach_payment_method")

    def detach_payment_method(self, payment_method_id: str) -> dict[str, Any]:
        return self._unsupported("detach_payment_method")

    def list_payment_methods(self, customer_id: str) -> list[dict[str, Any]]:
        return self._unsupported("list_payment_methods")

    def set_default_payment_method(
        self, customer_id: str, payment_method_id: str
    ) -> dict[str, Any]:
        return self._unsupported("set_default_payment_method")

    def create_coupon(
        self,
        *,
        percent_off: float | None = None,
        amount_off: int | None = None,
        currency: str | None = None,
        duration: str = "once",
        duration_in_months: int | None = None,
        name: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        return self._unsupported("create_coupon")

    def create_customer_portal_session(
        self, customer_id: str, *, return_url: str
    ) -> dict[str, Any]:
        return self._unsupported("create_customer_portal_session")

    # Webhooks

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> GatewayEvent:
        """Verify ``payload`` and return the typed event.

        Raises:
            InvalidSignatureError: Missing secret, missing or mismatched
                signature, stale timestamp, or undecodable payload.
        """

    # Pagination

    @abstractmethod
    def list_subscriptions(
        self, *, starting_after: str | None = None, limit: int = 100
    ) -> ListPage: ...

    @abstractmethod
    def list_customers(
        self, *, starting_after: str | None = None, limit: int = 100
    ) -> ListPage: ...

    @abstractmethod
    def list_invoices(
        self,
        *,
        starting_after: str | None = None,
        limit: int = 100,
        customer: str | None = None,
    ) -> ListPage: ...

    @abstractmethod
    def list_charges(
        self,
        *,
        starting_after: str | None = None,
        limit: int = 100,
        customer: str | None = None,
    ) -> ListPage: ...
