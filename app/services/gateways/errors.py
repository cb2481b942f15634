"""Error taxonomy shared by gateway clients and the reconciliation core."""

from __future__ import annotations


class BillingError(Exception):
    """Base for every billing-core error."""


class GatewayError(BillingError):
    def __init__(
        self,
        message: str,
        *,
        gateway: str | None = None,
        code: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.gateway = gateway
        self.code = code
        self.status_code = status_code


class ValidationError(GatewayError):
    """Bad input or unsupported operation. Never retried."""


class DeclinedError(ValidationError):
    """Card or policy decline. Shown to the end user, never retried."""

    default_user_message = "Your card was declined. Please update your payment method."

    def __init__(
        self,
        message: str | None = None,
        *,
        decline_code: str | None = None,
        **kwargs,
    ):
        super().__init__(message or self.default_user_message, **kwargs)
        self.decline_code = decline_code

    @property
    def user_message(self) -> str:
        return self.default_user_message


class TransientError(GatewayError):
    """Network failure, timeout, rate limit or 5xx. Safe to retry."""


class InvalidSignatureError(GatewayError):
    """Webhook signature missing, stale, mismatched, or no secret configured."""


class UnresolvableCustomerError(BillingError):
    def __init__(self, external_customer_id: str | None, internal_customer_id: str | None = None):
        super().__init__(
            "No billing customer for external id "
            f"{external_customer_id!r} (metadata customerId={internal_customer_id!r})"
        )
        self.external_customer_id = external_customer_id
        self.internal_customer_id = internal_customer_id
