"""Payment gateway clients and their configuration resolution.

    from app.services.gateways import build_gateway
    gateway = build_gateway(db, "stripe")
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import GatewayProvider, PaymentGatewayConfig
from app.services.gateways.base import GatewayEvent, ListPage, PaymentGateway
from app.services.gateways.errors import (
    BillingError,
    DeclinedError,
    GatewayError,
    InvalidSignatureError,
    TransientError,
    UnresolvableCustomerError,
    ValidationError,
)
from app.services.gateways.paystack import PaystackGateway
from app.services.gateways.stripe import StripeGateway

logger = logging.getLogger(__name__)

__all__ = [
    "BillingError",
    "DeclinedError",
    "GatewayError",
    "GatewayEvent",
    "InvalidSignatureError",
    "ListPage",
    "PaymentGateway",
    "PaystackGateway",
    "StripeGateway",
    "TransientError",
    "UnresolvableCustomerError",
    "ValidationError",
    "build_gateway",
    "resolve_provider",
]


def resolve_provider(provider: str | GatewayProvider | None) -> GatewayProvider:
    value = provider.value if isinstance(provider, GatewayProvider) else provider
    try:
        return GatewayProvider(value or settings.default_gateway)
    except ValueError as exc:
        raise ValidationError(f"Unknown payment gateway: {value}") from exc


def _stored_config(db: Session | None, provider: GatewayProvider) -> PaymentGatewayConfig | None:
    if db is None:
        return None
    return (
        db.query(PaymentGatewayConfig)
        .filter(PaymentGatewayConfig.provider_type == provider)
        .filter(PaymentGatewayConfig.is_active.is_(True))
        .first()
    )


def build_gateway(
    db: Session | None, provider: str | GatewayProvider | None = None
) -> PaymentGateway:
    """Resolve credentials and construct the client for ``provider``.

    An active PaymentGatewayConfig row wins over environment settings.

    Raises:
        ValidationError: Unknown provider or no secret key configured.
    """
    resolved = resolve_provider(provider)
    config = _stored_config(db, resolved)
    common = {
        "timeout": settings.gateway_timeout_seconds,
        "max_retries": settings.gateway_max_retries,
        "retry_backoff_seconds": settings.gateway_retry_backoff_seconds,
    }
    if resolved == GatewayProvider.stripe:
        secret_key = (config.secret_key if config else None) or settings.stripe_secret_key
        webhook_secret = (
            config.webhook_secret if config else None
        ) or settings.stripe_webhook_secret
        logger.debug("Building Stripe gateway (db config: %s)", bool(config))
        return StripeGateway(
            secret_key or "",
            webhook_secret=webhook_secret,
            api_base=settings.stripe_api_base,
            webhook_tolerance_seconds=settings.webhook_tolerance_seconds,
            **common,
        )
    secret_key = (config.secret_key if config else None) or settings.paystack_secret_key
    logger.debug("Building Paystack gateway (db config: %s)", bool(config))
    return PaystackGateway(secret_key or "", api_base=settings.paystack_api_base, **common)
