from collections.abc import Iterator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.db import get_db
from app.models.billing import GatewayProvider
from app.services.gateways import PaymentGateway, build_gateway


async def get_raw_body(request: Request) -> bytes:
    """Raw request bytes, read on the event loop so sync handlers can verify signatures."""
    return await request.body()


def _gateway_scope(db: Session, provider: GatewayProvider | None) -> Iterator[PaymentGateway]:
    gateway = build_gateway(db, provider)
    try:
        yield gateway
    finally:
        gateway.close()


def get_gateway(db: Session = Depends(get_db)) -> Iterator[PaymentGateway]:
    """Client for the configured default gateway, closed after the request."""
    yield from _gateway_scope(db, None)


def get_stripe_gateway(db: Session = Depends(get_db)) -> Iterator[PaymentGateway]:
    yield from _gateway_scope(db, GatewayProvider.stripe)


def get_paystack_gateway(db: Session = Depends(get_db)) -> Iterator[PaymentGateway]:
    yield from _gateway_scope(db, GatewayProvider.paystack)


__all__ = [
    "get_db",
    "get_gateway",
    "get_paystack_gateway",
    "get_raw_body",
    "get_stripe_gateway",
]
