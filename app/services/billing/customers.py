"""Customer directory: maps gateway customer ids to local billing customers."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.models.billing import BillingCustomer, GatewayProvider
from app.services.common import get_or_404
from app.services.gateways.base import PaymentGateway
from app.services.gateways.errors import ValidationError

logger = logging.getLogger(__name__)


class CustomerDirectory(Protocol):
    def resolve_internal_customer_id(self, external_customer_id: str) -> str | None: ...

    def link_external_customer(self, internal_id: str, external_customer_id: str) -> None: ...


class DatabaseCustomerDirectory:
    def __init__(self, db: Session):
        self.db = db

    def resolve_internal_customer_id(self, external_customer_id: str | None) -> str | None:
        if not external_customer_id:
            return None
        customer = (
            self.db.query(BillingCustomer)
            .filter(BillingCustomer.external_customer_id == external_customer_id)
            .first()
        )
        return customer.id if customer else None

    def link_external_customer(self, internal_id: str, external_customer_id: str) -> None:
        """Point ``internal_id`` at ``external_customer_id``.

        Any other customer still holding the external id loses it first so the
        one-customer-per-external-id rule survives the flush.
        """
        customer = self.db.get(BillingCustomer, internal_id)
        if customer is None:
            return
        if customer.external_customer_id == external_customer_id:
            return
        stale = (
            self.db.query(BillingCustomer)
            .filter(BillingCustomer.external_customer_id == external_customer_id)
            .filter(BillingCustomer.id != internal_id)
            .all()
        )
        for holder in stale:
            logger.warning(
                "Moving external customer %s from %s to %s",
                external_customer_id,
                holder.id,
                internal_id,
            )
            holder.external_customer_id = None
        self.db.flush()
        if customer.external_customer_id:
            logger.info(
                "Customer %s external id changed %s -> %s",
                internal_id,
                customer.external_customer_id,
                external_customer_id,
            )
        customer.external_customer_id = external_customer_id
        self.db.flush()


class BillingCustomers:
    @staticmethod
    def get(db: Session, customer_id: str) -> BillingCustomer | None:
        return db.get(BillingCustomer, customer_id)

    @staticmethod
    def get_or_create(
        db: Session,
        *,
        user_id: str,
        email: str | None = None,
        name: str | None = None,
        customer_id: str | None = None,
    ) -> BillingCustomer:
        query = db.query(BillingCustomer)
        if customer_id:
            customer = query.filter(BillingCustomer.id == customer_id).first()
        else:
            customer = query.filter(BillingCustomer.user_id == user_id).first()
        if customer:
            return customer
        customer = BillingCustomer(user_id=user_id, email=email, name=name)
        if customer_id:
            customer.id = customer_id
        db.add(customer)
        db.commit()
        db.refresh(customer)
        return customer

    @staticmethod
    def ensure_gateway_customer(
        db: Session, customer: BillingCustomer, gateway: PaymentGateway
    ) -> str:
        """Return the external id, creating the gateway customer on first use."""
        if customer.external_customer_id:
            return customer.external_customer_id
        created = gateway.create_customer(
            email=customer.email,
            name=customer.name,
            metadata={"customerId": customer.id, "userId": customer.user_id},
            idempotency_key=f"customer-{customer.id}",
        )
        DatabaseCustomerDirectory(db).link_external_customer(customer.id, created["id"])
        customer.gateway = GatewayProvider(gateway.name)
        db.commit()
        db.refresh(customer)
        return customer.external_customer_id

    @staticmethod
    def require(db: Session, customer_id: str) -> BillingCustomer:
        return get_or_404(db, BillingCustomer, customer_id, detail="Customer not found")

    @staticmethod
    def _gateway_account(db: Session, customer_id: str) -> str:
        customer = BillingCustomers.require(db, customer_id)
        if not customer.external_customer_id:
            raise ValidationError(
                "Customer has no gateway account. Complete a checkout first"
            )
        return customer.external_customer_id

    # Payment methods live on the gateway; nothing is stored locally.

    @staticmethod
    def list_payment_methods(
        db: Session, gateway: PaymentGateway, customer_id: str
    ) -> list[dict[str, Any]]:
        external_id = BillingCustomers._gateway_account(db, customer_id)
        return gateway.list_payment_methods(external_id)

    @staticmethod
    def _owned_method(gateway: PaymentGateway, external_id: str, payment_method_id: str) -> dict:
        for method in gateway.list_payment_methods(external_id):
            if method.get("id") == payment_method_id:
                return method
        raise HTTPException(status_code=404, detail="Payment method not found")

    @staticmethod
    def attach_payment_method(
        db: Session,
        gateway: PaymentGateway,
        customer_id: str,
        payment_method_id: str,
        make_default: bool = False,
    ) -> dict[str, Any]:
        external_id = BillingCustomers._gateway_account(db, customer_id)
        method = gateway.attach_payment_method(payment_method_id, external_id)
        if make_default:
            gateway.set_default_payment_method(external_id, payment_method_id)
        logger.info("Attached payment method %s to customer %s", payment_method_id, customer_id)
        return method

    @staticmethod
    def detach_payment_method(
        db: Session, gateway: PaymentGateway, customer_id: str, payment_method_id: str
    ) -> None:
        external_id = BillingCustomers._gateway_account(db, customer_id)
        BillingCustomers._owned_method(gateway, external_id, payment_method_id)
        gateway.detach_payment_method(payment_method_id)
        logger.info("Detached payment method %s from customer %s", payment_method_id, customer_id)

    @staticmethod
    def set_default_payment_method(
        db: Session, gateway: PaymentGateway, customer_id: str, payment_method_id: str
    ) -> dict[str, Any]:
        external_id = BillingCustomers._gateway_account(db, customer_id)
        method = BillingCustomers._owned_method(gateway, external_id, payment_method_id)
        gateway.set_default_payment_method(external_id, payment_method_id)
        return method

    @staticmethod
    def create_portal_session(
        db: Session, gateway: PaymentGateway, customer_id: str, return_url: str
    ) -> dict[str, Any]:
        """Open a gateway-hosted billing portal for the customer."""
        external_id = BillingCustomers._gateway_account(db, customer_id)
        return gateway.create_customer_portal_session(external_id, return_url=return_url)
