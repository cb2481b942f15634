"""Payment queries and admin refunds."""

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.billing import Payment, PaymentStatus
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.common import (
    apply_ordering,
    apply_pagination,
    get_or_404,
    parse_uuid,
    validate_enum,
)
from app.services.gateways.base import PaymentGateway
from app.services.gateways.errors import ValidationError
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


class Payments(ListResponseMixin):
    @staticmethod
    def get(db: Session, payment_id: str) -> Payment:
        return get_or_404(db, Payment, payment_id, detail="Payment not found")

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None,
        invoice_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(Payment)
        if customer_id:
            query = query.filter(Payment.customer_id == customer_id)
        if invoice_id:
            query = query.filter(Payment.invoice_id == parse_uuid(invoice_id, "invoice_id"))
        if status:
            query = query.filter(
                Payment.status == validate_enum(status, PaymentStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Payment.created_at, "amount": Payment.amount},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def refund(
        db: Session,
        gateway: PaymentGateway,
        payment_id: str,
        amount: int | None = None,
        idempotency_key: str | None = None,
    ) -> Payment:
        """Refund all or part of a collected payment.

        The gateway refund runs first; the local row is then updated through
        the same charge upsert the ``charge.refunded`` webhook uses, so the
        webhook that follows is a no-op.
        """
        payment = get_or_404(db, Payment, payment_id, detail="Payment not found")
        already_refunded = payment.refunded_amount or 0
        remaining = payment.amount - already_refunded
        if payment.status not in (PaymentStatus.succeeded, PaymentStatus.refunded) or remaining <= 0:
            raise ValidationError("Only collected payments with a balance can be refunded")
        if payment.gateway.value != gateway.name:
            raise ValidationError(
                f"Payment was collected through {payment.gateway.value}, not {gateway.name}"
            )
        if amount is not None and amount > remaining:
            raise ValidationError(
                f"Refund amount {amount} exceeds the refundable balance {remaining}"
            )

        target = payment.external_charge_id or payment.external_id
        key = idempotency_key or f"refund-{payment.id}-{already_refunded}-{amount or remaining}"
        refund = gateway.refund(target, amount=amount, idempotency_key=key)
        refunded_now = int(refund.get("amount") or amount or remaining)
        logger.info(
            "Refunded %s of payment %s (%s) on %s",
            refunded_now,
            payment.id,
            target,
            gateway.name,
        )

        ReconciliationEngine(db, gateway).upsert_charge(
            {
                "id": payment.external_charge_id or refund.get("charge") or payment.external_id,
                "object": "charge",
                "payment_intent": payment.external_id,
                "amount": payment.amount,
                "currency": payment.currency,
                "amount_refunded": already_refunded + refunded_now,
            }
        )
        db.commit()
        db.refresh(payment)
        return payment

    @staticmethod
    def total_collected(db: Session, customer_id: str) -> int:
        """Succeeded amount minus refunds, in minor units."""
        collected = (
            db.query(func.coalesce(func.sum(Payment.amount), 0))
            .filter(Payment.customer_id == customer_id)
            .filter(Payment.status.in_((PaymentStatus.succeeded, PaymentStatus.refunded)))
            .scalar()
        )
        refunded = (
            db.query(func.coalesce(func.sum(Payment.refunded_amount), 0))
            .filter(Payment.customer_id == customer_id)
            .scalar()
        )
        return int(collected or 0) - int(refunded or 0)
