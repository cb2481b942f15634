"""Invoice queries."""

from sqlalchemy.orm import Session, selectinload

from app.models.billing import Invoice, InvoiceStatus
from app.services.common import (
    apply_ordering,
    apply_pagination,
    get_or_404,
    parse_uuid,
    validate_enum,
)
from app.services.response import ListResponseMixin


class Invoices(ListResponseMixin):
    @staticmethod
    def get(db: Session, invoice_id: str) -> Invoice:
        return get_or_404(db, Invoice, invoice_id, detail="Invoice not found")

    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> Invoice | None:
        return db.query(Invoice).filter(Invoice.external_id == external_id).first()

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None,
        subscription_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(Invoice).options(selectinload(Invoice.lines))
        if customer_id:
            query = query.filter(Invoice.customer_id == customer_id)
        if subscription_id:
            query = query.filter(
                Invoice.subscription_id == parse_uuid(subscription_id, "subscription_id")
            )
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Invoice.created_at,
                "due_at": Invoice.due_at,
                "total": Invoice.total,
                "number": Invoice.number,
            },
        )
        return apply_pagination(query, limit, offset).all()
