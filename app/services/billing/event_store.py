"""Webhook event store services."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.event_store import WebhookEvent, WebhookEventStatus
from app.services.common import apply_ordering, apply_pagination, get_or_404, validate_enum
from app.services.gateways.base import GatewayEvent
from app.services.response import ListResponseMixin

MAX_ERROR_LENGTH = 2000


class WebhookEvents(ListResponseMixin):
    @staticmethod
    def get(db: Session, event_row_id: str) -> WebhookEvent:
        return get_or_404(db, WebhookEvent, event_row_id, detail="Webhook event not found")

    @staticmethod
    def get_by_event_id(db: Session, event_id: str) -> WebhookEvent | None:
        return db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()

    @staticmethod
    def record_receipt(db: Session, event: GatewayEvent) -> WebhookEvent:
        """Upsert the raw event and move it to ``processing``. Commits."""
        row = WebhookEvents.get_by_event_id(db, event.id)
        if row is None:
            row = WebhookEvent(
                event_id=event.id,
                gateway=event.gateway,
                event_type=event.type,
                payload=event.raw,
                attempts=0,
                processed=False,
            )
            db.add(row)
        row.status = WebhookEventStatus.processing
        db.commit()
        db.refresh(row)
        return row

    @staticmethod
    def mark_processed(row: WebhookEvent, outcome: str) -> None:
        """Flag the event done; the caller commits with the handler's writes."""
        row.processed = True
        row.processed_at = datetime.now(timezone.utc)
        row.status = WebhookEventStatus.processed
        row.outcome = outcome
        row.last_error = None

    @staticmethod
    def mark_failed(db: Session, event_id: str, error: BaseException) -> WebhookEvent | None:
        """Record a handler failure in its own commit."""
        row = WebhookEvents.get_by_event_id(db, event_id)
        if row is None:
            return None
        row.attempts = (row.attempts or 0) + 1
        row.last_error = f"{type(error).__name__}: {error}"[:MAX_ERROR_LENGTH]
        row.status = WebhookEventStatus.failed
        db.commit()
        return row

    @staticmethod
    def list(
        db: Session,
        status: str | None,
        event_type: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(WebhookEvent)
        if status:
            query = query.filter(
                WebhookEvent.status == validate_enum(status, WebhookEventStatus, "status")
            )
        if event_type:
            query = query.filter(WebhookEvent.event_type == event_type)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "received_at": WebhookEvent.received_at,
                "event_type": WebhookEvent.event_type,
                "attempts": WebhookEvent.attempts,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def status_counts(db: Session) -> dict[str, int]:
        rows = (
            db.query(WebhookEvent.status, func.count(WebhookEvent.id))
            .group_by(WebhookEvent.status)
            .all()
        )
        counts = {status.value: 0 for status in WebhookEventStatus}
        for status, count in rows:
            counts[status.value] = count
        return counts
