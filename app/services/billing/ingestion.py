"""Idempotent webhook ingestion.

Per event: ``new -> processing -> processed``, or on a handler error
``processing -> failed (attempts + 1)`` and back to ``processing`` when the
gateway redelivers. The ``processed`` flag gates side effects, so a redelivery
of a finished event returns immediately without touching business state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from app.metrics import observe_webhook
from app.services.billing.event_store import WebhookEvents
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.gateways.base import PaymentGateway
from app.services.gateways.errors import InvalidSignatureError, ValidationError

logger = logging.getLogger(__name__)

OUTCOME_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    event_type: str
    status: str


class WebhookIngestor:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        engine_factory: Callable[[Session, PaymentGateway], ReconciliationEngine] | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self._engine_factory = engine_factory or ReconciliationEngine

    def handle(self, body: bytes, signature: str | None) -> IngestResult:
        """Verify, record and apply one inbound notification.

        Raises:
            InvalidSignatureError: Bad signature or malformed envelope, before
                anything is persisted.
            Exception: Whatever the handler raised, after the failure is
                recorded on the event row.
        """
        try:
            event = self.gateway.verify_webhook_signature(body, signature)
        except ValidationError as exc:
            raise InvalidSignatureError(str(exc), gateway=self.gateway.name) from exc

        existing = WebhookEvents.get_by_event_id(self.db, event.id)
        if existing is not None and existing.processed:
            logger.info("Event %s (%s) already processed", event.id, event.type)
            observe_webhook(event.gateway, event.type, OUTCOME_DUPLICATE)
            return IngestResult(event.id, event.type, OUTCOME_DUPLICATE)

        row = WebhookEvents.record_receipt(self.db, event)
        logger.info(
            "Processing %s event %s (attempt %d)", event.type, event.id, row.attempts + 1
        )
        try:
            outcome = self._engine_factory(self.db, self.gateway).apply(event)
            WebhookEvents.mark_processed(row, outcome)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.exception("Handler for %s event %s failed", event.type, event.id)
            WebhookEvents.mark_failed(self.db, event.id, exc)
            observe_webhook(event.gateway, event.type, "failed")
            raise
        observe_webhook(event.gateway, event.type, outcome)
        return IngestResult(event.id, event.type, outcome)
