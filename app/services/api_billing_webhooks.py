"""Billing API webhook orchestration."""

from __future__ import annotations

import logging

from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.services.billing.ingestion import WebhookIngestor
from app.services.gateways.base import PaymentGateway
from app.services.gateways.errors import InvalidSignatureError

logger = logging.getLogger(__name__)


def process_webhook(
    *, db: Session, gateway: PaymentGateway, body: bytes, signature: str | None
) -> JSONResponse:
    """Ingest one notification and answer the gateway.

    400 tells the gateway not to bother redelivering; 500 asks it to.
    """
    try:
        result = WebhookIngestor(db, gateway).handle(body, signature)
    except InvalidSignatureError as exc:
        logger.warning("Invalid %s webhook signature: %s", gateway.name, exc)
        return JSONResponse({"status": "invalid signature"}, status_code=400)
    except Exception:
        logger.error("%s webhook processing failed", gateway.name)
        return JSONResponse({"status": "failed"}, status_code=500)
    return JSONResponse(
        {"status": result.status, "event_id": result.event_id}, status_code=200
    )
