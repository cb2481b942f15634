import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services.billing.backfill import BackfillSync
from app.services.gateways import build_gateway

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.billing.run_backfill_sync")
def run_backfill_sync(provider: str | None = None, resources: list[str] | None = None):
    """Replay the gateway's full state through the reconciliation engine."""
    started = time.monotonic()
    status = "success"
    session = SessionLocal()
    gateway = None
    try:
        gateway = build_gateway(session, provider)
        result = BackfillSync(session, gateway).run(resources)
        if result.aborted or result.errors:
            status = "partial"
        return result.as_dict()
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("Backfill sync failed")
        raise
    finally:
        if gateway is not None:
            gateway.close()
        session.close()
        observe_job("run_backfill_sync", status, time.monotonic() - started)
