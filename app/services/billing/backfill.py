"""Cursor-paginated backfill from the gateway.

Walks every listable resource and feeds each object through the same
reconciliation entry points the webhook handlers use, committing per object.
Safe to re-run: unchanged objects produce no writes.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterator

from sqlalchemy.orm import Session

from app.services.billing.reconciliation import ReconciliationEngine
from app.services.gateways.base import PaymentGateway
from app.services.gateways.errors import (
    TransientError,
    UnresolvableCustomerError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Customers first so later resources resolve through the linked external ids
RESOURCES = ("customers", "subscriptions", "invoices", "charges")


@dataclass
class SyncResult:
    subscriptions: int = 0
    customers: int = 0
    invoices: int = 0
    charges: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    aborted: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class BackfillSync:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        *,
        engine: ReconciliationEngine | None = None,
        page_size: int = 100,
    ):
        self.db = db
        self.gateway = gateway
        self.engine = engine or ReconciliationEngine(db, gateway)
        self.page_size = page_size

    def _appliers(self) -> dict[str, Callable[[dict[str, Any]], Any]]:
        return {
            "customers": self.engine.sync_customer,
            "subscriptions": self.engine.sync_subscription,
            "invoices": self.engine.upsert_invoice,
            "charges": self.engine.upsert_charge,
        }

    def iterate(self, resource: str) -> Iterator[dict[str, Any]]:
        """Yield every object of ``resource``, following the page cursor."""
        lister = getattr(self.gateway, f"list_{resource}")
        cursor: str | None = None
        while True:
            page = lister(starting_after=cursor, limit=self.page_size)
            yield from page.items
            if not page.has_more or not page.next_cursor:
                return
            cursor = page.next_cursor

    def run(self, resources: list[str] | tuple[str, ...] | None = None) -> SyncResult:
        """Backfill ``resources`` (all of them by default).

        A listing call that still fails after retries stops the run; the
        partial counts are returned with ``aborted`` set.

        Raises:
            ValidationError: An unknown resource name was requested.
        """
        selected = list(resources or RESOURCES)
        unknown = [name for name in selected if name not in RESOURCES]
        if unknown:
            raise ValidationError(f"Unknown sync resources: {', '.join(unknown)}")
        ordered = [name for name in RESOURCES if name in selected]

        result = SyncResult()
        appliers = self._appliers()
        for resource in ordered:
            logger.info("Backfilling %s from %s", resource, self.gateway.name)
            try:
                for obj in self.iterate(resource):
                    self._apply_one(resource, appliers[resource], obj, result)
            except TransientError as exc:
                self.db.rollback()
                logger.error("Backfill of %s aborted: %s", resource, exc)
                result.errors.append(f"{resource}: {exc}")
                result.aborted = True
                break
        logger.info("Backfill finished: %s", result.as_dict())
        return result

    def _apply_one(
        self,
        resource: str,
        apply: Callable[[dict[str, Any]], Any],
        obj: dict[str, Any],
        result: SyncResult,
    ) -> None:
        object_id = obj.get("id")
        try:
            applied = apply(obj)
            self.db.commit()
        except UnresolvableCustomerError as exc:
            self.db.rollback()
            logger.info("Skipping %s %s: %s", resource, object_id, exc)
            result.skipped += 1
            return
        except Exception as exc:
            self.db.rollback()
            logger.exception("Backfill of %s %s failed", resource, object_id)
            result.errors.append(f"{resource} {object_id}: {exc}")
            return
        if applied is False:
            result.skipped += 1
            return
        setattr(result, resource, getattr(result, resource) + 1)
