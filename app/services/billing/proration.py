"""Proration preview and application for mid-cycle plan changes."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.models.billing import BillingCycle, Invoice, Subscription
from app.models.license import LicenseType
from app.services.billing.plans import PlanCatalog, primary_item
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.common import from_timestamp
from app.services.gateways.base import PaymentGateway, new_idempotency_key
from app.services.gateways.errors import DeclinedError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProrationLine:
    description: str | None
    amount: int
    proration: bool
    period_start: datetime | None = None
    period_end: datetime | None = None


@dataclass(frozen=True)
class ProrationSummary:
    """Immediate effect of a plan change, in minor units."""

    amount_due: int
    credit: int
    net_amount_due: int
    currency: str
    lines: list[ProrationLine] = field(default_factory=list)


@dataclass(frozen=True)
class ProrationPreview:
    subscription_id: str
    current_plan_id: str | None
    new_plan_id: str
    billing_cycle: BillingCycle
    summary: ProrationSummary
    remaining_days: int
    is_upgrade: bool
    message: str


@dataclass
class PlanChangeResult:
    subscription: Subscription
    invoice: Invoice | None
    amount_charged: int
    invoice_deleted: bool = False


def summarize_proration(
    lines: list[dict[str, Any]],
    current_period_end: datetime | int | None,
    currency: str = "usd",
) -> ProrationSummary:
    """Reduce preview invoice lines to what is owed now.

    Lines whose period starts at or after ``current_period_end`` belong to
    the next renewal and are left out. Lines without a period are kept.
    """
    cutoff = from_timestamp(current_period_end)
    kept: list[ProrationLine] = []
    for line in lines:
        period = line.get("period") or {}
        start = from_timestamp(period.get("start"))
        if cutoff is not None and start is not None and start >= cutoff:
            continue
        kept.append(
            ProrationLine(
                description=line.get("description"),
                amount=int(line.get("amount") or 0),
                proration=bool(line.get("proration")),
                period_start=start,
                period_end=from_timestamp(period.get("end")),
            )
        )
    amount_due = sum(line.amount for line in kept if line.amount > 0)
    credit = sum(-line.amount for line in kept if line.amount < 0)
    return ProrationSummary(
        amount_due=amount_due,
        credit=credit,
        net_amount_due=max(0, amount_due - credit),
        currency=currency.lower(),
        lines=kept,
    )


def _monthly_equivalent(amount: int, cycle: BillingCycle) -> float:
    return amount / 12 if cycle == BillingCycle.yearly else float(amount)


def _format_amount(amount: int, currency: str) -> str:
    return f"{amount / 100:.2f} {currency.upper()}"


class ProrationCalculator:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        engine: ReconciliationEngine | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.engine = engine or ReconciliationEngine(db, gateway)

    def _remote(self, subscription: Subscription) -> tuple[dict[str, Any], dict[str, Any]]:
        remote = self.gateway.retrieve_subscription(subscription.external_id)
        item = primary_item(remote)
        if not item.get("id"):
            raise ValidationError(
                f"Subscription {subscription.external_id} has no billable item",
                gateway=self.gateway.name,
            )
        return remote, item

    def preview(
        self, subscription: Subscription, plan: LicenseType, cycle: BillingCycle
    ) -> ProrationPreview:
        remote, item = self._remote(subscription)
        period_end = item.get("current_period_end") or remote.get("current_period_end")
        upcoming = self.gateway.preview_invoice(
            customer_id=self._customer_ref(remote),
            subscription_id=subscription.external_id,
            item_id=item["id"],
            new_price_id=PlanCatalog.price_id_for(plan, cycle),
        )
        currency = str(upcoming.get("currency") or subscription.currency or "usd")
        summary = summarize_proration(
            (upcoming.get("lines") or {}).get("data") or [], period_end, currency
        )

        remaining_days = 0
        end = from_timestamp(period_end)
        if end is not None:
            seconds = (end - datetime.now(timezone.utc)).total_seconds()
            remaining_days = max(0, math.ceil(seconds / 86400))

        new_amount = PlanCatalog.amount_for(plan, cycle)
        is_upgrade = _monthly_equivalent(new_amount, cycle) > _monthly_equivalent(
            subscription.unit_amount or 0, subscription.billing_cycle
        )
        if summary.net_amount_due > 0:
            message = (
                f"You will be charged {_format_amount(summary.net_amount_due, currency)} "
                f"now for the remaining {remaining_days} days."
            )
        elif summary.credit > summary.amount_due:
            message = (
                f"A credit of {_format_amount(summary.credit - summary.amount_due, currency)} "
                "will be applied to your next invoice."
            )
        else:
            message = "No charge is due now."
        return ProrationPreview(
            subscription_id=str(subscription.id),
            current_plan_id=subscription.license_type_id,
            new_plan_id=plan.id,
            billing_cycle=cycle,
            summary=summary,
            remaining_days=remaining_days,
            is_upgrade=is_upgrade,
            message=message,
        )

    @staticmethod
    def _customer_ref(remote: dict[str, Any]) -> str:
        customer = remote.get("customer")
        if isinstance(customer, dict):
            return customer["id"]
        return customer

    def apply(
        self,
        subscription: Subscription,
        plan: LicenseType,
        cycle: BillingCycle,
        *,
        idempotency_key: str | None = None,
    ) -> PlanChangeResult:
        """Swap the price at the gateway and settle the proration now.

        Commits. A declined card is raised after the updated subscription
        and the unpaid invoice have been recorded locally.
        """
        key = idempotency_key or new_idempotency_key()
        _, item = self._remote(subscription)
        updated = self.gateway.update_subscription(
            subscription.external_id,
            item_id=item["id"],
            new_price_id=PlanCatalog.price_id_for(plan, cycle),
            proration_behavior="create_prorations",
            payment_behavior="error_if_incomplete",
            metadata={"licenseTypeId": plan.id},
            idempotency_key=f"{key}-update",
        )
        local = self.engine.sync_subscription(updated) or subscription

        invoice_obj = self._create_invoice(updated, key)
        if invoice_obj is None:
            self.db.commit()
            return PlanChangeResult(subscription=local, invoice=None, amount_charged=0)

        amount_due = int(invoice_obj.get("amount_due") or 0)
        if amount_due == 0:
            if invoice_obj.get("status") == "draft":
                self.gateway.delete_invoice(invoice_obj["id"])
                logger.info(
                    "Deleted zero-amount proration invoice %s for %s",
                    invoice_obj["id"],
                    subscription.external_id,
                )
                self.db.commit()
                return PlanChangeResult(
                    subscription=local, invoice=None, amount_charged=0, invoice_deleted=True
                )
            invoice = self.engine.upsert_invoice(invoice_obj)
            self.db.commit()
            return PlanChangeResult(subscription=local, invoice=invoice, amount_charged=0)

        if invoice_obj.get("status") == "draft":
            invoice_obj = self.gateway.finalize_invoice(invoice_obj["id"])
        if invoice_obj.get("status") == "open":
            try:
                invoice_obj = self.gateway.pay_invoice(
                    invoice_obj["id"], idempotency_key=f"{key}-pay"
                )
            except DeclinedError:
                self.engine.upsert_invoice(invoice_obj)
                self.db.commit()
                logger.warning(
                    "Proration payment for %s declined", subscription.external_id
                )
                raise
        invoice = self.engine.upsert_invoice(invoice_obj)
        self.db.commit()
        return PlanChangeResult(
            subscription=local,
            invoice=invoice,
            amount_charged=int(invoice_obj.get("amount_paid") or 0),
        )

    def _create_invoice(self, updated: dict[str, Any], key: str) -> dict[str, Any] | None:
        try:
            return self.gateway.create_invoice(
                customer_id=self._customer_ref(updated),
                subscription_id=updated["id"],
                auto_advance=False,
                idempotency_key=f"{key}-invoice",
            )
        except DeclinedError:
            raise
        except ValidationError as exc:
            # Nothing pending to invoice; the gateway may have invoiced already
            logger.info("No proration invoice created for %s: %s", updated["id"], exc)
        latest = updated.get("latest_invoice")
        if not latest:
            return None
        if isinstance(latest, dict):
            return latest
        return self.gateway.retrieve_invoice(latest)
