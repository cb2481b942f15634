"""Plan catalog lookups used to map gateway prices back to license types."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.billing import BillingCycle
from app.models.license import LicenseType
from app.services.gateways.errors import ValidationError

logger = logging.getLogger(__name__)


def billing_cycle_from_interval(interval: str | None) -> BillingCycle:
    return BillingCycle.yearly if interval == "year" else BillingCycle.monthly


def primary_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def primary_price(subscription: dict[str, Any]) -> dict[str, Any]:
    return primary_item(subscription).get("price") or subscription.get("plan") or {}


class PlanCatalog:
    def __init__(self, db: Session):
        self.db = db

    def get(self, plan_id: str | None) -> LicenseType | None:
        if not plan_id:
            return None
        return self.db.get(LicenseType, plan_id)

    def require(self, plan_id: str) -> LicenseType:
        plan = self.get(plan_id)
        if plan is None or not plan.is_active:
            raise ValidationError(f"Plan {plan_id} not found")
        return plan

    def resolve_for_subscription(self, subscription: dict[str, Any]) -> LicenseType | None:
        """Derive the plan for a gateway subscription.

        Order: price metadata, known gateway price id, subscription
        metadata, then amount and interval matched against the catalog.
        Subscription metadata comes after the price because it still names
        the original plan after a plan change.
        """
        price = primary_price(subscription)
        plan = self.get((price.get("metadata") or {}).get("licenseTypeId"))
        if plan is not None:
            return plan

        price_id = price.get("id")
        if price_id:
            plan = (
                self.db.query(LicenseType)
                .filter(
                    (LicenseType.external_price_monthly_id == price_id)
                    | (LicenseType.external_price_yearly_id == price_id)
                )
                .first()
            )
            if plan is not None:
                return plan

        plan = self.get((subscription.get("metadata") or {}).get("licenseTypeId"))
        if plan is not None:
            return plan

        amount = price.get("unit_amount")
        if amount is None:
            return None
        cycle = billing_cycle_from_interval((price.get("recurring") or {}).get("interval"))
        column = (
            LicenseType.price_yearly if cycle == BillingCycle.yearly else LicenseType.price_monthly
        )
        plan = (
            self.db.query(LicenseType)
            .filter(column == int(amount))
            .filter(LicenseType.is_active.is_(True))
            .order_by(LicenseType.id.asc())
            .first()
        )
        if plan is None:
            logger.warning(
                "No plan matches price %s (%s %s)", price_id, amount, cycle.value
            )
        return plan

    @staticmethod
    def price_id_for(plan: LicenseType, cycle: BillingCycle) -> str:
        price_id = (
            plan.external_price_yearly_id
            if cycle == BillingCycle.yearly
            else plan.external_price_monthly_id
        )
        if not price_id:
            raise ValidationError(
                f"Plan {plan.id} has no gateway price for {cycle.value} billing"
            )
        return price_id

    @staticmethod
    def amount_for(plan: LicenseType, cycle: BillingCycle) -> int:
        return plan.price_yearly if cycle == BillingCycle.yearly else plan.price_monthly
