"""Subscription queries and customer-initiated lifecycle changes."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.models.billing import (
    ACTIVE_LIKE_STATUSES,
    BillingCycle,
    Subscription,
    SubscriptionStatus,
)
from app.models.license import LicenseType
from app.services.billing.customers import BillingCustomers
from app.services.billing.plans import PlanCatalog
from app.services.billing.proration import (
    PlanChangeResult,
    ProrationCalculator,
    ProrationPreview,
)
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.common import (
    apply_ordering,
    apply_pagination,
    get_or_404,
    validate_enum,
)
from app.services.gateways.base import PaymentGateway, new_idempotency_key
from app.services.gateways.errors import ValidationError
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


class Subscriptions(ListResponseMixin):
    @staticmethod
    def get(db: Session, subscription_id: str) -> Subscription:
        return get_or_404(db, Subscription, subscription_id, detail="Subscription not found")

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(Subscription)
        if customer_id:
            query = query.filter(Subscription.customer_id == customer_id)
        if status:
            query = query.filter(
                Subscription.status == validate_enum(status, SubscriptionStatus, "status")
            )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Subscription.created_at,
                "current_period_end": Subscription.current_period_end,
                "status": Subscription.status,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def active_for_customer(db: Session, customer_id: str) -> list[Subscription]:
        return (
            db.query(Subscription)
            .filter(Subscription.customer_id == customer_id)
            .filter(Subscription.status.in_(ACTIVE_LIKE_STATUSES))
            .order_by(Subscription.created_at.desc())
            .all()
        )

    @staticmethod
    def _validate_change(
        db: Session,
        subscription: Subscription,
        plan_id: str,
        billing_cycle: BillingCycle | None,
    ) -> tuple[LicenseType, BillingCycle]:
        if subscription.status not in ACTIVE_LIKE_STATUSES:
            raise ValidationError("Only active or trialing subscriptions can change plans")
        plan = PlanCatalog(db).require(plan_id)
        cycle = billing_cycle or subscription.billing_cycle
        if plan.id == subscription.license_type_id and cycle == subscription.billing_cycle:
            raise ValidationError("Subscription is already on this plan")
        return plan, cycle

    @staticmethod
    def preview_change(
        db: Session,
        gateway: PaymentGateway,
        subscription_id: str,
        plan_id: str,
        billing_cycle: BillingCycle | None = None,
    ) -> ProrationPreview:
        subscription = Subscriptions.get(db, subscription_id)
        plan, cycle = Subscriptions._validate_change(db, subscription, plan_id, billing_cycle)
        return ProrationCalculator(db, gateway).preview(subscription, plan, cycle)

    @staticmethod
    def change_plan(
        db: Session,
        gateway: PaymentGateway,
        subscription_id: str,
        plan_id: str,
        billing_cycle: BillingCycle | None = None,
        idempotency_key: str | None = None,
    ) -> PlanChangeResult:
        subscription = Subscriptions.get(db, subscription_id)
        plan, cycle = Subscriptions._validate_change(db, subscription, plan_id, billing_cycle)
        logger.info(
            "Changing subscription %s from %s to %s (%s)",
            subscription.external_id,
            subscription.license_type_id,
            plan.id,
            cycle.value,
        )
        return ProrationCalculator(db, gateway).apply(
            subscription, plan, cycle, idempotency_key=idempotency_key
        )

    @staticmethod
    def cancel(
        db: Session,
        gateway: PaymentGateway,
        subscription_id: str,
        immediately: bool = False,
    ) -> Subscription:
        subscription = Subscriptions.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled:
            raise ValidationError("Subscription is already canceled")
        remote = gateway.cancel_subscription(subscription.external_id, immediately=immediately)
        ReconciliationEngine(db, gateway).sync_subscription(remote)
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def resume(db: Session, gateway: PaymentGateway, subscription_id: str) -> Subscription:
        subscription = Subscriptions.get(db, subscription_id)
        if subscription.status == SubscriptionStatus.canceled:
            raise ValidationError("Canceled subscriptions cannot be resumed")
        if not subscription.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled to cancel")
        remote = gateway.resume_subscription(subscription.external_id)
        ReconciliationEngine(db, gateway).sync_subscription(remote)
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def start_checkout(
        db: Session,
        gateway: PaymentGateway,
        customer_id: str,
        plan_id: str,
        billing_cycle: BillingCycle,
        success_url: str,
        cancel_url: str,
    ) -> dict:
        """Open a hosted checkout for a new subscription.

        The session and the resulting subscription carry ``customerId`` and
        ``licenseTypeId`` metadata so the completion webhook can be tied back
        to the local customer and plan.
        """
        customer = BillingCustomers.get(db, customer_id)
        if customer is None:
            raise ValidationError(f"Customer {customer_id} not found")
        plan = PlanCatalog(db).require(plan_id)
        existing = Subscriptions.active_for_customer(db, customer.id)
        if any(sub.license_type_id == plan.id for sub in existing):
            raise ValidationError("Customer already has an active subscription to this plan")
        external_customer_id = BillingCustomers.ensure_gateway_customer(db, customer, gateway)
        return gateway.create_checkout_session(
            customer_id=external_customer_id,
            price_id=PlanCatalog.price_id_for(plan, billing_cycle),
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"customerId": customer.id, "licenseTypeId": plan.id},
            idempotency_key=new_idempotency_key(),
        )
