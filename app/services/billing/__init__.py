"""Billing services package.

    from app.services import billing as billing_service
    billing_service.subscriptions.list_response(db, ...)
"""

from app.services.billing.backfill import BackfillSync, SyncResult
from app.services.billing.customers import BillingCustomers
from app.services.billing.event_store import WebhookEvents
from app.services.billing.ingestion import IngestResult, WebhookIngestor
from app.services.billing.invoices import Invoices
from app.services.billing.payments import Payments
from app.services.billing.proration import ProrationCalculator, summarize_proration
from app.services.billing.reconciliation import ReconciliationEngine
from app.services.billing.subscriptions import Subscriptions

# Singleton instances for service access
customers = BillingCustomers()
subscriptions = Subscriptions()
invoices = Invoices()
payments = Payments()
webhook_events = WebhookEvents()

__all__ = [
    "BackfillSync",
    "BillingCustomers",
    "IngestResult",
    "Invoices",
    "Payments",
    "ProrationCalculator",
    "ReconciliationEngine",
    "Subscriptions",
    "SyncResult",
    "WebhookEvents",
    "WebhookIngestor",
    "customers",
    "invoices",
    "payments",
    "subscriptions",
    "summarize_proration",
    "webhook_events",
]
